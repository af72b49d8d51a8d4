"""Input and result schemas for the tools both workflows call."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Platform


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Shared: free-form user input
# ---------------------------------------------------------------------------


class RequestedProperty(_Schema):
    property_name: str = Field(min_length=1)
    friendly_name: str = Field(min_length=1)
    description: str = ""


class GetInputRequest(_Schema):
    properties_requiring_input: list[RequestedProperty] = Field(min_length=1)


class GetInputResult(_Schema):
    user_utterance: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Mobile native workflow
# ---------------------------------------------------------------------------


class ExtractionRequest(_Schema):
    user_utterance: str | None = None
    properties_to_extract: list[RequestedProperty] = Field(min_length=1)


class ExtractedProperties(_Schema):
    platform: Platform | None = None
    project_name: str | None = None
    package_name: str | None = None
    organization: str | None = None
    login_host: str | None = None

    @field_validator("project_name", "package_name", "organization", "login_host")
    @classmethod
    def _blank_is_missing(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("package_name")
    @classmethod
    def _reverse_domain(cls, value: str | None) -> str | None:
        if value is not None and "." not in value:
            raise ValueError("package_name must be a reverse-domain identifier such as com.example.app")
        return value


class ExtractionResult(_Schema):
    extracted_properties: ExtractedProperties


class TemplateDiscoveryRequest(_Schema):
    platform: Platform


class TemplateDiscoveryResult(_Schema):
    selected_template: str = Field(min_length=1)
    template_properties: dict[str, str] = Field(default_factory=dict)


class BuildRecoveryRequest(_Schema):
    platform: Platform
    project_path: str
    project_name: str
    build_errors: list[str]
    attempt_number: int = Field(ge=1)
    max_attempts: int = Field(ge=1)
    cleaned: bool
    build_output_file_path: str | None = None


class BuildRecoveryResult(_Schema):
    fixes_applied: list[str] = Field(default_factory=list)
    ready_for_retry: bool


# ---------------------------------------------------------------------------
# PRD workflow
# ---------------------------------------------------------------------------


class Modification(_Schema):
    section: str = Field(min_length=1)
    modification_reason: str = Field(min_length=1)
    requested_content: str = Field(min_length=1)


class FunctionalRequirement(_Schema):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: Literal["high", "medium", "low"]
    category: str = Field(min_length=1)


class Gap(_Schema):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    severity: Literal["critical", "high", "medium", "low"]
    suggested_requirements: list[str] = Field(default_factory=list)


class FeatureBriefRequest(_Schema):
    user_utterance: str = Field(min_length=1)
    existing_feature_ids: list[str] = Field(default_factory=list)


class FeatureBriefResult(_Schema):
    feature_brief_markdown: str = Field(min_length=1)
    recommended_feature_id: str = Field(min_length=1, pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$")


class FeatureBriefReviewRequest(_Schema):
    feature_brief_markdown: str = Field(min_length=1)


class FeatureBriefReviewResult(_Schema):
    approved: bool
    user_feedback: str | None = None
    modifications: list[Modification] = Field(default_factory=list)


class FeatureBriefUpdateRequest(_Schema):
    feature_brief_markdown: str = Field(min_length=1)
    user_feedback: str | None = None
    modifications: list[Modification] = Field(default_factory=list)


class FeatureBriefUpdateResult(_Schema):
    feature_brief_markdown: str = Field(min_length=1)


class InitialRequirementsRequest(_Schema):
    feature_brief_markdown: str = Field(min_length=1)


class RequirementsResult(_Schema):
    functional_requirements: list[FunctionalRequirement]


class RequirementsReviewRequest(_Schema):
    functional_requirements: list[FunctionalRequirement] = Field(min_length=1)


class RequirementsReviewResult(_Schema):
    approved_requirement_ids: list[str] = Field(default_factory=list)
    rejected_requirement_ids: list[str] = Field(default_factory=list)
    modified_requirements: list[FunctionalRequirement] = Field(default_factory=list)
    user_iteration_preference: bool | None = None


class GapAnalysisRequest(_Schema):
    feature_brief_markdown: str = Field(min_length=1)
    functional_requirements: list[FunctionalRequirement]


class GapAnalysisResult(_Schema):
    gap_analysis_score: float = Field(ge=0.0, le=100.0)
    identified_gaps: list[Gap] = Field(default_factory=list)


class GapRequirementsRequest(_Schema):
    feature_brief_markdown: str = Field(min_length=1)
    functional_requirements: list[FunctionalRequirement]
    identified_gaps: list[Gap]


class PRDGenerationRequest(_Schema):
    feature_id: str = Field(min_length=1)
    feature_brief_markdown: str = Field(min_length=1)
    functional_requirements: list[FunctionalRequirement] = Field(min_length=1)
    modifications: list[Modification] = Field(default_factory=list)


class PRDGenerationResult(_Schema):
    prd_markdown: str = Field(min_length=1)


class PRDReviewRequest(_Schema):
    prd_markdown: str = Field(min_length=1)


class PRDReviewResult(_Schema):
    approved: bool
    modifications: list[Modification] = Field(default_factory=list)
