"""Product requirements document workflow.

Feature brief -> reviewed requirements -> gap analysis loop -> PRD -> review.
Every authoring and review step is a tool; with no gateway configured each
one suspends the thread and waits for a human or an external agent.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .graph import END, BaseNode, ConditionalEdge, NodeContext, Router, StaticEdge, WorkflowGraph
from .nodes import FailureNode, ToolNode
from .schemas import (
    FeatureBriefRequest,
    FeatureBriefResult,
    FeatureBriefReviewRequest,
    FeatureBriefReviewResult,
    FeatureBriefUpdateRequest,
    FeatureBriefUpdateResult,
    FunctionalRequirement,
    GapAnalysisRequest,
    GapAnalysisResult,
    GapRequirementsRequest,
    InitialRequirementsRequest,
    PRDGenerationRequest,
    PRDGenerationResult,
    PRDReviewRequest,
    PRDReviewResult,
    RequirementsResult,
    RequirementsReviewRequest,
    RequirementsReviewResult,
)
from .state import StateSchema, append, overwrite
from .tools import ToolGateway, ToolSpec

logger = logging.getLogger(__name__)

PRD_WORKFLOW = "prd_generation"
DEFAULT_GAP_SCORE_THRESHOLD = 0.8
PRD_FILE_NAME = "prd.md"
FEATURE_BRIEF_FILE_NAME = "feature-brief.md"

PRD_STATE = StateSchema(
    PRD_WORKFLOW,
    {
        "user_input": overwrite("Original feature request"),
        "output_directory": overwrite("Directory that receives one folder per feature"),
        "feature_id": overwrite(),
        "feature_brief_markdown": overwrite(),
        "feature_brief_approved": overwrite(),
        "feature_brief_feedback": overwrite(),
        "feature_brief_modifications": overwrite(),
        "functional_requirements": append("Every requirement version produced; the last version of an id wins"),
        "approved_requirement_ids": append(),
        "rejected_requirement_ids": append(),
        "user_iteration_preference": overwrite(),
        "gap_analysis_score": overwrite(),
        "identified_gaps": overwrite(),
        "gap_iterations": overwrite(),
        "should_iterate": overwrite(),
        "prd_markdown": overwrite(),
        "prd_approved": overwrite(),
        "prd_modifications": overwrite(),
        "prd_file_path": overwrite(),
        "failure_summary": overwrite(),
        "prd_fatal_error_messages": append(),
        "errors": append(),
    },
)


def current_requirements(state: Mapping[str, Any]) -> list[FunctionalRequirement]:
    """Latest version of every requirement that has not been rejected, in first-seen order."""
    latest: dict[str, FunctionalRequirement] = {}
    for raw in state.get("functional_requirements") or []:
        requirement = FunctionalRequirement.model_validate(raw)
        latest[requirement.id] = requirement
    rejected = set(state.get("rejected_requirement_ids") or [])
    return [requirement for requirement_id, requirement in latest.items() if requirement_id not in rejected]


def _dump_requirements(requirements: list[FunctionalRequirement]) -> list[dict[str, Any]]:
    return [requirement.model_dump(mode="json") for requirement in requirements]


def normalize_gap_score(score: float) -> float:
    """Gap scores arrive either as 0..1 or as a percentage."""
    return score / 100 if score > 1 else score


def should_iterate(state: Mapping[str, Any], threshold: float = DEFAULT_GAP_SCORE_THRESHOLD) -> bool:
    preference = state.get("user_iteration_preference")
    if preference is not None:
        return bool(preference)
    score = state.get("gap_analysis_score")
    if score is None:
        return False
    return normalize_gap_score(float(score)) < threshold


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

FEATURE_BRIEF_TOOL: ToolSpec[FeatureBriefRequest, FeatureBriefResult] = ToolSpec(
    tool_id="magi-prd-feature-brief",
    description=(
        "Write a concise feature brief in markdown for the requested feature and recommend a "
        "kebab-case feature id that is not already taken."
    ),
    input_model=FeatureBriefRequest,
    result_model=FeatureBriefResult,
)

FEATURE_BRIEF_REVIEW_TOOL: ToolSpec[FeatureBriefReviewRequest, FeatureBriefReviewResult] = ToolSpec(
    tool_id="magi-prd-feature-brief-review",
    description="Present the feature brief to the user and record approval or requested modifications.",
    input_model=FeatureBriefReviewRequest,
    result_model=FeatureBriefReviewResult,
)

FEATURE_BRIEF_UPDATE_TOOL: ToolSpec[FeatureBriefUpdateRequest, FeatureBriefUpdateResult] = ToolSpec(
    tool_id="magi-prd-feature-brief-update",
    description="Revise the feature brief to address the user's feedback and requested modifications.",
    input_model=FeatureBriefUpdateRequest,
    result_model=FeatureBriefUpdateResult,
)

INITIAL_REQUIREMENTS_TOOL: ToolSpec[InitialRequirementsRequest, RequirementsResult] = ToolSpec(
    tool_id="magi-prd-initial-requirements",
    description="Derive functional requirements with stable ids from the approved feature brief.",
    input_model=InitialRequirementsRequest,
    result_model=RequirementsResult,
)

REQUIREMENTS_REVIEW_TOOL: ToolSpec[RequirementsReviewRequest, RequirementsReviewResult] = ToolSpec(
    tool_id="magi-prd-requirements-review",
    description=(
        "Walk the user through the requirements. Record approved, rejected and modified requirements "
        "and whether the user wants another gap-analysis iteration."
    ),
    input_model=RequirementsReviewRequest,
    result_model=RequirementsReviewResult,
)

GAP_ANALYSIS_TOOL: ToolSpec[GapAnalysisRequest, GapAnalysisResult] = ToolSpec(
    tool_id="magi-prd-gap-analysis",
    description="Score how completely the requirements cover the feature brief and list the gaps.",
    input_model=GapAnalysisRequest,
    result_model=GapAnalysisResult,
)

GAP_REQUIREMENTS_TOOL: ToolSpec[GapRequirementsRequest, RequirementsResult] = ToolSpec(
    tool_id="magi-prd-gap-requirements",
    description="Write new functional requirements that close the identified gaps; do not repeat existing ones.",
    input_model=GapRequirementsRequest,
    result_model=RequirementsResult,
)

PRD_GENERATION_TOOL: ToolSpec[PRDGenerationRequest, PRDGenerationResult] = ToolSpec(
    tool_id="magi-prd-generation",
    description="Write the complete product requirements document in markdown.",
    input_model=PRDGenerationRequest,
    result_model=PRDGenerationResult,
)

PRD_REVIEW_TOOL: ToolSpec[PRDReviewRequest, PRDReviewResult] = ToolSpec(
    tool_id="magi-prd-review",
    description="Present the PRD to the user and record approval or requested modifications.",
    input_model=PRDReviewRequest,
    result_model=PRDReviewResult,
)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def _fatal(message: str) -> dict[str, Any]:
    return {"prd_fatal_error_messages": [message]}


class InitializationNode(BaseNode):
    """Checks the request and prepares the output directory."""

    def __init__(self, default_output_directory: Path) -> None:
        super().__init__("initialization")
        self.default_output_directory = default_output_directory

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        if not (state.get("user_input") or "").strip():
            return _fatal("A feature request (user_input) is required to generate a PRD")
        output_directory = Path(state.get("output_directory") or self.default_output_directory)
        try:
            output_directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return _fatal(f"Cannot create output directory {output_directory}: {exc}")
        return {"output_directory": str(output_directory), "gap_iterations": 0}


class FeatureBriefGenerationNode(ToolNode[FeatureBriefRequest, FeatureBriefResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("feature_brief_generation", FEATURE_BRIEF_TOOL, gateway)

    @staticmethod
    def _existing_ids(state: Mapping[str, Any]) -> list[str]:
        root = Path(state["output_directory"])
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir()) if root.is_dir() else []

    def build_input(self, state: Mapping[str, Any]) -> FeatureBriefRequest:
        return FeatureBriefRequest(user_utterance=state["user_input"], existing_feature_ids=self._existing_ids(state))

    def apply_result(self, state: Mapping[str, Any], result: FeatureBriefResult) -> dict[str, Any]:
        existing = set(self._existing_ids(state))
        feature_id = result.recommended_feature_id
        suffix = 2
        while feature_id in existing:
            feature_id = f"{result.recommended_feature_id}-{suffix}"
            suffix += 1
        return {"feature_id": feature_id, "feature_brief_markdown": result.feature_brief_markdown}


class FeatureBriefReviewNode(ToolNode[FeatureBriefReviewRequest, FeatureBriefReviewResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("feature_brief_review", FEATURE_BRIEF_REVIEW_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> FeatureBriefReviewRequest:
        return FeatureBriefReviewRequest(feature_brief_markdown=state["feature_brief_markdown"])

    def apply_result(self, state: Mapping[str, Any], result: FeatureBriefReviewResult) -> dict[str, Any]:
        return {
            "feature_brief_approved": result.approved,
            "feature_brief_feedback": result.user_feedback,
            "feature_brief_modifications": [item.model_dump(mode="json") for item in result.modifications],
        }


class FeatureBriefUpdateNode(ToolNode[FeatureBriefUpdateRequest, FeatureBriefUpdateResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("feature_brief_update", FEATURE_BRIEF_UPDATE_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> FeatureBriefUpdateRequest:
        return FeatureBriefUpdateRequest(
            feature_brief_markdown=state["feature_brief_markdown"],
            user_feedback=state.get("feature_brief_feedback"),
            modifications=state.get("feature_brief_modifications") or [],
        )

    def apply_result(self, state: Mapping[str, Any], result: FeatureBriefUpdateResult) -> dict[str, Any]:
        return {
            "feature_brief_markdown": result.feature_brief_markdown,
            "feature_brief_approved": None,
            "feature_brief_feedback": None,
            "feature_brief_modifications": [],
        }


class InitialRequirementsNode(ToolNode[InitialRequirementsRequest, RequirementsResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("initial_requirements_generation", INITIAL_REQUIREMENTS_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> InitialRequirementsRequest:
        return InitialRequirementsRequest(feature_brief_markdown=state["feature_brief_markdown"])

    def apply_result(self, state: Mapping[str, Any], result: RequirementsResult) -> dict[str, Any]:
        return {"functional_requirements": _dump_requirements(result.functional_requirements)}


class RequirementsReviewNode(ToolNode[RequirementsReviewRequest, RequirementsReviewResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("requirements_review", REQUIREMENTS_REVIEW_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> RequirementsReviewRequest:
        return RequirementsReviewRequest(functional_requirements=current_requirements(state))

    def apply_result(self, state: Mapping[str, Any], result: RequirementsReviewResult) -> dict[str, Any]:
        return {
            "approved_requirement_ids": result.approved_requirement_ids,
            "rejected_requirement_ids": result.rejected_requirement_ids,
            "functional_requirements": _dump_requirements(result.modified_requirements),
            "user_iteration_preference": result.user_iteration_preference,
        }


class GapAnalysisNode(ToolNode[GapAnalysisRequest, GapAnalysisResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("gap_analysis", GAP_ANALYSIS_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> GapAnalysisRequest:
        return GapAnalysisRequest(
            feature_brief_markdown=state["feature_brief_markdown"],
            functional_requirements=current_requirements(state),
        )

    def apply_result(self, state: Mapping[str, Any], result: GapAnalysisResult) -> dict[str, Any]:
        return {
            "gap_analysis_score": result.gap_analysis_score,
            "identified_gaps": [gap.model_dump(mode="json") for gap in result.identified_gaps],
        }


class IterationControlNode(BaseNode):
    """Decides whether another gap-requirements round is needed.

    A user preference from the last review wins and is consumed; otherwise
    iteration continues while the normalized gap score is below the
    threshold.
    """

    def __init__(self, threshold: float = DEFAULT_GAP_SCORE_THRESHOLD) -> None:
        super().__init__("requirements_iteration_control")
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got: {threshold}")
        self.threshold = threshold

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        iterate = should_iterate(state, self.threshold)
        logger.info(
            "Gap score %s, user preference %s: %s",
            state.get("gap_analysis_score"),
            state.get("user_iteration_preference"),
            "iterating" if iterate else "proceeding to PRD",
        )
        patch: dict[str, Any] = {"should_iterate": iterate, "user_iteration_preference": None}
        if iterate:
            patch["gap_iterations"] = int(state.get("gap_iterations") or 0) + 1
        return patch


class GapRequirementsNode(ToolNode[GapRequirementsRequest, RequirementsResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("gap_requirements_generation", GAP_REQUIREMENTS_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> GapRequirementsRequest:
        return GapRequirementsRequest(
            feature_brief_markdown=state["feature_brief_markdown"],
            functional_requirements=current_requirements(state),
            identified_gaps=state.get("identified_gaps") or [],
        )

    def apply_result(self, state: Mapping[str, Any], result: RequirementsResult) -> dict[str, Any]:
        return {"functional_requirements": _dump_requirements(result.functional_requirements)}


class PRDGenerationNode(ToolNode[PRDGenerationRequest, PRDGenerationResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("prd_generation", PRD_GENERATION_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> PRDGenerationRequest:
        return PRDGenerationRequest(
            feature_id=state["feature_id"],
            feature_brief_markdown=state["feature_brief_markdown"],
            functional_requirements=current_requirements(state),
            modifications=state.get("prd_modifications") or [],
        )

    def apply_result(self, state: Mapping[str, Any], result: PRDGenerationResult) -> dict[str, Any]:
        return {"prd_markdown": result.prd_markdown, "prd_approved": None}


class PRDReviewNode(ToolNode[PRDReviewRequest, PRDReviewResult]):
    def __init__(self, gateway: ToolGateway | None) -> None:
        super().__init__("prd_review", PRD_REVIEW_TOOL, gateway)

    def build_input(self, state: Mapping[str, Any]) -> PRDReviewRequest:
        return PRDReviewRequest(prd_markdown=state["prd_markdown"])

    def apply_result(self, state: Mapping[str, Any], result: PRDReviewResult) -> dict[str, Any]:
        return {
            "prd_approved": result.approved,
            "prd_modifications": [item.model_dump(mode="json") for item in result.modifications],
        }


class PRDFinalizationNode(BaseNode):
    """Writes the approved brief and PRD under ``<output_directory>/<feature_id>/``."""

    def __init__(self) -> None:
        super().__init__("prd_finalization")

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        feature_dir = Path(state["output_directory"]) / state["feature_id"]
        feature_dir.mkdir(parents=True, exist_ok=True)
        (feature_dir / FEATURE_BRIEF_FILE_NAME).write_text(state["feature_brief_markdown"], encoding="utf-8")
        prd_path = feature_dir / PRD_FILE_NAME
        prd_path.write_text(state["prd_markdown"], encoding="utf-8")
        logger.info("Wrote PRD for %s to %s", state["feature_id"], prd_path)
        return {"prd_file_path": str(prd_path)}


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


def _route_initialization(state: Mapping[str, Any]) -> str:
    return "prd_failure" if state.get("prd_fatal_error_messages") else "feature_brief_generation"


def _route_feature_brief_review(state: Mapping[str, Any]) -> str:
    return "initial_requirements_generation" if state.get("feature_brief_approved") else "feature_brief_update"


def _route_iteration(state: Mapping[str, Any]) -> str:
    return "gap_requirements_generation" if state.get("should_iterate") else "prd_generation"


def _route_prd_review(state: Mapping[str, Any]) -> str:
    return "prd_finalization" if state.get("prd_approved") else "prd_generation"


INITIALIZATION_ROUTER = Router(
    "check_initialization", ("feature_brief_generation", "prd_failure"), _route_initialization
)
FEATURE_BRIEF_REVIEW_ROUTER = Router(
    "check_feature_brief_approved",
    ("initial_requirements_generation", "feature_brief_update"),
    _route_feature_brief_review,
)
ITERATION_ROUTER = Router(
    "check_requirements_iteration", ("gap_requirements_generation", "prd_generation"), _route_iteration
)
PRD_REVIEW_ROUTER = Router("check_prd_approved", ("prd_finalization", "prd_generation"), _route_prd_review)


def build_prd_workflow(
    *,
    output_directory: Path,
    gateway: ToolGateway | None = None,
    gap_score_threshold: float = DEFAULT_GAP_SCORE_THRESHOLD,
) -> WorkflowGraph:
    nodes: list[BaseNode] = [
        InitializationNode(output_directory),
        FeatureBriefGenerationNode(gateway),
        FeatureBriefReviewNode(gateway),
        FeatureBriefUpdateNode(gateway),
        InitialRequirementsNode(gateway),
        RequirementsReviewNode(gateway),
        GapAnalysisNode(gateway),
        IterationControlNode(gap_score_threshold),
        GapRequirementsNode(gateway),
        PRDGenerationNode(gateway),
        PRDReviewNode(gateway),
        PRDFinalizationNode(),
        FailureNode(
            "prd_failure",
            message_fields=("prd_fatal_error_messages", "errors"),
            summary_field="failure_summary",
            headline="The PRD workflow could not finish.",
        ),
    ]
    edges = [
        ConditionalEdge("initialization", INITIALIZATION_ROUTER),
        StaticEdge("feature_brief_generation", "feature_brief_review"),
        ConditionalEdge("feature_brief_review", FEATURE_BRIEF_REVIEW_ROUTER),
        StaticEdge("feature_brief_update", "feature_brief_review"),
        StaticEdge("initial_requirements_generation", "requirements_review"),
        StaticEdge("requirements_review", "gap_analysis"),
        StaticEdge("gap_analysis", "requirements_iteration_control"),
        ConditionalEdge("requirements_iteration_control", ITERATION_ROUTER),
        StaticEdge("gap_requirements_generation", "requirements_review"),
        StaticEdge("prd_generation", "prd_review"),
        ConditionalEdge("prd_review", PRD_REVIEW_ROUTER),
        StaticEdge("prd_finalization", END),
        StaticEdge("prd_failure", END),
    ]
    return WorkflowGraph(
        name=PRD_WORKFLOW,
        state_schema=PRD_STATE,
        nodes=nodes,
        edges=edges,
        start="initialization",
        failure_node="prd_failure",
        errors_field="errors",
        fatal_errors_field="prd_fatal_error_messages",
    )
