from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from mobile_flow.errors import ToolValidationError
from mobile_flow.llm import StructuredOutputAdapter, StructuredOutputError, normalize_structured_output
from mobile_flow.mobile_workflow import TEMPLATE_DISCOVERY_TOOL, USER_INPUT_EXTRACTION_TOOL
from mobile_flow.schemas import ExtractionResult, TemplateDiscoveryResult
from mobile_flow.tools import LLMToolGateway, ScriptedToolGateway


class FakeRunnable:
    def __init__(self, output: Any) -> None:
        self.output = output
        self.inputs: list[Any] = []

    def invoke(self, input: Any) -> Any:
        self.inputs.append(input)
        return self.output


def test_tool_request_describes_input_and_result_schema() -> None:
    request = TEMPLATE_DISCOVERY_TOOL.request(TEMPLATE_DISCOVERY_TOOL.validate_input({"platform": "iOS"}))

    assert request["tool_id"] == "sfmobile-native-template-discovery"
    assert request["input"] == {"platform": "iOS"}
    assert "selected_template" in request["result_schema"]["properties"]


def test_invalid_input_raises_tool_validation_error() -> None:
    with pytest.raises(ToolValidationError) as exc_info:
        TEMPLATE_DISCOVERY_TOOL.validate_input({"platform": "Windows Phone"})

    assert exc_info.value.tool_id == "sfmobile-native-template-discovery"
    assert exc_info.value.direction == "input"


def test_scripted_gateway_answers_in_order_and_validates() -> None:
    gateway = ScriptedToolGateway(
        {
            TEMPLATE_DISCOVERY_TOOL.tool_id: [
                {"selected_template": "iOSNativeSwiftTemplate"},
                lambda validated: {"selected_template": f"{validated.platform.value}Fallback"},
                {"selected_template": ""},
            ]
        }
    )

    first = gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "iOS"})
    second = gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "Android"})

    assert isinstance(first, TemplateDiscoveryResult)
    assert first.selected_template == "iOSNativeSwiftTemplate"
    assert second.selected_template == "AndroidFallback"
    with pytest.raises(ToolValidationError):
        gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "iOS"})
    with pytest.raises(LookupError):
        gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "iOS"})
    assert [call[1] for call in gateway.calls] == [{"platform": "iOS"}, {"platform": "Android"}] + [
        {"platform": "iOS"}
    ] * 2


def test_extraction_result_rejects_bad_package_names() -> None:
    gateway = ScriptedToolGateway(
        {USER_INPUT_EXTRACTION_TOOL.tool_id: [{"extracted_properties": {"package_name": "nodots"}}]}
    )
    payload = {"properties_to_extract": [{"property_name": "package_name", "friendly_name": "Package"}]}

    with pytest.raises(ToolValidationError, match="result"):
        gateway.invoke(USER_INPUT_EXTRACTION_TOOL, payload)


def test_llm_gateway_sends_canonical_input_and_validates_result(tmp_path: Path) -> None:
    runnable = FakeRunnable({"parsed": {"selected_template": "AndroidNativeKotlinTemplate"}, "parsing_error": None})
    factory_calls: list[dict[str, Any]] = []

    def factory(**kwargs: Any) -> StructuredOutputAdapter[Any]:
        factory_calls.append(kwargs)
        return StructuredOutputAdapter(schema=kwargs["schema"], runnable=runnable)

    gateway = LLMToolGateway(model_name="gpt-test", repo_root=tmp_path, adapter_factory=factory)
    result = gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "Android"})
    gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "Android"})

    assert result.selected_template == "AndroidNativeKotlinTemplate"
    assert len(factory_calls) == 1
    assert factory_calls[0]["schema"] is TemplateDiscoveryResult
    system, human = runnable.inputs[0]
    assert isinstance(system, SystemMessage)
    assert isinstance(human, HumanMessage)
    assert '{"platform":"Android"}' in human.content


def test_llm_gateway_wraps_structured_output_errors() -> None:
    runnable = FakeRunnable({"parsed": None, "parsing_error": "bad json"})
    gateway = LLMToolGateway(
        model_name="gpt-test",
        adapter_factory=lambda **kwargs: StructuredOutputAdapter(schema=kwargs["schema"], runnable=runnable),
    )

    with pytest.raises(ToolValidationError, match="could not be parsed"):
        gateway.invoke(TEMPLATE_DISCOVERY_TOOL, {"platform": "iOS"})


def test_normalize_structured_output_accepts_models_and_dicts() -> None:
    model = ExtractionResult.model_validate({"extracted_properties": {"platform": "iOS"}})

    assert normalize_structured_output(raw_output=model, schema=ExtractionResult) is model
    assert normalize_structured_output(
        raw_output={"extracted_properties": {"project_name": "  "}}, schema=ExtractionResult
    ).extracted_properties.project_name is None
    with pytest.raises(StructuredOutputError):
        normalize_structured_output(raw_output="free text", schema=ExtractionResult)
