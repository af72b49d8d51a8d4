"""Reusable node kinds shared by the workflows."""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic

from pydantic import BaseModel

from .graph import BaseNode, NodeContext, NodeOutput, Suspend
from .schemas import GetInputRequest, GetInputResult, RequestedProperty
from .tools import InputT, ResultT, ToolGateway, ToolSpec

logger = logging.getLogger(__name__)


class ToolNode(BaseNode, Generic[InputT, ResultT]):
    """Node that delegates to a tool and folds the result into state.

    Without a gateway the node suspends with the tool request as the prompt
    and finishes when the caller resumes it with a result. With a gateway
    the tool is answered synchronously and the node never suspends.
    """

    def __init__(self, name: str, tool: ToolSpec[InputT, ResultT], gateway: ToolGateway | None = None) -> None:
        super().__init__(name)
        self.tool = tool
        self.gateway = gateway

    def resume_schema(self) -> type[BaseModel]:
        return self.tool.result_model

    @abstractmethod
    def build_input(self, state: Mapping[str, Any]) -> InputT | Mapping[str, Any]: ...

    @abstractmethod
    def apply_result(self, state: Mapping[str, Any], result: ResultT) -> dict[str, Any]: ...

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> NodeOutput:
        if context.resume is not None:
            return self.complete(state, context.resume)
        return self.request(state, self.build_input(state))

    def request(self, state: Mapping[str, Any], payload: InputT | Mapping[str, Any]) -> NodeOutput:
        validated = self.tool.validate_input(payload)
        if self.gateway is None:
            logger.debug("Node %s waiting for tool %s", self.name, self.tool.tool_id)
            return Suspend(prompt=self.tool.request(validated))
        result = self.gateway.invoke(self.tool, validated)
        return self.apply_result(state, result)

    def complete(self, state: Mapping[str, Any], resume: Mapping[str, Any]) -> dict[str, Any]:
        result = self.tool.validate_result(resume)
        return self.apply_result(state, result)


GET_INPUT_TOOL: ToolSpec[GetInputRequest, GetInputResult] = ToolSpec(
    tool_id="get-input",
    description=(
        "Ask the user for the listed properties. Present each property's friendly name and "
        "description, then return exactly what the user said."
    ),
    input_model=GetInputRequest,
    result_model=GetInputResult,
)


@dataclass(frozen=True)
class PropertyMetadata:
    friendly_name: str
    description: str


def unfulfilled_properties(
    state: Mapping[str, Any], required: Mapping[str, PropertyMetadata]
) -> list[RequestedProperty]:
    return [
        RequestedProperty(property_name=name, friendly_name=meta.friendly_name, description=meta.description)
        for name, meta in required.items()
        if state.get(name) in (None, "")
    ]


class GetUserInputNode(ToolNode[GetInputRequest, GetInputResult]):
    """Asks the user for whichever required properties are still missing."""

    def __init__(
        self,
        required_properties: Mapping[str, PropertyMetadata],
        *,
        name: str = "get_user_input",
        utterance_field: str = "user_input",
        gateway: ToolGateway | None = None,
    ) -> None:
        super().__init__(name, GET_INPUT_TOOL, gateway)
        self.required_properties = dict(required_properties)
        self.utterance_field = utterance_field

    def build_input(self, state: Mapping[str, Any]) -> GetInputRequest:
        missing = unfulfilled_properties(state, self.required_properties)
        if not missing:
            raise ValueError(f"{self.name} reached with every required property already set")
        return GetInputRequest(properties_requiring_input=missing)

    def apply_result(self, state: Mapping[str, Any], result: GetInputResult) -> dict[str, Any]:
        return {self.utterance_field: result.user_utterance}


class FailureNode(BaseNode):
    """Terminal node that turns collected errors into a readable summary."""

    def __init__(
        self,
        name: str,
        *,
        message_fields: Sequence[str],
        summary_field: str,
        headline: str = "The workflow could not finish.",
        formatter: Callable[[str, list[str]], str] | None = None,
    ) -> None:
        super().__init__(name)
        self.message_fields = tuple(message_fields)
        self.summary_field = summary_field
        self.headline = headline
        self._formatter = formatter or _bullet_summary

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        messages: list[str] = []
        for field_name in self.message_fields:
            for message in state.get(field_name) or []:
                if message not in messages:
                    messages.append(str(message))
        logger.info("Workflow failed on thread %s with %d message(s)", context.thread_id, len(messages))
        return {self.summary_field: self._formatter(self.headline, messages)}


def _bullet_summary(headline: str, messages: list[str]) -> str:
    if not messages:
        return f"{headline} No error details were recorded."
    lines = [headline, ""]
    lines.extend(f"- {message}" for message in messages)
    return "\n".join(lines)
