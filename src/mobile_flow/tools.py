"""The tool-invocation boundary between workflow nodes and humans or LLMs."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from .canonical import to_canonical_json
from .errors import ToolValidationError
from .llm import StructuredOutputAdapter, StructuredOutputError, get_structured_chat_model

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)
ResultT = TypeVar("ResultT", bound=BaseModel)


@dataclass(frozen=True)
class ToolSpec(Generic[InputT, ResultT]):
    """A named tool with declared input and result schemas."""

    tool_id: str
    description: str
    input_model: type[InputT]
    result_model: type[ResultT]

    def validate_input(self, payload: BaseModel | Mapping[str, Any]) -> InputT:
        return self._validate(self.input_model, payload, "input")

    def validate_result(self, payload: BaseModel | Mapping[str, Any]) -> ResultT:
        return self._validate(self.result_model, payload, "result")

    def request(self, payload: InputT) -> dict[str, Any]:
        """Prompt document handed to whoever answers the tool."""
        return {
            "tool_id": self.tool_id,
            "description": self.description,
            "input": payload.model_dump(mode="json"),
            "result_schema": self.result_model.model_json_schema(),
        }

    def _validate(self, model: type[BaseModel], payload: BaseModel | Mapping[str, Any], direction: str) -> Any:
        if isinstance(payload, model):
            return payload
        candidate = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        if not isinstance(candidate, Mapping):
            raise ToolValidationError(self.tool_id, direction, f"expected an object, got {type(candidate).__name__}")
        try:
            return model.model_validate(dict(candidate))
        except ValidationError as exc:
            raise ToolValidationError(self.tool_id, direction, exc) from exc


class ToolGateway(ABC):
    """Answers tool requests synchronously with a validated result."""

    @abstractmethod
    def invoke(self, tool: ToolSpec[Any, ResultT], payload: BaseModel | Mapping[str, Any]) -> ResultT: ...


ScriptedResponse = Mapping[str, Any] | BaseModel | Callable[[BaseModel], Mapping[str, Any] | BaseModel]


class ScriptedToolGateway(ToolGateway):
    """In-memory gateway answering from queued responses per tool id.

    Responses may be dicts, models, or callables receiving the validated
    input. Results are validated exactly like live results.
    """

    def __init__(self, responses: Mapping[str, list[ScriptedResponse]] | None = None) -> None:
        self._queues: dict[str, deque[ScriptedResponse]] = defaultdict(deque)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        for tool_id, queued in (responses or {}).items():
            self.queue(tool_id, *queued)

    def queue(self, tool_id: str, *responses: ScriptedResponse) -> None:
        self._queues[tool_id].extend(responses)

    def pending(self, tool_id: str) -> int:
        return len(self._queues[tool_id])

    def invoke(self, tool: ToolSpec[Any, ResultT], payload: BaseModel | Mapping[str, Any]) -> ResultT:
        validated = tool.validate_input(payload)
        self.calls.append((tool.tool_id, validated.model_dump(mode="json")))
        queue = self._queues[tool.tool_id]
        if not queue:
            raise LookupError(f"No scripted response left for tool {tool.tool_id!r}")
        response = queue.popleft()
        if callable(response) and not isinstance(response, BaseModel):
            response = response(validated)
        return tool.validate_result(response)


class LLMToolGateway(ToolGateway):
    """Answers tools with an OpenAI chat model bound to the result schema."""

    def __init__(
        self,
        *,
        model_name: str,
        temperature: float = 0.0,
        repo_root: Path | None = None,
        adapter_factory: Callable[..., StructuredOutputAdapter[Any]] = get_structured_chat_model,
    ) -> None:
        self.model_name = model_name
        self.temperature = temperature
        self.repo_root = repo_root
        self._adapter_factory = adapter_factory
        self._adapters: dict[str, StructuredOutputAdapter[Any]] = {}

    def _adapter(self, tool: ToolSpec[Any, Any]) -> StructuredOutputAdapter[Any]:
        adapter = self._adapters.get(tool.tool_id)
        if adapter is None:
            adapter = self._adapter_factory(
                model_name=self.model_name,
                schema=tool.result_model,
                temperature=self.temperature,
                repo_root=self.repo_root,
            )
            self._adapters[tool.tool_id] = adapter
        return adapter

    def invoke(self, tool: ToolSpec[Any, ResultT], payload: BaseModel | Mapping[str, Any]) -> ResultT:
        validated = tool.validate_input(payload)
        messages = [
            SystemMessage(content=f"You are the '{tool.tool_id}' tool. {tool.description}"),
            HumanMessage(content=f"Tool input (JSON):\n{to_canonical_json(validated)}"),
        ]
        logger.info("Invoking tool %s via %s", tool.tool_id, self.model_name)
        try:
            result = self._adapter(tool).invoke(messages)
        except StructuredOutputError as exc:
            raise ToolValidationError(tool.tool_id, "result", str(exc)) from exc
        return tool.validate_result(result)
