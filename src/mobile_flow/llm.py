"""OpenAI chat client used by the live tool gateway."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

REQUEST_TIMEOUT_SECONDS = 120
REQUEST_MAX_RETRIES = 3


class SupportsInvoke(Protocol):
    """Anything LangChain-shaped that can be called with ``invoke``."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401
        ...


class StructuredOutputError(RuntimeError):
    """The model answered, but not with a payload matching the requested schema."""


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Invokes a structured-output runnable and validates what comes back."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, messages: str | list[BaseMessage]) -> ModelT:
        return normalize_structured_output(raw_output=self.runnable.invoke(messages), schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when present.

    Raises:
        RuntimeError: If no key is available.
    """
    dotenv_file = (repo_root or Path.cwd()) / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)
    api_key = os.environ.get("OPENAI_API_KEY", "").strip()
    if api_key:
        return api_key
    raise RuntimeError(f"OPENAI_API_KEY is required for the LLM tool gateway (checked env and {dotenv_file})")


def _unwrap_envelope(raw_output: Any, schema_name: str) -> Any:
    # with_structured_output(include_raw=True) returns {"raw", "parsed", "parsing_error"}.
    if not isinstance(raw_output, dict) or not {"parsed", "parsing_error"} <= raw_output.keys():
        return raw_output
    if raw_output["parsing_error"] is not None:
        raise StructuredOutputError(
            f"{schema_name}: model output could not be parsed: {raw_output['parsing_error']!r}"
        )
    return raw_output["parsed"]


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Turn whatever the runnable returned into a validated ``schema`` instance.

    Accepts the ``include_raw=True`` envelope, an instance of ``schema``, any
    other pydantic model, or a plain dict.

    Raises:
        StructuredOutputError: If parsing failed or the payload does not
            validate against ``schema``.
    """
    payload = _unwrap_envelope(raw_output, schema.__name__)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif not isinstance(payload, dict):
        raise StructuredOutputError(f"{schema.__name__}: expected a JSON object, got {type(payload).__name__}")

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise StructuredOutputError(f"{schema.__name__}: structured output failed validation: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind ``schema`` to a ChatOpenAI model via ``with_structured_output``.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root)

    chat = ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=REQUEST_TIMEOUT_SECONDS,
        max_retries=REQUEST_MAX_RETRIES,
    )
    runnable = chat.with_structured_output(schema, method="function_calling", include_raw=True)
    logger.debug("Bound tool result schema %s to model %s", schema.__name__, model_name)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
