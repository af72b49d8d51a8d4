"""Deterministic JSON for checkpoint blobs and tool payloads.

Two checkpoints holding the same workflow state must serialize to the same
bytes, whichever node produced the values and in whatever order keys were
inserted. RFC 8785 (JCS) gives that; this module only folds the handful of
non-JSON values nodes tend to return into primitives first.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import date, datetime, time
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

JsonValue = bool | int | float | str | None | list[Any] | dict[str, Any]

_SCALARS = (bool, int, float, str, type(None))
_STRINGIFIED = (UUID, PurePath)
_TEMPORAL = (datetime, date, time)


def _as_primitive(value: Any, *, where: str) -> JsonValue:
    # Enum before scalars: str-valued enums are also instances of str.
    if isinstance(value, Enum):
        return _as_primitive(value.value, where=where)
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _as_primitive(value.model_dump(mode="json"), where=where)
    if isinstance(value, Mapping):
        return {str(key): _as_primitive(item, where=f"{where}.{key}") for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_primitive(item, where=f"{where}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, (set, frozenset)):
        members = [_as_primitive(item, where=f"{where}{{}}") for item in value]
        return sorted(members, key=repr)
    if isinstance(value, _TEMPORAL):
        return value.isoformat()
    if isinstance(value, _STRINGIFIED):
        return str(value)
    raise TypeError(f"Workflow value at {where} has type {type(value).__name__}, which has no JSON form")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` as RFC 8785 canonical JSON text.

    Raises:
        TypeError: A nested value (bytes, arbitrary objects) has no JSON form.
            The message names the path to it, e.g. ``$.state.build_attempt``.
    """
    return rfc8785.dumps(_as_primitive(value, where="$")).decode("utf-8")


def state_fingerprint(state: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON form of a workflow state."""
    return hashlib.sha256(to_canonical_json(state).encode("utf-8")).hexdigest()
