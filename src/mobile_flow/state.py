"""Shared workflow state and its merge-policy table."""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import GraphConfigurationError, StateMergeError

logger = logging.getLogger(__name__)


class MergePolicy(str, Enum):
    OVERWRITE = "overwrite"
    APPEND = "append"


@dataclass(frozen=True)
class FieldSpec:
    policy: MergePolicy = MergePolicy.OVERWRITE
    description: str = ""


def overwrite(description: str = "") -> FieldSpec:
    return FieldSpec(policy=MergePolicy.OVERWRITE, description=description)


def append(description: str = "") -> FieldSpec:
    return FieldSpec(policy=MergePolicy.APPEND, description=description)


class StateSchema:
    """Declared fields of a workflow's SharedState, one merge policy each.

    Overwrite fields start as ``None`` and take the latest patched value.
    Append fields start as an empty list and concatenate every patched
    sequence in order. Patches are partial: fields a patch does not name
    keep their current value.
    """

    def __init__(self, name: str, fields: Mapping[str, FieldSpec]) -> None:
        if not name.strip():
            raise GraphConfigurationError("State schema name must be non-empty")
        if not fields:
            raise GraphConfigurationError(f"State schema {name!r} declares no fields")
        for field_name, spec in fields.items():
            if not isinstance(field_name, str) or not field_name.strip():
                raise GraphConfigurationError(f"State schema {name!r} has an invalid field name: {field_name!r}")
            if not isinstance(spec, FieldSpec):
                raise GraphConfigurationError(
                    f"State field {name}.{field_name} must be declared with a FieldSpec, got {type(spec).__name__}"
                )
        self.name = name
        self._fields = dict(fields)

    def __contains__(self, field_name: object) -> bool:
        return field_name in self._fields

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self._fields)

    def policy_for(self, field_name: str) -> MergePolicy:
        try:
            return self._fields[field_name].policy
        except KeyError as exc:
            raise StateMergeError(f"State {self.name!r} has no field {field_name!r}") from exc

    def initial_state(self, patch: Mapping[str, Any] | None = None) -> dict[str, Any]:
        state: dict[str, Any] = {
            field_name: [] if spec.policy == MergePolicy.APPEND else None
            for field_name, spec in self._fields.items()
        }
        return self.merge(state, patch or {})

    def validate_patch(self, patch: Mapping[str, Any]) -> None:
        """Raise ``StateMergeError`` if ``patch`` cannot be merged."""
        if not isinstance(patch, Mapping):
            raise StateMergeError(f"State patch must be a mapping, got {type(patch).__name__}")
        unknown = sorted(key for key in patch if key not in self._fields)
        if unknown:
            raise StateMergeError(f"State {self.name!r} has no merge policy for field(s): {', '.join(unknown)}")
        for field_name, value in patch.items():
            if self._fields[field_name].policy == MergePolicy.APPEND and not isinstance(value, (list, tuple)):
                raise StateMergeError(
                    f"Append field {field_name!r} requires a list, got {type(value).__name__}"
                )

    def merge(self, state: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
        """Return a new state with ``patch`` applied; ``state`` is not mutated."""
        self.validate_patch(patch)
        merged = copy.deepcopy(dict(state))
        for field_name, value in patch.items():
            value = copy.deepcopy(value)
            if self._fields[field_name].policy == MergePolicy.APPEND:
                merged[field_name] = list(merged.get(field_name) or []) + list(value)
            else:
                merged[field_name] = value
        return merged

    def resume_patch(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """The part of a resume payload that can be merged before the node re-runs.

        Only overwrite fields are taken; re-applying them from the node's own
        patch is idempotent, whereas append fields would be doubled.
        """
        return {
            key: value
            for key, value in payload.items()
            if key in self._fields and self._fields[key].policy == MergePolicy.OVERWRITE
        }
