from __future__ import annotations

import pytest

from mobile_flow.errors import GraphConfigurationError, StateMergeError
from mobile_flow.state import FieldSpec, MergePolicy, StateSchema, append, overwrite


def _schema() -> StateSchema:
    return StateSchema("demo", {"name": overwrite(), "messages": append(), "count": overwrite()})


def test_initial_state_defaults_by_policy() -> None:
    state = _schema().initial_state({"name": "first"})

    assert state == {"name": "first", "messages": [], "count": None}


def test_merge_overwrites_and_appends_in_order() -> None:
    schema = _schema()
    state = schema.initial_state()

    state = schema.merge(state, {"name": "a", "messages": ["one"]})
    state = schema.merge(state, {"messages": ["two", "three"]})
    state = schema.merge(state, {"name": "b"})

    assert state["name"] == "b"
    assert state["messages"] == ["one", "two", "three"]
    assert state["count"] is None


def test_merge_does_not_mutate_inputs() -> None:
    schema = _schema()
    original = schema.initial_state({"messages": ["kept"]})
    patch = {"messages": [{"nested": 1}]}

    merged = schema.merge(original, patch)
    merged["messages"][1]["nested"] = 2

    assert original["messages"] == ["kept"]
    assert patch["messages"][0]["nested"] == 1


def test_merge_can_overwrite_with_none() -> None:
    schema = _schema()
    state = schema.merge(schema.initial_state({"name": "x"}), {"name": None})

    assert state["name"] is None


def test_unknown_field_is_rejected() -> None:
    schema = _schema()

    with pytest.raises(StateMergeError, match="undeclared"):
        schema.merge(schema.initial_state(), {"undeclared": 1})


def test_append_field_requires_a_list() -> None:
    schema = _schema()

    with pytest.raises(StateMergeError, match="requires a list"):
        schema.merge(schema.initial_state(), {"messages": "not a list"})


def test_state_merge_error_is_a_configuration_error() -> None:
    assert issubclass(StateMergeError, GraphConfigurationError)


def test_resume_patch_keeps_only_overwrite_fields() -> None:
    patch = _schema().resume_patch({"name": "n", "messages": ["m"], "extra": True})

    assert patch == {"name": "n"}


def test_schema_rejects_bad_declarations() -> None:
    with pytest.raises(GraphConfigurationError):
        StateSchema("empty", {})
    with pytest.raises(GraphConfigurationError):
        StateSchema("raw", {"field": MergePolicy.APPEND})  # type: ignore[dict-item]

    assert StateSchema("ok", {"f": FieldSpec()}).policy_for("f") == MergePolicy.OVERWRITE
