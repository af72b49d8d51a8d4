from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Any

import pytest

from mobile_flow.errors import GraphConfigurationError, RouterError
from mobile_flow.graph import END, ConditionalEdge, FunctionNode, Router, StaticEdge, WorkflowGraph
from mobile_flow.mobile_workflow import MobileServices, build_mobile_workflow
from mobile_flow.prd_workflow import build_prd_workflow
from mobile_flow.settings import RuntimeSettings
from mobile_flow.state import StateSchema, append, overwrite

SCHEMA = StateSchema("demo", {"value": overwrite(), "errors": append()})


def _node(name: str) -> FunctionNode:
    return FunctionNode(name, lambda state, context: {})


def _graph(**overrides: Any) -> WorkflowGraph:
    kwargs: dict[str, Any] = {
        "name": "demo",
        "state_schema": SCHEMA,
        "nodes": [_node("a"), _node("b")],
        "edges": [StaticEdge("a", "b"), StaticEdge("b", END)],
        "start": "a",
    }
    kwargs.update(overrides)
    return WorkflowGraph(**kwargs)


def test_valid_graph_exposes_topology() -> None:
    graph = _graph()

    assert graph.node_names == ("a", "b")
    assert graph.targets("a") == ("b",)
    assert graph.next_node("b", {}) == END


def test_duplicate_node_names_are_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="Duplicate node"):
        _graph(nodes=[_node("a"), _node("a")], edges=[StaticEdge("a", END)])


def test_unknown_edge_target_is_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="not registered"):
        _graph(edges=[StaticEdge("a", "missing"), StaticEdge("b", END)])


def test_router_candidate_must_be_registered() -> None:
    router = Router("pick", ("b", "ghost"), lambda state: "b")
    with pytest.raises(GraphConfigurationError, match="ghost"):
        _graph(edges=[ConditionalEdge("a", router), StaticEdge("b", END)])


def test_router_requires_unique_candidates() -> None:
    router = Router("pick", ("b", "b"), lambda state: "b")
    with pytest.raises(GraphConfigurationError, match="duplicate"):
        _graph(edges=[ConditionalEdge("a", router), StaticEdge("b", END)])


def test_every_node_needs_an_outgoing_edge() -> None:
    with pytest.raises(GraphConfigurationError, match="without an outgoing edge"):
        _graph(edges=[StaticEdge("a", "b")])


def test_two_edges_from_one_node_are_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="more than one outgoing edge"):
        _graph(edges=[StaticEdge("a", "b"), StaticEdge("a", END), StaticEdge("b", END)])


def test_cycle_without_exit_is_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="never reach the end"):
        _graph(edges=[StaticEdge("a", "b"), StaticEdge("b", "a")])


def test_start_and_failure_nodes_must_exist() -> None:
    with pytest.raises(GraphConfigurationError, match="Start node"):
        _graph(start="zzz")
    with pytest.raises(GraphConfigurationError, match="Failure node"):
        _graph(failure_node="zzz")


def test_error_fields_must_be_append_fields() -> None:
    with pytest.raises(GraphConfigurationError, match="append policy"):
        _graph(errors_field="value")
    with pytest.raises(GraphConfigurationError, match="no field"):
        _graph(fatal_errors_field="missing")


def test_end_is_a_reserved_node_name() -> None:
    with pytest.raises(GraphConfigurationError):
        _node(END)


def test_unreachable_node_only_warns(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="mobile_flow.graph"):
        graph = _graph(
            nodes=[_node("a"), _node("b"), _node("orphan")],
            edges=[StaticEdge("a", "b"), StaticEdge("b", END), StaticEdge("orphan", END)],
        )

    assert "orphan" in graph.node_names
    assert "orphan is unreachable" in caplog.text


def test_router_returning_undeclared_name_raises() -> None:
    router = Router("pick", ("b",), lambda state: "elsewhere")

    with pytest.raises(RouterError) as exc_info:
        router({})

    assert exc_info.value.returned == "elsewhere"


def _random_mobile_state(rng: random.Random) -> dict[str, Any]:
    scalars: list[Any] = [None, "", "value", True, False, 0, 1]
    state: dict[str, Any] = {}
    for name in (
        "user_input",
        "project_name",
        "package_name",
        "organization",
        "login_host",
        "valid_environment",
        "project_path",
        "build_successful",
        "target_device",
    ):
        state[name] = rng.choice(scalars)
    state["platform"] = rng.choice([None, "", "iOS", "Android"])
    state["deployment_status"] = rng.choice([None, "deployed", "failed"])
    maximum = rng.randint(1, 5)
    state["build_attempt"] = rng.choice(
        [None, {"attempt_number": rng.randint(0, maximum), "max_attempts": maximum, "last_error": None}]
    )
    state["workflow_fatal_error_messages"] = rng.choice([[], ["boom"]])
    return state


def _random_prd_state(rng: random.Random) -> dict[str, Any]:
    return {
        "prd_fatal_error_messages": rng.choice([[], ["bad request"]]),
        "feature_brief_approved": rng.choice([None, True, False]),
        "should_iterate": rng.choice([None, True, False]),
        "prd_approved": rng.choice([None, True, False]),
        "user_iteration_preference": rng.choice([None, True, False]),
        "gap_analysis_score": rng.choice([None, rng.uniform(0, 1), rng.uniform(0, 100)]),
    }


def test_workflow_routers_always_return_declared_candidates(tmp_path: Path) -> None:
    rng = random.Random(20240611)
    mobile = build_mobile_workflow(MobileServices(settings=RuntimeSettings(), repo_root=tmp_path))
    prd = build_prd_workflow(output_directory=tmp_path / "prd")

    for graph, make_state in ((mobile, _random_mobile_state), (prd, _random_prd_state)):
        assert graph.routers
        for _ in range(300):
            state = make_state(rng)
            for router in graph.routers:
                assert router(state) in router.candidates
