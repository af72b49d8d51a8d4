"""Node, edge and router registry for a fixed workflow topology.

A ``WorkflowGraph`` is built from plain data (a list of nodes and a list of
typed edges) and validated once at construction. Nothing about the topology
can change after that.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel

from .errors import GraphConfigurationError, RouterError
from .state import MergePolicy, StateSchema

logger = logging.getLogger(__name__)

END = "__end__"


@dataclass(frozen=True)
class NodeContext:
    """Per-step context handed to ``BaseNode.execute``.

    ``resume`` is the validated resume payload when the node is being
    re-entered after a suspension, and ``None`` on a fresh execution.
    """

    thread_id: str
    step: int = 0
    resume: dict[str, Any] | None = None

    @property
    def resuming(self) -> bool:
        return self.resume is not None


@dataclass(frozen=True)
class Suspend:
    """Returned by a node that needs an external value before it can finish.

    ``prompt`` is shown to the caller; ``patch`` is merged before the
    checkpoint is written.
    """

    prompt: dict[str, Any]
    patch: dict[str, Any] = field(default_factory=dict)


NodeOutput = Mapping[str, Any] | Suspend | None


class BaseNode(ABC):
    """A named unit of work. Nodes hold configuration only, never thread state."""

    resume_model: ClassVar[type[BaseModel] | None] = None

    def __init__(self, name: str) -> None:
        if not name or not name.strip():
            raise GraphConfigurationError("Node name must be non-empty")
        if name == END:
            raise GraphConfigurationError(f"{END!r} is reserved for the end marker")
        self.name = name

    @abstractmethod
    def execute(self, state: Mapping[str, Any], context: NodeContext) -> NodeOutput | Awaitable[NodeOutput]:
        """Return a partial state patch, or ``Suspend`` to pause for input."""

    def resume_schema(self) -> type[BaseModel] | None:
        return self.resume_model

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FunctionNode(BaseNode):
    """Adapts a plain ``(state, context) -> patch`` callable into a node."""

    def __init__(
        self,
        name: str,
        func: Callable[[Mapping[str, Any], NodeContext], NodeOutput | Awaitable[NodeOutput]],
        *,
        resume_model: type[BaseModel] | None = None,
    ) -> None:
        super().__init__(name)
        self._func = func
        self._resume_model = resume_model

    def execute(self, state: Mapping[str, Any], context: NodeContext) -> NodeOutput | Awaitable[NodeOutput]:
        return self._func(state, context)

    def resume_schema(self) -> type[BaseModel] | None:
        return self._resume_model


@dataclass(frozen=True)
class Router:
    """Conditional edge selector with a fixed candidate set."""

    name: str
    candidates: tuple[str, ...]
    route: Callable[[Mapping[str, Any]], str]

    def __call__(self, state: Mapping[str, Any]) -> str:
        target = self.route(state)
        if target not in self.candidates:
            raise RouterError(self.name, target, self.candidates)
        return target


@dataclass(frozen=True)
class StaticEdge:
    source: str
    target: str


@dataclass(frozen=True)
class ConditionalEdge:
    source: str
    router: Router


Edge = StaticEdge | ConditionalEdge


class WorkflowGraph:
    """Validated node/edge registry for one workflow definition.

    Args:
        name: Workflow identifier stored on every checkpoint.
        state_schema: Merge-policy table for the workflow's SharedState.
        nodes: Every node of the graph; names must be unique.
        edges: Exactly one outgoing edge per node. Terminal nodes use a
            static edge to ``END``.
        start: Name of the first node of a fresh thread.
        failure_node: Optional node that receives control on node
            exceptions and fatal errors.
        errors_field: Optional append field that collects node exception
            messages.
        fatal_errors_field: Optional append field; when a patch makes it
            non-empty, control moves straight to ``failure_node``.

    Raises:
        GraphConfigurationError: If the topology or schema is invalid.
    """

    def __init__(
        self,
        *,
        name: str,
        state_schema: StateSchema,
        nodes: Sequence[BaseNode],
        edges: Sequence[Edge],
        start: str,
        failure_node: str | None = None,
        errors_field: str | None = None,
        fatal_errors_field: str | None = None,
    ) -> None:
        self.name = name
        self.state_schema = state_schema
        self.start = start
        self.failure_node = failure_node
        self.errors_field = errors_field
        self.fatal_errors_field = fatal_errors_field

        self._nodes: dict[str, BaseNode] = {}
        for node in nodes:
            if node.name in self._nodes:
                raise GraphConfigurationError(f"Duplicate node name in workflow {name!r}: {node.name}")
            self._nodes[node.name] = node

        self._edges: dict[str, Edge] = {}
        for edge in edges:
            if edge.source in self._edges:
                raise GraphConfigurationError(
                    f"Node {edge.source!r} has more than one outgoing edge in workflow {name!r}"
                )
            self._edges[edge.source] = edge

        self.validate()

    @property
    def node_names(self) -> tuple[str, ...]:
        return tuple(self._nodes)

    @property
    def routers(self) -> tuple[Router, ...]:
        return tuple(edge.router for edge in self._edges.values() if isinstance(edge, ConditionalEdge))

    def node(self, name: str) -> BaseNode:
        try:
            return self._nodes[name]
        except KeyError as exc:
            raise GraphConfigurationError(f"Workflow {self.name!r} has no node named {name!r}") from exc

    def edge(self, source: str) -> Edge:
        return self._edges[source]

    def targets(self, source: str) -> tuple[str, ...]:
        edge = self._edges[source]
        if isinstance(edge, StaticEdge):
            return (edge.target,)
        return edge.router.candidates

    def next_node(self, source: str, state: Mapping[str, Any]) -> str:
        edge = self._edges[source]
        if isinstance(edge, StaticEdge):
            return edge.target
        return edge.router(state)

    def validate(self) -> None:
        """Check the topology once. Raises ``GraphConfigurationError``."""
        if not self._nodes:
            raise GraphConfigurationError(f"Workflow {self.name!r} has no nodes")
        if self.start not in self._nodes:
            raise GraphConfigurationError(f"Start node {self.start!r} is not registered")
        if self.failure_node is not None and self.failure_node not in self._nodes:
            raise GraphConfigurationError(f"Failure node {self.failure_node!r} is not registered")

        for field_name in (self.errors_field, self.fatal_errors_field):
            if field_name is None:
                continue
            if field_name not in self.state_schema:
                raise GraphConfigurationError(f"State schema has no field {field_name!r}")
            if self.state_schema.policy_for(field_name) != MergePolicy.APPEND:
                raise GraphConfigurationError(f"Error field {field_name!r} must use the append policy")

        for source, edge in self._edges.items():
            if source not in self._nodes:
                raise GraphConfigurationError(f"Edge source {source!r} is not a registered node")
            if isinstance(edge, ConditionalEdge):
                if not edge.router.candidates:
                    raise GraphConfigurationError(f"Router {edge.router.name!r} declares no candidates")
                if len(set(edge.router.candidates)) != len(edge.router.candidates):
                    raise GraphConfigurationError(f"Router {edge.router.name!r} declares duplicate candidates")
            for target in self.targets(source):
                if target != END and target not in self._nodes:
                    raise GraphConfigurationError(
                        f"Edge {source!r} -> {target!r} targets a node that is not registered"
                    )

        missing = [name for name in self._nodes if name not in self._edges]
        if missing:
            raise GraphConfigurationError(f"Node(s) without an outgoing edge: {', '.join(missing)}")

        # Every node must be able to reach END.
        predecessors: dict[str, set[str]] = {name: set() for name in (*self._nodes, END)}
        for source in self._edges:
            for target in self.targets(source):
                predecessors[target].add(source)
        can_finish = {END}
        queue: deque[str] = deque([END])
        while queue:
            current = queue.popleft()
            for previous in predecessors[current]:
                if previous not in can_finish:
                    can_finish.add(previous)
                    queue.append(previous)
        stranded = [name for name in self._nodes if name not in can_finish]
        if stranded:
            raise GraphConfigurationError(f"Node(s) that can never reach the end: {', '.join(stranded)}")

        reachable = {self.start}
        if self.failure_node is not None:
            reachable.add(self.failure_node)
        queue = deque(reachable)
        while queue:
            current = queue.popleft()
            for target in self.targets(current):
                if target != END and target not in reachable:
                    reachable.add(target)
                    queue.append(target)
        for name in self._nodes:
            if name not in reachable:
                logger.warning("Workflow %s: node %s is unreachable from %s", self.name, name, self.start)
