"""Sequential, checkpointed execution of a ``WorkflowGraph``."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .checkpoint import Checkpointer
from .errors import (
    CheckpointError,
    GraphConfigurationError,
    GraphRecursionError,
    ResumeMismatchError,
    ThreadFinishedError,
    WorkflowError,
)
from .graph import END, BaseNode, NodeContext, Suspend, WorkflowGraph
from .models import (
    Checkpoint,
    CheckpointStatus,
    Completed,
    Failed,
    Interrupted,
    PendingInterrupt,
    ResumeToken,
    RunResult,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_RECURSION_LIMIT = 200


@dataclass
class _Cursor:
    """Mutable position of one ``run`` call; never shared between calls."""

    thread_id: str
    state: dict[str, Any]
    node: str
    step: int
    errors: list[str] = field(default_factory=list)
    resume: dict[str, Any] | None = None
    failing: bool = False


async def _drive(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class GraphExecutor:
    """Runs one workflow graph against a checkpointer.

    ``run`` holds the thread's checkpoint lease for its whole duration, so
    two calls on the same thread never interleave node executions. With
    ``conflict_policy="wait"`` the second call blocks until the first
    returns; with ``"reject"`` it raises ``ThreadBusyError``.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        checkpointer: Checkpointer,
        *,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        conflict_policy: str = "wait",
    ) -> None:
        if recursion_limit < 1:
            raise ValueError(f"recursion_limit must be >= 1, got: {recursion_limit}")
        if conflict_policy not in {"wait", "reject"}:
            raise ValueError(f"conflict_policy must be 'wait' or 'reject', got: {conflict_policy!r}")
        self.graph = graph
        self.checkpointer = checkpointer
        self.recursion_limit = recursion_limit
        self.conflict_policy = conflict_policy

    def run(
        self,
        thread_id: str,
        input_patch: Mapping[str, Any] | None = None,
        *,
        resume_token: ResumeToken | None = None,
    ) -> RunResult:
        """Advance ``thread_id`` until it completes, fails or suspends.

        Args:
            thread_id: Stable identifier of the workflow thread.
            input_patch: Initial state for a new thread, extra state for a
                thread recovering from a crash, or the resume payload for a
                suspended thread.
            resume_token: Optional token from a previous ``Interrupted``
                result; when given it must match the stored interrupt.

        Returns:
            ``Completed``, ``Interrupted`` or ``Failed``.

        Raises:
            ThreadBusyError: The thread is running elsewhere and the
                conflict policy is ``reject``.
            ThreadFinishedError: The thread already completed or failed.
            ResumeMismatchError: The token or resume payload does not match
                the suspended node.
            GraphRecursionError: The step budget for this call ran out.
            GraphConfigurationError: A router returned an undeclared name or
                a patch names an unknown field.
        """
        if not thread_id or not thread_id.strip():
            raise ValueError("thread_id must be non-empty")
        patch = dict(input_patch or {})
        with self.checkpointer.lease(thread_id, blocking=self.conflict_policy == "wait"):
            cursor = self._open(thread_id, patch, resume_token)
            return self._loop(cursor)

    def resume(self, token: ResumeToken, payload: Mapping[str, Any]) -> RunResult:
        return self.run(token.thread_id, payload, resume_token=token)

    def get_checkpoint(self, thread_id: str) -> Checkpoint | None:
        return self.checkpointer.load(thread_id)

    # ------------------------------------------------------------------
    # Thread bootstrap
    # ------------------------------------------------------------------

    def _open(self, thread_id: str, patch: dict[str, Any], resume_token: ResumeToken | None) -> _Cursor:
        schema = self.graph.state_schema
        checkpoint = self.checkpointer.load(thread_id)

        if checkpoint is None:
            if resume_token is not None:
                raise ResumeMismatchError(f"Thread {thread_id!r} has no suspended node to resume")
            logger.info("Starting workflow=%s thread=%s at %s", self.graph.name, thread_id, self.graph.start)
            return _Cursor(
                thread_id=thread_id,
                state=schema.initial_state(patch),
                node=self.graph.start,
                step=0,
            )

        if checkpoint.workflow != self.graph.name:
            raise ResumeMismatchError(
                f"Thread {thread_id!r} belongs to workflow {checkpoint.workflow!r}, not {self.graph.name!r}"
            )
        if checkpoint.status in (CheckpointStatus.COMPLETED, CheckpointStatus.FAILED):
            raise ThreadFinishedError(f"Thread {thread_id!r} already {checkpoint.status.value}")

        if checkpoint.status == CheckpointStatus.INTERRUPTED:
            pending = checkpoint.pending
            if pending is None:
                raise CheckpointError(
                    f"Interrupted checkpoint for thread {thread_id!r} has no pending interrupt"
                )
            if resume_token is not None and (
                resume_token.thread_id != thread_id
                or resume_token.node != pending.node
                or resume_token.interrupt_id != pending.interrupt_id
            ):
                raise ResumeMismatchError(
                    f"Resume token {resume_token.node}/{resume_token.interrupt_id} does not match "
                    f"suspended node {pending.node}/{pending.interrupt_id}"
                )
            resume = self._validate_resume(self.graph.node(pending.node), patch)
            logger.info("Resuming workflow=%s thread=%s at %s", self.graph.name, thread_id, pending.node)
            return _Cursor(
                thread_id=thread_id,
                state=schema.merge(checkpoint.state, schema.resume_patch(resume)),
                node=pending.node,
                step=checkpoint.step,
                errors=list(checkpoint.errors),
                resume=resume,
                failing=pending.node == self.graph.failure_node,
            )

        # A running checkpoint means the previous process stopped mid-run.
        if checkpoint.next_node is None:
            raise CheckpointError(f"Running checkpoint for thread {thread_id!r} has no next node")
        if resume_token is not None:
            raise ResumeMismatchError(f"Thread {thread_id!r} is not suspended")
        logger.warning(
            "Recovering workflow=%s thread=%s at %s after an interrupted run",
            self.graph.name,
            thread_id,
            checkpoint.next_node,
        )
        self.graph.node(checkpoint.next_node)
        return _Cursor(
            thread_id=thread_id,
            state=schema.merge(checkpoint.state, patch),
            node=checkpoint.next_node,
            step=checkpoint.step,
            errors=list(checkpoint.errors),
            failing=checkpoint.next_node == self.graph.failure_node,
        )

    @staticmethod
    def _validate_resume(node: BaseNode, payload: Mapping[str, Any]) -> dict[str, Any]:
        model = node.resume_schema()
        if model is None:
            raise GraphConfigurationError(f"Node {node.name!r} suspended without declaring a resume schema")
        try:
            return model.model_validate(dict(payload)).model_dump(mode="json")
        except ValidationError as exc:
            raise ResumeMismatchError(f"Resume payload for node {node.name!r} is invalid: {exc}") from exc

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _loop(self, cursor: _Cursor) -> RunResult:
        graph = self.graph
        schema = graph.state_schema
        steps_this_run = 0

        while True:
            if steps_this_run >= self.recursion_limit:
                self._save(cursor, CheckpointStatus.RUNNING, next_node=cursor.node)
                raise GraphRecursionError(
                    f"Workflow {graph.name!r} thread {cursor.thread_id!r} exceeded "
                    f"{self.recursion_limit} steps; stopped before {cursor.node!r}"
                )
            steps_this_run += 1
            cursor.step += 1

            node = graph.node(cursor.node)
            context = NodeContext(thread_id=cursor.thread_id, step=cursor.step, resume=cursor.resume)
            cursor.resume = None
            if node.name == graph.failure_node:
                cursor.failing = True

            logger.debug("Executing node=%s thread=%s step=%d", node.name, cursor.thread_id, cursor.step)
            try:
                output = self._execute(node, cursor.state, context)
                if isinstance(output, Suspend):
                    cursor.state = schema.merge(cursor.state, output.patch)
                else:
                    cursor.state = schema.merge(cursor.state, output or {})
            except GraphConfigurationError:
                raise
            except Exception as exc:  # noqa: BLE001 - node failures become workflow errors.
                message = f"{node.name}: {type(exc).__name__}: {exc}"
                logger.exception("Node %s failed on thread %s", node.name, cursor.thread_id)
                cursor.errors.append(message)
                if graph.errors_field is not None:
                    cursor.state = schema.merge(cursor.state, {graph.errors_field: [message]})
                if graph.failure_node is not None and node.name != graph.failure_node:
                    cursor.node = graph.failure_node
                    self._save(cursor, CheckpointStatus.RUNNING, next_node=cursor.node)
                    continue
                return self._fail(cursor)

            if isinstance(output, Suspend):
                return self._suspend(cursor, node, output)

            logger.debug("Finished node=%s thread=%s", node.name, cursor.thread_id)
            next_node = self._resolve_next(node.name, cursor.state)
            if next_node == END:
                if cursor.failing:
                    return self._fail(cursor)
                self._save(cursor, CheckpointStatus.COMPLETED, next_node=None)
                logger.info("Completed workflow=%s thread=%s", graph.name, cursor.thread_id)
                return Completed(thread_id=cursor.thread_id, state=copy.deepcopy(cursor.state))

            cursor.node = next_node
            self._save(cursor, CheckpointStatus.RUNNING, next_node=next_node)

    def _execute(self, node: BaseNode, state: dict[str, Any], context: NodeContext) -> Any:
        output = node.execute(copy.deepcopy(state), context)
        if inspect.isawaitable(output):
            output = asyncio.run(_drive(output))
        if output is not None and not isinstance(output, (Mapping, Suspend)):
            raise TypeError(f"Node {node.name!r} returned {type(output).__name__}; expected a mapping or Suspend")
        return output

    def _resolve_next(self, source: str, state: dict[str, Any]) -> str:
        graph = self.graph
        fatal_field = graph.fatal_errors_field
        if (
            fatal_field is not None
            and graph.failure_node is not None
            and source != graph.failure_node
            and state.get(fatal_field)
        ):
            logger.info("Fatal errors reported by %s; routing to %s", source, graph.failure_node)
            return graph.failure_node
        return graph.next_node(source, state)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _suspend(self, cursor: _Cursor, node: BaseNode, output: Suspend) -> Interrupted:
        model = node.resume_schema()
        if model is None:
            raise GraphConfigurationError(f"Node {node.name!r} suspended without declaring a resume schema")
        pending = PendingInterrupt(
            interrupt_id=uuid.uuid4().hex,
            node=node.name,
            prompt=output.prompt,
            resume_fields=list(model.model_fields),
            resume_schema=model.model_json_schema(),
        )
        self._save(cursor, CheckpointStatus.INTERRUPTED, next_node=node.name, pending=pending)
        logger.info("Suspended workflow=%s thread=%s at %s", self.graph.name, cursor.thread_id, node.name)
        return Interrupted(
            thread_id=cursor.thread_id,
            token=ResumeToken(thread_id=cursor.thread_id, node=node.name, interrupt_id=pending.interrupt_id),
            prompt=copy.deepcopy(output.prompt),
            resume_schema=pending.resume_schema,
        )

    def _fail(self, cursor: _Cursor) -> Failed:
        errors = list(cursor.errors)
        fatal_field = self.graph.fatal_errors_field
        if fatal_field is not None:
            errors.extend(message for message in cursor.state.get(fatal_field) or [] if message not in errors)
        cursor.errors = errors
        self._save(cursor, CheckpointStatus.FAILED, next_node=None)
        logger.info("Failed workflow=%s thread=%s errors=%d", self.graph.name, cursor.thread_id, len(errors))
        return Failed(thread_id=cursor.thread_id, errors=errors, state=copy.deepcopy(cursor.state))

    def _save(
        self,
        cursor: _Cursor,
        status: CheckpointStatus,
        *,
        next_node: str | None,
        pending: PendingInterrupt | None = None,
    ) -> None:
        checkpoint = Checkpoint(
            thread_id=cursor.thread_id,
            workflow=self.graph.name,
            status=status,
            state=cursor.state,
            next_node=next_node,
            pending=pending,
            errors=cursor.errors,
            step=cursor.step,
            updated_at=utc_now(),
        )
        try:
            self.checkpointer.save(cursor.thread_id, checkpoint)
        except WorkflowError:
            raise
        except (OSError, TypeError, ValueError) as exc:
            raise WorkflowError(f"Could not persist checkpoint for thread {cursor.thread_id!r}: {exc}") from exc
