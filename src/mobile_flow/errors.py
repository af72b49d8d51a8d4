from __future__ import annotations

from pydantic import ValidationError


class WorkflowError(RuntimeError):
    """Base class for every error raised by the workflow engine."""


class GraphConfigurationError(WorkflowError):
    """The graph topology or state schema is invalid.

    Raised while a ``WorkflowGraph`` is constructed, before any run is accepted.
    """


class RouterError(GraphConfigurationError):
    """A router returned a node name outside its declared candidates."""

    def __init__(self, router: str, returned: object, candidates: tuple[str, ...]) -> None:
        self.router = router
        self.returned = returned
        self.candidates = candidates
        super().__init__(
            f"Router {router!r} returned {returned!r}; declared candidates: {', '.join(candidates)}"
        )


class StateMergeError(GraphConfigurationError):
    """A patch cannot be merged under the state's merge-policy table."""


class ToolValidationError(WorkflowError):
    """A tool payload failed its declared schema at the tool boundary."""

    def __init__(self, tool_id: str, direction: str, detail: ValidationError | str) -> None:
        self.tool_id = tool_id
        self.direction = direction
        self.detail = detail
        super().__init__(f"Tool {tool_id!r} {direction} failed validation: {detail}")


class ThreadBusyError(WorkflowError):
    """Another run currently holds the lease for this thread."""


class ResumeMismatchError(WorkflowError):
    """A resume token or payload does not match the suspended node."""


class ThreadFinishedError(WorkflowError):
    """The thread already reached a terminal status and cannot be run again."""


class GraphRecursionError(WorkflowError):
    """A single run executed more node steps than the recursion limit allows."""


class CheckpointError(WorkflowError):
    """A stored checkpoint could not be read or validated."""


class RetryExhaustedError(WorkflowError):
    """An attempt was started after the attempt budget was used up."""
