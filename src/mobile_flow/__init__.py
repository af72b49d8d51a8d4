from importlib.metadata import PackageNotFoundError, version

from .build import AndroidBuildStrategy, BuildOutcome, BuildStrategy, IOSBuildStrategy, strategy_for
from .canonical import state_fingerprint, to_canonical_json
from .checkpoint import Checkpointer, FileCheckpointer, MemoryCheckpointer, SqliteCheckpointer
from .commands import CommandRunner
from .devices import select_device
from .errors import (
    CheckpointError,
    GraphConfigurationError,
    GraphRecursionError,
    ResumeMismatchError,
    RetryExhaustedError,
    RouterError,
    StateMergeError,
    ThreadBusyError,
    ThreadFinishedError,
    ToolValidationError,
    WorkflowError,
)
from .executor import GraphExecutor
from .graph import END, BaseNode, ConditionalEdge, FunctionNode, NodeContext, Router, StaticEdge, Suspend, WorkflowGraph
from .models import (
    BuildAttempt,
    Checkpoint,
    CheckpointStatus,
    CommandResult,
    Completed,
    Device,
    Failed,
    Interrupted,
    PendingInterrupt,
    Platform,
    ProgressUpdate,
    ResumeToken,
    RunResult,
)
from .progress import ProgressTracker, estimate
from .retry import RetryController, RetryState
from .settings import RuntimeSettings
from .state import FieldSpec, MergePolicy, StateSchema
from .tools import LLMToolGateway, ScriptedToolGateway, ToolGateway, ToolSpec


def get_version() -> str:
    try:
        return version("mobile-flow")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AndroidBuildStrategy",
    "BaseNode",
    "BuildAttempt",
    "BuildOutcome",
    "BuildStrategy",
    "Checkpoint",
    "CheckpointError",
    "CheckpointStatus",
    "Checkpointer",
    "CommandResult",
    "CommandRunner",
    "Completed",
    "ConditionalEdge",
    "Device",
    "END",
    "Failed",
    "FieldSpec",
    "FileCheckpointer",
    "FunctionNode",
    "GraphConfigurationError",
    "GraphExecutor",
    "GraphRecursionError",
    "IOSBuildStrategy",
    "Interrupted",
    "LLMToolGateway",
    "MemoryCheckpointer",
    "MergePolicy",
    "NodeContext",
    "PendingInterrupt",
    "Platform",
    "ProgressTracker",
    "ProgressUpdate",
    "ResumeMismatchError",
    "ResumeToken",
    "RetryController",
    "RetryExhaustedError",
    "RetryState",
    "Router",
    "RouterError",
    "RunResult",
    "RuntimeSettings",
    "ScriptedToolGateway",
    "SqliteCheckpointer",
    "StateMergeError",
    "StateSchema",
    "StaticEdge",
    "Suspend",
    "ThreadBusyError",
    "ThreadFinishedError",
    "ToolGateway",
    "ToolSpec",
    "ToolValidationError",
    "WorkflowError",
    "WorkflowGraph",
    "estimate",
    "get_version",
    "select_device",
    "state_fingerprint",
    "to_canonical_json",
]
