from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

_VERSION_PART_RE = re.compile(r"\d+")


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_platform_version(version: str | int | float | None) -> tuple[int, ...]:
    """Turn a platform version into a numerically comparable tuple.

    ``"17.10"`` sorts above ``"17.5"``; a missing or unparseable version
    returns an empty tuple, which sorts below every real version.
    """
    if version is None:
        return ()
    if isinstance(version, bool):
        return ()
    if isinstance(version, int):
        return (version,)
    return tuple(int(part) for part in _VERSION_PART_RE.findall(str(version)))


class Platform(str, Enum):
    IOS = "iOS"
    ANDROID = "Android"


class Device(BaseModel):
    """A simulator, emulator or physical device offered by the host tooling."""

    model_config = ConfigDict(frozen=True)

    identifier: str = Field(min_length=1)
    name: str | None = None
    platform_version: str | None = None
    is_running: bool = False
    is_compatible: bool = True

    @property
    def version_key(self) -> tuple[int, ...]:
        return parse_platform_version(self.platform_version)


class CommandResult(BaseModel):
    """Structured outcome of one external process invocation."""

    program: str
    args: list[str] = Field(default_factory=list)
    exit_code: int | None = None
    signal: str | None = None
    stdout: str = ""
    stderr: str = ""
    success: bool = False
    duration_seconds: float = Field(default=0.0, ge=0.0)
    timed_out: bool = False

    def describe_failure(self) -> str:
        if self.success:
            return ""
        if self.stderr.strip():
            return self.stderr.strip()
        if self.timed_out:
            return f"{self.program} timed out"
        if self.signal:
            return f"{self.program} terminated by {self.signal}"
        return f"{self.program} failed: exit code {self.exit_code if self.exit_code is not None else 'unknown'}"


class BuildAttempt(BaseModel):
    """Attempt bookkeeping for the bounded build/recovery loop."""

    attempt_number: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    last_error: str | None = None

    @model_validator(mode="after")
    def _attempts_within_budget(self) -> "BuildAttempt":
        if self.attempt_number > self.max_attempts:
            raise ValueError(
                f"attempt_number ({self.attempt_number}) exceeds max_attempts ({self.max_attempts})"
            )
        return self

    @property
    def exhausted(self) -> bool:
        return self.attempt_number >= self.max_attempts


class ProgressUpdate(BaseModel):
    """Heartbeat payload emitted on the progress side channel."""

    phase: str
    progress: int = Field(ge=0, le=100)
    total: int = 100
    elapsed_seconds: float = Field(default=0.0, ge=0.0)


class CheckpointStatus(str, Enum):
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


class PendingInterrupt(BaseModel):
    interrupt_id: str = Field(min_length=1)
    node: str = Field(min_length=1)
    prompt: dict[str, Any] = Field(default_factory=dict)
    resume_fields: list[str] = Field(default_factory=list)
    resume_schema: dict[str, Any] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """Persisted snapshot of one thread: state, position and suspension marker."""

    thread_id: str = Field(min_length=1)
    workflow: str = Field(min_length=1)
    status: CheckpointStatus
    state: dict[str, Any] = Field(default_factory=dict)
    next_node: str | None = None
    pending: PendingInterrupt | None = None
    errors: list[str] = Field(default_factory=list)
    step: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _status_matches_position(self) -> "Checkpoint":
        if self.status == CheckpointStatus.INTERRUPTED and self.pending is None:
            raise ValueError("interrupted checkpoint requires a pending interrupt")
        if self.status != CheckpointStatus.INTERRUPTED and self.pending is not None:
            raise ValueError(f"{self.status.value} checkpoint cannot carry a pending interrupt")
        if self.status == CheckpointStatus.RUNNING and not self.next_node:
            raise ValueError("running checkpoint requires next_node")
        return self


class ResumeToken(BaseModel):
    """Identity of a suspended node, handed to the caller on interruption."""

    model_config = ConfigDict(frozen=True)

    thread_id: str = Field(min_length=1)
    node: str = Field(min_length=1)
    interrupt_id: str = Field(min_length=1)


class Completed(BaseModel):
    status: Literal["completed"] = "completed"
    thread_id: str
    state: dict[str, Any]


class Interrupted(BaseModel):
    status: Literal["interrupted"] = "interrupted"
    thread_id: str
    token: ResumeToken
    prompt: dict[str, Any]
    resume_schema: dict[str, Any] = Field(default_factory=dict)


class Failed(BaseModel):
    status: Literal["failed"] = "failed"
    thread_id: str
    errors: list[str]
    state: dict[str, Any] = Field(default_factory=dict)


RunResult = Completed | Interrupted | Failed
