"""Build-progress estimation from streamed tool output.

``estimate`` is a pure step function; ``ProgressTracker`` wraps it with a
clock and a reporter so callers get rate-limited ``ProgressUpdate``
heartbeats on a side channel.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .models import Platform, ProgressUpdate

logger = logging.getLogger(__name__)

PROGRESS_START = 10
PROGRESS_CEILING = 95
PROGRESS_INCREMENT = 1
MIN_PROGRESS_INTERVAL_SECONDS = 2.0
FAILED_PHASE = "Build failed"
SUCCEEDED_PHASE = "Build completed"

ProgressReporter = Callable[[ProgressUpdate], None]


@dataclass(frozen=True)
class Milestone:
    keywords: tuple[str, ...]
    phase: str
    progress: int

    def matches(self, line: str) -> bool:
        return any(keyword in line for keyword in self.keywords)


ANDROID_MILESTONES: tuple[Milestone, ...] = (
    Milestone(("preBuild",), "Running pre-build tasks", 20),
    Milestone(("compileDebugKotlin", "compileKotlin"), "Compiling Kotlin", 40),
    Milestone(("compileDebugJavaWithJavac", "compileJava"), "Compiling Java", 50),
    Milestone(("mergeDebugResources", "mergeResources"), "Merging resources", 60),
    Milestone(("dexBuilder", "mergeDex"), "Processing DEX files", 75),
    Milestone(("packageDebug", "package"), "Packaging application", 85),
    Milestone(("BUILD SUCCESSFUL",), "Finalizing build", 95),
)

IOS_MILESTONES: tuple[Milestone, ...] = (
    Milestone(("Build settings",), "Preparing build settings", 20),
    Milestone(("ProcessInfoPlistFile",), "Processing Info.plist", 30),
    Milestone(("CompileSwift",), "Compiling Swift files", 40),
    Milestone(("CompileC",), "Compiling source files", 45),
    Milestone(("Ld ", "Link"), "Linking", 70),
    Milestone(("CodeSign",), "Code signing", 90),
)

MILESTONES_BY_PLATFORM: dict[Platform, tuple[Milestone, ...]] = {
    Platform.ANDROID: ANDROID_MILESTONES,
    Platform.IOS: IOS_MILESTONES,
}


def match_milestone(line: str, milestones: Sequence[Milestone]) -> Milestone | None:
    """First milestone in table order whose keyword appears in ``line``."""
    for milestone in milestones:
        if milestone.matches(line):
            return milestone
    return None


def estimate(
    prior_progress: int,
    prior_phase: str,
    line: str | None,
    *,
    milestones: Sequence[Milestone],
    interval_elapsed: bool = False,
    increment: int = PROGRESS_INCREMENT,
    ceiling: int = PROGRESS_CEILING,
) -> tuple[int, str]:
    """Fold one output line into a (progress, phase) estimate.

    Args:
        prior_progress: Progress reported so far.
        prior_phase: Phase label reported so far.
        line: New output line, or ``None`` for a silent heartbeat tick.
        milestones: Keyword table for the running toolchain.
        interval_elapsed: Whether the minimum reporting interval has passed
            since the last emitted update; only then does the silent-phase
            increment apply.
        increment: Silent-phase increment.
        ceiling: Upper bound while the process is still running.

    Returns:
        The new ``(progress, phase)``. Progress never goes below
        ``prior_progress``; the phase changes only on a milestone match.
    """
    progress = prior_progress
    phase = prior_phase
    if line:
        milestone = match_milestone(line, milestones)
        if milestone is not None:
            phase = milestone.phase
            progress = max(progress, min(milestone.progress, ceiling))
    if interval_elapsed and progress < ceiling:
        progress = min(ceiling, progress + increment)
    return max(prior_progress, progress), phase


class ProgressTracker:
    """Stateful estimator that emits ``ProgressUpdate`` at a bounded rate.

    ``observe`` is called for every output line and ``tick`` from a
    heartbeat timer. Internal estimates update on every call, but an update
    is only emitted once ``min_interval`` seconds have passed since the
    previous one. ``start`` and ``finish`` always emit.
    """

    def __init__(
        self,
        *,
        milestones: Sequence[Milestone],
        reporter: ProgressReporter | None = None,
        min_interval: float = MIN_PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if min_interval <= 0:
            raise ValueError(f"min_interval must be > 0, got: {min_interval}")
        self.milestones = tuple(milestones)
        self.reporter = reporter
        self.min_interval = min_interval
        self._clock = clock
        self._started_at = clock()
        self._last_emit = self._started_at
        self._progress = 0
        self._phase = "Starting"
        self.updates: list[ProgressUpdate] = []

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def phase(self) -> str:
        return self._phase

    def start(self, phase: str, progress: int = PROGRESS_START) -> ProgressUpdate:
        self._phase = phase
        self._progress = max(self._progress, progress)
        return self._emit(self._clock())

    def observe(self, line: str | None) -> ProgressUpdate | None:
        now = self._clock()
        due = now - self._last_emit >= self.min_interval
        self._progress, self._phase = estimate(
            self._progress,
            self._phase,
            line,
            milestones=self.milestones,
            interval_elapsed=due,
        )
        if due:
            return self._emit(now)
        return None

    def tick(self) -> ProgressUpdate | None:
        return self.observe(None)

    def finish(self, success: bool, phase: str | None = None) -> ProgressUpdate:
        if success:
            self._progress = 100
            self._phase = phase or SUCCEEDED_PHASE
        else:
            self._phase = phase or FAILED_PHASE
        return self._emit(self._clock())

    def _emit(self, now: float) -> ProgressUpdate:
        self._last_emit = now
        update = ProgressUpdate(
            phase=self._phase,
            progress=self._progress,
            elapsed_seconds=max(0.0, now - self._started_at),
        )
        self.updates.append(update)
        if self.reporter is not None:
            self.reporter(update)
        return update
