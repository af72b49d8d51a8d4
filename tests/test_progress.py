from __future__ import annotations

import random

import pytest

from mobile_flow.models import ProgressUpdate
from mobile_flow.progress import (
    ANDROID_MILESTONES,
    FAILED_PHASE,
    IOS_MILESTONES,
    PROGRESS_CEILING,
    ProgressTracker,
    estimate,
    match_milestone,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_milestones_set_phase_and_progress() -> None:
    progress, phase = estimate(10, "Starting", "> Task :app:mergeDebugResources", milestones=ANDROID_MILESTONES)
    assert (progress, phase) == (60, "Merging resources")

    progress, phase = estimate(10, "Starting", "CompileSwift normal arm64 App.swift", milestones=IOS_MILESTONES)
    assert (progress, phase) == (40, "Compiling Swift files")


def test_earlier_milestone_never_lowers_progress() -> None:
    progress, phase = estimate(75, "Processing DEX files", "> Task :app:preBuild", milestones=ANDROID_MILESTONES)

    assert progress == 75
    assert phase == "Running pre-build tasks"


def test_silent_phase_increments_only_when_interval_elapsed() -> None:
    assert estimate(30, "Compiling", "noise", milestones=ANDROID_MILESTONES) == (30, "Compiling")
    assert estimate(30, "Compiling", None, milestones=ANDROID_MILESTONES, interval_elapsed=True) == (31, "Compiling")
    assert estimate(PROGRESS_CEILING, "x", None, milestones=ANDROID_MILESTONES, interval_elapsed=True)[0] == 95


def test_estimate_is_monotonic_and_bounded_for_arbitrary_output() -> None:
    rng = random.Random(7)
    vocabulary = [
        "BUILD SUCCESSFUL",
        "> Task :app:preBuild",
        "> Task :app:package",
        "CodeSign /tmp/App.app",
        "Ld /tmp/App",
        "warning: unused variable",
        "",
        "compileJava",
    ]
    for milestones in (ANDROID_MILESTONES, IOS_MILESTONES):
        progress, phase = 10, "Starting"
        for _ in range(500):
            line = rng.choice(vocabulary + [None])
            new_progress, phase = estimate(
                progress, phase, line, milestones=milestones, interval_elapsed=rng.random() < 0.3
            )
            assert progress <= new_progress <= PROGRESS_CEILING
            progress = new_progress


def test_first_matching_milestone_wins() -> None:
    milestone = match_milestone("Ld /tmp/App normal arm64 CodeSign", IOS_MILESTONES)

    assert milestone is not None
    assert milestone.phase == "Linking"


def test_tracker_rate_limits_updates() -> None:
    clock = FakeClock()
    reported: list[ProgressUpdate] = []
    tracker = ProgressTracker(milestones=ANDROID_MILESTONES, reporter=reported.append, min_interval=2.0, clock=clock)

    tracker.start("Starting Gradle build")
    assert tracker.observe("> Task :app:compileKotlin") is None
    clock.advance(1.0)
    assert tracker.tick() is None
    clock.advance(1.5)
    update = tracker.tick()

    assert update is not None
    assert update.phase == "Compiling Kotlin"
    assert update.progress == 41
    assert update.elapsed_seconds == pytest.approx(2.5)
    assert [item.progress for item in reported] == [10, 41]


def test_tracker_finish_success_reaches_100() -> None:
    tracker = ProgressTracker(milestones=IOS_MILESTONES, clock=FakeClock())
    tracker.start("Starting Xcode build")

    update = tracker.finish(True)

    assert update.progress == 100
    assert update.total == 100
    assert tracker.updates[-1] == update


def test_tracker_finish_failure_keeps_progress() -> None:
    tracker = ProgressTracker(milestones=ANDROID_MILESTONES, clock=FakeClock())
    tracker.start("Starting Gradle build")
    tracker.observe("> Task :app:mergeDebugResources")

    update = tracker.finish(False)

    assert update.progress == 60
    assert update.phase == FAILED_PHASE


def test_tracker_requires_positive_interval() -> None:
    with pytest.raises(ValueError):
        ProgressTracker(milestones=ANDROID_MILESTONES, min_interval=0)
