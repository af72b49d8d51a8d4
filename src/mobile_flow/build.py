"""Platform build and deploy strategies for generated mobile projects."""

from __future__ import annotations

import logging
import os
import stat
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from .commands import CommandRunner
from .models import CommandResult, Device, Platform
from .progress import (
    ANDROID_MILESTONES,
    IOS_MILESTONES,
    MIN_PROGRESS_INTERVAL_SECONDS,
    PROGRESS_START,
    Milestone,
    ProgressReporter,
    ProgressTracker,
)

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 1_000


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text[-limit:] if len(text) > limit else text


@dataclass(frozen=True)
class BuildOutcome:
    success: bool
    message: str
    output_tail: str = ""
    error_tail: str = ""
    log_path: str | None = None

    @property
    def error_summary(self) -> str:
        return self.error_tail or self.output_tail or self.message


@dataclass(frozen=True)
class DeployStep:
    label: str
    program: str
    args: tuple[str, ...]
    timeout: float
    tolerated_errors: tuple[str, ...] = ()

    def tolerates(self, result: CommandResult) -> bool:
        output = f"{result.stdout}\n{result.stderr}"
        return any(marker in output for marker in self.tolerated_errors)


class BuildStrategy(ABC):
    """Build, clean and deploy commands for one platform toolchain."""

    platform: ClassVar[Platform]
    milestones: ClassVar[tuple[Milestone, ...]]
    start_phase: ClassVar[str]

    @abstractmethod
    def build_command(self, project_path: Path) -> tuple[str, list[str]]:
        """Program and arguments that build the project.

        Raises:
            FileNotFoundError: If the project lacks the files the toolchain needs.
        """

    @abstractmethod
    def clean_command(self, project_path: Path) -> tuple[str, list[str]]: ...

    @abstractmethod
    def artifact_path(self, project_path: Path, project_name: str) -> Path: ...

    @abstractmethod
    def deploy_steps(
        self, project_path: Path, project_name: str, device: Device, *, package_name: str
    ) -> list[DeployStep]: ...

    async def build(
        self,
        project_path: Path,
        runner: CommandRunner,
        *,
        timeout: float | None = None,
        log_path: Path | None = None,
        reporter: ProgressReporter | None = None,
        min_interval: float = MIN_PROGRESS_INTERVAL_SECONDS,
    ) -> BuildOutcome:
        """Run the platform build, streaming progress to ``reporter``.

        Build failures, including missing project files and timeouts, are
        returned as an unsuccessful ``BuildOutcome``.
        """
        tracker = ProgressTracker(milestones=self.milestones, reporter=reporter, min_interval=min_interval)
        try:
            program, args = self.build_command(project_path)
        except FileNotFoundError as exc:
            tracker.finish(False)
            return BuildOutcome(success=False, message=f"{self.platform.value} build could not start", error_tail=str(exc))

        tracker.start(self.start_phase, PROGRESS_START)
        result = await runner.execute(
            program,
            args,
            cwd=project_path,
            timeout=timeout,
            progress=tracker,
            log_path=log_path,
        )
        tracker.finish(result.success)
        log_ref = str(log_path) if log_path is not None else None
        if result.success:
            logger.info("%s build succeeded for %s", self.platform.value, project_path)
            return BuildOutcome(
                success=True,
                message=f"{self.platform.value} build completed successfully",
                output_tail=_tail(result.stdout),
                log_path=log_ref,
            )

        logger.warning("%s build failed for %s: exit_code=%s", self.platform.value, project_path, result.exit_code)
        return BuildOutcome(
            success=False,
            message=f"{self.platform.value} build failed",
            output_tail=_tail(result.stdout),
            error_tail=_tail(result.stderr) or result.describe_failure(),
            log_path=log_ref,
        )

    async def clean(self, project_path: Path, runner: CommandRunner, *, timeout: float | None = None) -> CommandResult:
        try:
            program, args = self.clean_command(project_path)
        except FileNotFoundError as exc:
            return CommandResult(program=self.platform.value, stderr=str(exc), success=False)
        return await runner.execute(program, args, cwd=project_path, timeout=timeout)


class AndroidBuildStrategy(BuildStrategy):
    platform = Platform.ANDROID
    milestones = ANDROID_MILESTONES
    start_phase = "Starting Gradle build"

    def _gradlew(self, project_path: Path) -> Path:
        gradlew = project_path / "gradlew"
        if not gradlew.is_file():
            raise FileNotFoundError(f"gradlew not found in {project_path}")
        if not os.access(gradlew, os.X_OK):
            gradlew.chmod(gradlew.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return gradlew

    def build_command(self, project_path: Path) -> tuple[str, list[str]]:
        return str(self._gradlew(project_path)), ["build"]

    def clean_command(self, project_path: Path) -> tuple[str, list[str]]:
        return str(self._gradlew(project_path)), ["clean"]

    def artifact_path(self, project_path: Path, project_name: str) -> Path:
        return project_path / "app" / "build" / "outputs" / "apk" / "debug" / "app-debug.apk"

    def deploy_steps(
        self, project_path: Path, project_name: str, device: Device, *, package_name: str
    ) -> list[DeployStep]:
        target = device.identifier
        local = ("force", "lightning", "local")
        return [
            DeployStep(
                "Start Android emulator",
                "sf",
                (*local, "device", "start", "-p", "android", "-t", target),
                timeout=180.0,
                tolerated_errors=("already running",),
            ),
            DeployStep(
                "Install Android app",
                "sf",
                (*local, "app", "install", "-p", "android", "-t", target, "-a", str(self.artifact_path(project_path, project_name))),
                timeout=300.0,
            ),
            DeployStep(
                "Launch Android app",
                "sf",
                (*local, "app", "launch", "-p", "android", "-t", target, "-i", f"{package_name}/{package_name}.MainActivity"),
                timeout=30.0,
            ),
        ]


class IOSBuildStrategy(BuildStrategy):
    platform = Platform.IOS
    milestones = IOS_MILESTONES
    start_phase = "Starting Xcode build"

    def _project(self, project_path: Path) -> tuple[str, Path, str]:
        """Return (project flag, project file, scheme)."""
        entries = sorted(project_path.iterdir()) if project_path.is_dir() else []
        workspace = next((entry for entry in entries if entry.suffix == ".xcworkspace"), None)
        xcodeproj = next((entry for entry in entries if entry.suffix == ".xcodeproj"), None)
        project_file = workspace or xcodeproj
        if project_file is None:
            raise FileNotFoundError(f"Could not find .xcworkspace or .xcodeproj file in {project_path}")
        flag = "-workspace" if workspace is not None else "-project"

        schemes_dir = project_file / "xcshareddata" / "xcschemes"
        schemes = sorted(schemes_dir.glob("*.xcscheme")) if schemes_dir.is_dir() else []
        scheme = schemes[0].stem if schemes else project_file.stem
        return flag, project_file, scheme

    def build_command(self, project_path: Path) -> tuple[str, list[str]]:
        flag, project_file, scheme = self._project(project_path)
        return "xcodebuild", [
            flag,
            project_file.name,
            "-scheme",
            scheme,
            "-destination",
            "generic/platform=iOS Simulator",
            "-derivedDataPath",
            "build",
            "build",
        ]

    def clean_command(self, project_path: Path) -> tuple[str, list[str]]:
        flag, project_file, scheme = self._project(project_path)
        return "xcodebuild", [flag, project_file.name, "-scheme", scheme, "-derivedDataPath", "build", "clean"]

    def artifact_path(self, project_path: Path, project_name: str) -> Path:
        return project_path / "build" / "Build" / "Products" / "Debug-iphonesimulator" / f"{project_name}.app"

    def deploy_steps(
        self, project_path: Path, project_name: str, device: Device, *, package_name: str
    ) -> list[DeployStep]:
        target = device.identifier
        steps = []
        if not device.is_running:
            steps.append(
                DeployStep(
                    "Boot iOS simulator",
                    "xcrun",
                    ("simctl", "boot", target),
                    timeout=120.0,
                    tolerated_errors=("current state: Booted",),
                )
            )
        steps.append(
            DeployStep(
                "Install iOS app",
                "xcrun",
                ("simctl", "install", target, str(self.artifact_path(project_path, project_name))),
                timeout=120.0,
            )
        )
        steps.append(DeployStep("Launch iOS app", "xcrun", ("simctl", "launch", target, package_name), timeout=30.0))
        return steps


_STRATEGIES: dict[Platform, type[BuildStrategy]] = {
    Platform.ANDROID: AndroidBuildStrategy,
    Platform.IOS: IOSBuildStrategy,
}


def strategy_for(platform: Platform | str) -> BuildStrategy:
    return _STRATEGIES[Platform(platform)]()
