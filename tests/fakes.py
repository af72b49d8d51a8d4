"""Test doubles shared by the workflow tests."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from mobile_flow.commands import OutputLineCallback
from mobile_flow.models import CommandResult
from mobile_flow.progress import ProgressTracker

ScriptedResult = CommandResult | Callable[[list[str]], CommandResult]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(program="", exit_code=0, stdout=stdout, success=True)


def failed(stderr: str, exit_code: int = 1) -> CommandResult:
    return CommandResult(program="", exit_code=exit_code, stderr=stderr, success=False)


@dataclass
class _Rule:
    program: str
    prefix: tuple[str, ...]
    results: deque[ScriptedResult]
    lines: tuple[str, ...] = ()


@dataclass
class FakeCommandRunner:
    """Answers ``execute`` from scripted rules instead of spawning processes.

    A rule matches when the program (or its basename) equals ``program`` and
    the arguments start with ``prefix``. Queued results are consumed in order;
    the last one repeats.
    """

    rules: list[_Rule] = field(default_factory=list)
    calls: list[tuple[str, list[str]]] = field(default_factory=list)

    def on(self, program: str, *prefix: str, results: Sequence[ScriptedResult], lines: Sequence[str] = ()) -> None:
        self.rules.append(_Rule(program, tuple(prefix), deque(results), tuple(lines)))

    def called(self, program: str, *prefix: str) -> int:
        return sum(1 for called, args in self.calls if self._matches(program, prefix, called, args))

    @staticmethod
    def _matches(program: str, prefix: tuple[str, ...], called: str, args: list[str]) -> bool:
        return (called == program or Path(called).name == program) and tuple(args[: len(prefix)]) == prefix

    async def execute(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        timeout: float | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        on_output_line: OutputLineCallback | None = None,
        progress: ProgressTracker | None = None,
        log_path: Path | None = None,
    ) -> CommandResult:
        argv = [str(arg) for arg in args]
        self.calls.append((program, argv))
        for rule in self.rules:
            if not self._matches(rule.program, rule.prefix, program, argv):
                continue
            scripted = rule.results[0] if len(rule.results) == 1 else rule.results.popleft()
            result = scripted(argv) if callable(scripted) else scripted
            for line in rule.lines:
                if on_output_line is not None:
                    on_output_line("stdout", line)
                if progress is not None:
                    progress.observe(line)
            if log_path is not None:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_path.write_text("\n".join([*rule.lines, result.stdout, result.stderr]), encoding="utf-8")
            return result.model_copy(update={"program": program, "args": argv})
        return CommandResult(
            program=program,
            args=argv,
            exit_code=None,
            stderr=f"Failed to start {program}: not scripted",
            success=False,
        )


def android_device_list(*entries: tuple[str, int]) -> str:
    return json.dumps(
        {
            "status": 0,
            "outputContent": [
                {
                    "id": name,
                    "name": name.replace("_", " "),
                    "deviceType": "phone",
                    "osType": "google_apis",
                    "osVersion": {"major": api, "minor": 0, "patch": 0},
                }
                for name, api in entries
            ],
        }
    )
