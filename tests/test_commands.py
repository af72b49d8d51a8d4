from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from mobile_flow.commands import CommandRunner
from mobile_flow.progress import ANDROID_MILESTONES, ProgressTracker


def _python(code: str) -> tuple[str, list[str]]:
    return sys.executable, ["-c", code]


def test_successful_command_captures_both_streams() -> None:
    program, args = _python("import sys; print('hello'); print('oops', file=sys.stderr)")

    result = asyncio.run(CommandRunner().execute(program, args))

    assert result.success is True
    assert result.exit_code == 0
    assert result.stdout == "hello"
    assert result.stderr == "oops"
    assert result.args == args


def test_output_lines_are_streamed_in_order() -> None:
    program, args = _python("import sys\nfor i in range(3):\n    print(f'line {i}', flush=True)")
    seen: list[tuple[str, str]] = []

    result = asyncio.run(CommandRunner().execute(program, args, on_output_line=lambda s, l: seen.append((s, l))))

    assert result.success is True
    assert seen == [("stdout", "line 0"), ("stdout", "line 1"), ("stdout", "line 2")]


def test_nonzero_exit_is_reported_without_raising() -> None:
    program, args = _python("import sys; print('bad input', file=sys.stderr); sys.exit(3)")

    result = asyncio.run(CommandRunner().execute(program, args))

    assert result.success is False
    assert result.exit_code == 3
    assert result.describe_failure() == "bad input"


def test_missing_program_is_a_failed_result() -> None:
    result = asyncio.run(CommandRunner().execute("definitely-not-a-real-program-xyz", ["--version"]))

    assert result.success is False
    assert result.exit_code is None
    assert result.stderr.startswith("Failed to start definitely-not-a-real-program-xyz")


def test_timeout_terminates_the_process() -> None:
    program, args = _python("import time; print('started', flush=True); time.sleep(30)")

    result = asyncio.run(CommandRunner(terminate_grace_seconds=2.0).execute(program, args, timeout=1.0))

    assert result.success is False
    assert result.timed_out is True
    assert result.exit_code is None
    assert result.signal == "SIGTERM"
    assert result.stdout == "started"
    assert "timed out after 1.0s" in result.stderr
    assert result.duration_seconds < 10


def test_environment_and_working_directory_are_applied(tmp_path: Path) -> None:
    program, args = _python("import os; print(os.environ['MOBILE_FLOW_TEST_VALUE']); print(os.getcwd())")

    result = asyncio.run(CommandRunner().execute(program, args, cwd=tmp_path, env={"MOBILE_FLOW_TEST_VALUE": "42"}))

    assert result.stdout.splitlines() == ["42", str(tmp_path.resolve())]


def test_log_path_receives_output(tmp_path: Path) -> None:
    program, args = _python("import sys; print('to stdout'); print('to stderr', file=sys.stderr)")
    log_path = tmp_path / "logs" / "build.log"

    asyncio.run(CommandRunner().execute(program, args, log_path=log_path))

    logged = log_path.read_text(encoding="utf-8").splitlines()
    assert sorted(logged) == ["to stderr", "to stdout"]


def test_progress_tracker_is_fed_and_ticked() -> None:
    program, args = _python("import time; print('> Task :app:compileKotlin', flush=True); time.sleep(0.6)")
    tracker = ProgressTracker(milestones=ANDROID_MILESTONES, min_interval=0.05)

    result = asyncio.run(CommandRunner().execute(program, args, progress=tracker))

    assert result.success is True
    assert tracker.phase == "Compiling Kotlin"
    assert tracker.progress >= 40
    assert tracker.updates


def test_lines_longer_than_the_stream_buffer_are_kept_whole() -> None:
    program, args = _python(
        "import sys\n"
        "sys.stdout.write('x' * 2_500_000 + '\\n')\n"
        "sys.stdout.write('after\\n')\n"
        "sys.stderr.write('e' * 200_000)\n"
        "sys.exit(1)"
    )
    seen: list[tuple[str, int]] = []

    result = asyncio.run(
        CommandRunner().execute(program, args, on_output_line=lambda s, l: seen.append((s, len(l))))
    )

    assert result.success is False
    assert result.exit_code == 1
    assert result.stdout.splitlines() == ["x" * 2_500_000, "after"]
    assert result.stderr == "e" * 200_000
    assert ("stdout", 2_500_000) in seen
    assert ("stderr", 200_000) in seen


def test_unusable_log_path_is_a_failed_result_before_spawning(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    marker = tmp_path / "spawned"
    program, args = _python(f"open({str(marker)!r}, 'w').close()")

    result = asyncio.run(CommandRunner().execute(program, args, log_path=blocker / "build.log"))

    assert result.success is False
    assert result.exit_code is None
    assert result.stderr.startswith(f"Failed to start {program}")
    assert not marker.exists()
