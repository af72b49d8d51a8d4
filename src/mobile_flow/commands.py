from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import IO

from .models import CommandResult
from .progress import ProgressTracker

logger = logging.getLogger(__name__)

DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
STREAM_BUFFER_LIMIT = 1024 * 1024

OutputLineCallback = Callable[[str, str], None]


class CommandRunner:
    """Spawns external programs with an argument vector, never through a shell.

    Output is streamed line by line while the process runs. Timeouts and
    spawn failures come back as unsuccessful ``CommandResult`` values; only
    errors raised by the caller's own callbacks propagate.
    """

    def __init__(
        self,
        *,
        default_timeout: float | None = None,
        terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.default_timeout = default_timeout
        self.terminate_grace_seconds = terminate_grace_seconds

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
        """Run ``program`` with ``args`` and collect its output.

        Args:
            program: Executable name or path.
            args: Argument vector passed verbatim to the program.
            timeout: Seconds before the process is terminated; falls back to
                ``default_timeout``; ``None`` waits indefinitely.
            cwd: Working directory for the child.
            env: Variables merged over ``os.environ`` for the child.
            on_output_line: Called as ``(stream, line)`` with stream
                ``"stdout"`` or ``"stderr"`` for every decoded line.
            progress: Tracker fed with every line and ticked by a heartbeat
                task while the process runs.
            log_path: File that receives a copy of both output streams.

        Returns:
            The ``CommandResult``; ``success`` is True only for exit code 0
            without a timeout.
        """
        argv = [str(arg) for arg in args]
        effective_timeout = timeout if timeout is not None else self.default_timeout
        child_env = None
        if env:
            child_env = os.environ.copy()
            child_env.update(env)

        started = time.monotonic()
        logger.debug("Spawning %s %s (cwd=%s timeout=%s)", program, " ".join(argv), cwd, effective_timeout)
        log_handle: IO[str] | None = None
        try:
            if log_path is not None:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_handle = log_path.open("w", encoding="utf-8")
            process = await asyncio.create_subprocess_exec(
                program,
                *argv,
                cwd=str(cwd) if cwd is not None else None,
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_BUFFER_LIMIT,
            )
        except OSError as exc:
            if log_handle is not None:
                log_handle.close()
            logger.warning("Failed to start %s: %s", program, exc)
            return CommandResult(
                program=program,
                args=argv,
                exit_code=None,
                stderr=f"Failed to start {program}: {exc}",
                success=False,
                duration_seconds=time.monotonic() - started,
            )

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def _emit(raw_line: bytes, name: str, sink: list[str]) -> None:
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            sink.append(line)
            if log_handle is not None:
                log_handle.write(f"{line}\n")
            if on_output_line is not None:
                on_output_line(name, line)
            if progress is not None:
                progress.observe(line)

        async def _pump(stream: asyncio.StreamReader | None, name: str, sink: list[str]) -> None:
            if stream is None:
                return
            # Lines longer than the reader limit are drained in pieces and joined.
            pending = bytearray()
            while True:
                try:
                    pending += await stream.readuntil(b"\n")
                except asyncio.LimitOverrunError as exc:
                    pending += await stream.readexactly(exc.consumed)
                    continue
                except asyncio.IncompleteReadError as exc:
                    pending += exc.partial
                    if pending:
                        _emit(bytes(pending), name, sink)
                    return
                _emit(bytes(pending), name, sink)
                pending.clear()

        heartbeat = asyncio.create_task(self._heartbeat(progress)) if progress is not None else None
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(process.stdout, "stdout", stdout_lines),
                    _pump(process.stderr, "stderr", stderr_lines),
                    process.wait(),
                ),
                timeout=effective_timeout,
            )
        except TimeoutError:
            timed_out = True
            logger.warning("%s timed out after %.1fs; terminating", program, effective_timeout)
            await self._terminate(process)
        except BaseException:
            await self._terminate(process)
            raise
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
            if log_handle is not None:
                log_handle.close()

        return_code = process.returncode
        signal_name = None
        exit_code = return_code
        if return_code is not None and return_code < 0:
            exit_code = None
            try:
                signal_name = signal.Signals(-return_code).name
            except ValueError:
                signal_name = f"SIG{-return_code}"

        stderr = "\n".join(stderr_lines)
        if timed_out:
            note = f"Command timed out after {effective_timeout:.1f}s"
            stderr = f"{stderr}\n{note}" if stderr else note

        result = CommandResult(
            program=program,
            args=argv,
            exit_code=exit_code,
            signal=signal_name,
            stdout="\n".join(stdout_lines),
            stderr=stderr,
            success=not timed_out and return_code == 0,
            duration_seconds=time.monotonic() - started,
            timed_out=timed_out,
        )
        logger.debug(
            "%s finished exit_code=%s signal=%s duration=%.2fs",
            program,
            result.exit_code,
            result.signal,
            result.duration_seconds,
        )
        return result

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM; killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    @staticmethod
    async def _heartbeat(progress: ProgressTracker) -> None:
        while True:
            await asyncio.sleep(progress.min_interval)
            progress.tick()
