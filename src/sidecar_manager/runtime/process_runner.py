"""Process runner with subprocess isolation and reliable termination.

sidecar-manager runtime module

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Line-oriented stdout/stderr capture for short-lived build tools
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination targets the process group, not just the main process
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessResult",
    "LineCallback",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 4.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
READ_CHUNK_SIZE = 64 * 1024

# (stream name, decoded line without trailing newline)
LineCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = inherit)
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a completed short-lived process."""

    code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """stderr if present, else stdout (for error messages)."""
        return self.stderr.strip() or self.stdout.strip()


@dataclass
class ProcessRunner:
    """Cross-platform process runner with isolation and reliable termination.

    Two entry points:
    - ``run()`` executes a short-lived tool to completion, feeding each output
      line to a callback and returning the collected result.
    - ``spawn()`` starts a long-lived daemon; the caller owns the process and
      later hands it back to ``terminate()``.

    Example:
        runner = ProcessRunner()
        result = await runner.run(
            ProcessSpec(argv=["cargo", "--version"]),
            on_line=lambda stream, line: print(stream, line),
        )
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def run(
        self,
        spec: ProcessSpec,
        *,
        on_line: LineCallback | None = None,
    ) -> ProcessResult:
        """Run subprocess to completion.

        Args:
            spec: Process specification
            on_line: Optional callback invoked for every stdout/stderr line

        Returns:
            ProcessResult with exit code and the full captured output

        Raises:
            OSError: If the executable cannot be started
        """
        process: asyncio.subprocess.Process | None = None
        readers: list[asyncio.Task[str]] = []

        try:
            process = await self.spawn(spec)
            readers = [
                asyncio.create_task(self._collect(process.stdout, "stdout", on_line)),
                asyncio.create_task(self._collect(process.stderr, "stderr", on_line)),
            ]
            stdout, stderr = await asyncio.gather(*readers)
            code = await process.wait()

            logger.debug(
                f"Subprocess completed pid={process.pid} returncode={code}"
            )
            return ProcessResult(code=code, stdout=stdout, stderr=stderr)

        finally:
            # Ensure cleanup with shield to prevent cancel interruption
            await self._safe_cleanup(process, readers)

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start a subprocess with piped stdout/stderr and no stdin.

        Raises:
            OSError: If the executable cannot be started
        """
        kwargs = self._build_subprocess_kwargs(spec)
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )
        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )
        return process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = str(spec.cwd)
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def _collect(
        self,
        stream: asyncio.StreamReader | None,
        name: str,
        on_line: LineCallback | None,
    ) -> str:
        """Read a pipe until EOF, splitting lines without a length limit.

        Reads fixed-size chunks and carries the partial tail, so a single
        line longer than the StreamReader limit (e.g. a cargo progress bar)
        does not abort the read.
        """
        lines: list[str] = []
        if stream is None:
            return ""

        def emit(raw: bytes) -> None:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            lines.append(line)
            if on_line:
                on_line(name, line)

        carry = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            carry += chunk
            *complete, carry = carry.split(b"\n")
            for raw in complete:
                emit(raw)
        if carry:
            emit(carry)
        return "\n".join(lines)

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        readers: list[asyncio.Task[str]],
    ) -> None:
        """Cleanup subprocess and reader tasks, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(process, readers))
        except asyncio.CancelledError:
            await self._do_cleanup(process, readers)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        readers: list[asyncio.Task[str]],
    ) -> None:
        for task in readers:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if process is not None and process.returncode is None:
            await self.terminate(process)

    async def terminate(
        self,
        process: asyncio.subprocess.Process,
        term_timeout: float | None = None,
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Args:
            process: The subprocess to terminate
            term_timeout: Override for the graceful wait (seconds)
        """
        pid = process.pid
        grace = self.term_timeout if term_timeout is None else term_timeout
        logger.debug(f"Terminating subprocess pid={pid}")

        if process.returncode is not None:
            return

        try:
            if IS_WINDOWS:
                await self._windows_terminate(process)
            else:
                await self._posix_terminate(process)

            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                await self._windows_kill(process)
            else:
                await self._posix_kill(process)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except OSError as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    async def _posix_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGTERM to the process group on POSIX systems."""
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGTERM)
            logger.debug(f"Sent SIGTERM to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to terminate: {e}")
            process.terminate()

    async def _posix_kill(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGKILL to the process group on POSIX systems."""
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            process.kill()

    async def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT on Windows."""
        try:
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()

    async def _windows_kill(self, process: asyncio.subprocess.Process) -> None:
        """Force kill on Windows."""
        try:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
        except ProcessLookupError:
            pass
