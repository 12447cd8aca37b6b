"""Out-of-process execution of ffmpeg / ffprobe."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

# ffmpeg rewrites its status line with \r, so split on either terminator
_LINE_SPLIT = re.compile(r"[\r\n]")

STDERR_TAIL_LINES = 40


@dataclass
class ProcessResult:
    """Exit status and captured output of a finished process."""

    returncode: int
    stdout: str
    stderr: str


class ProcessRunner:
    """
    Runs external processes without blocking the event loop.

    Running processes can be registered under a key (usually a job id) so
    that another coroutine can terminate them.
    """

    def __init__(self):
        self._running: dict[str, asyncio.subprocess.Process] = {}

    async def run(
        self,
        args: list[str],
        on_line: Callable[[str], None] | None = None,
        key: str | None = None,
    ) -> ProcessResult:
        """
        Run a process to completion.

        Args:
            args: Program and arguments
            on_line: Optional callback for every stderr line
            key: Optional handle for terminate()

        Returns:
            ProcessResult with the full stdout and the tail of stderr
        """
        logger.debug(f"Running: {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return ProcessResult(returncode=127, stdout="", stderr=f"Executable not found: {args[0]}")

        if key is not None:
            self._running[key] = proc

        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        async def read_stderr() -> None:
            buffer = ""
            while True:
                chunk = await proc.stderr.read(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="replace")
                *lines, buffer = _LINE_SPLIT.split(buffer)
                for line in lines:
                    if line.strip():
                        tail.append(line)
                        if on_line:
                            on_line(line)
            if buffer.strip():
                tail.append(buffer)
                if on_line:
                    on_line(buffer)

        try:
            stdout_bytes, _ = await asyncio.gather(proc.stdout.read(), read_stderr())
            returncode = await proc.wait()
        finally:
            if key is not None:
                self._running.pop(key, None)

        return ProcessResult(
            returncode=returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr="\n".join(tail),
        )

    def is_running(self, key: str) -> bool:
        return key in self._running

    def terminate(self, key: str) -> bool:
        """Send SIGTERM to the process registered under key."""
        proc = self._running.get(key)
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.terminate()
        except ProcessLookupError:
            return False
        logger.info(f"Sent SIGTERM to process for {key} (pid {proc.pid})")
        return True

    def terminate_all(self) -> int:
        return sum(1 for key in list(self._running) if self.terminate(key))
