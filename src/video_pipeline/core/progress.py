"""Encoder progress parsing and the per-job progress channel."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import AsyncIterator

from ..models import ProgressEvent

_TIME_PATTERN = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


@dataclass(frozen=True)
class ProgressSample:
    """Encoded media time reported by one encoder status line."""

    elapsed: float  # seconds of output encoded so far


def parse_progress_line(line: str) -> ProgressSample | None:
    """
    Extract the encoded timestamp from an ffmpeg status line.

    Example line:
        frame=  240 fps= 60 q=28.0 size=    1024kB time=00:00:08.00 bitrate=1048.6kbits/s

    Returns:
        ProgressSample, or None if the line carries no timestamp
    """
    match = _TIME_PATTERN.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return ProgressSample(elapsed=int(hours) * 3600 + int(minutes) * 60 + float(seconds))


def profile_percent(sample: ProgressSample, duration: float) -> float:
    """Percent of a single rendition encoded, clamped to [0, 100]."""
    if duration <= 0:
        return 0.0
    return max(0.0, min(sample.elapsed / duration * 100, 100.0))


class ProgressStream:
    """
    Explicit progress channel for one job.

    The producer publishes events and closes the stream when the job ends;
    the consumer iterates with ``async for``. Events published after close
    are dropped.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
