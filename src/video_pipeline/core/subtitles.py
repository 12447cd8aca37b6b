"""Subtitle stream selection and WebVTT handling."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_SUBTITLE_STREAMS = 10
SUBTITLE_DIR = "subtitles"

# Image-based formats; ffmpeg cannot turn these into text cues
BITMAP_CODECS = {"dvd_subtitle", "dvdsub", "hdmv_pgs_subtitle", "pgssub", "dvb_subtitle", "dvbsub", "xsub"}

_CUE_TIME = re.compile(
    r"(?:(\d{2,}):)?(\d{2}):(\d{2})\.(\d{3})\s*-->\s*(?:(\d{2,}):)?(\d{2}):(\d{2})\.(\d{3})"
)


@dataclass(frozen=True)
class SubtitleTrack:
    """One subtitle stream chosen for extraction."""

    index: int  # position among the source's subtitle streams
    codec: str

    @property
    def file_name(self) -> str:
        return f"subtitle_{self.index}.vtt"

    @property
    def needs_conversion(self) -> bool:
        return self.codec != "webvtt"


def select_tracks(subtitle_codecs: tuple[str, ...] | list[str]) -> list[SubtitleTrack]:
    """
    Pick the subtitle streams to extract: at most the first 10, text formats only.
    """
    tracks = []
    for index, codec in enumerate(subtitle_codecs[:MAX_SUBTITLE_STREAMS]):
        if codec in BITMAP_CODECS:
            logger.warning(f"Skipping subtitle stream {index}: bitmap codec {codec} has no WebVTT form")
            continue
        tracks.append(SubtitleTrack(index=index, codec=codec))
    return tracks


def _to_ms(hours: str | None, minutes: str, seconds: str, millis: str) -> int:
    return int(hours or 0) * 3600000 + int(minutes) * 60000 + int(seconds) * 1000 + int(millis)


def parse_vtt(content: str) -> list[dict[str, Any]]:
    """
    Parse WebVTT cues.

    Returns:
        list of {"index", "start_ms", "end_ms", "text"}; cues without text are dropped
    """
    entries = []

    content = content.replace("\r\n", "\n")
    content = re.sub(r"^WEBVTT.*?(\n\n|$)", "", content, count=1, flags=re.DOTALL)
    blocks = re.split(r"\n\n+", content.strip())

    index = 0
    for block in blocks:
        lines = block.strip().split("\n")

        time_match = None
        text_start = 0
        for i, line in enumerate(lines):
            if "-->" in line:
                time_match = _CUE_TIME.search(line)
                text_start = i + 1
                break

        if not time_match:
            continue

        h1, m1, s1, ms1, h2, m2, s2, ms2 = time_match.groups()

        # Strip inline tags like <c>, </c>, <00:00:01.000>
        text_lines = []
        for line in lines[text_start:]:
            clean_line = re.sub(r"<[^>]+>", "", line)
            if clean_line.strip():
                text_lines.append(clean_line.strip())

        text = " ".join(text_lines)
        if not text:
            continue

        index += 1
        entries.append({
            "index": index,
            "start_ms": _to_ms(h1, m1, s1, ms1),
            "end_ms": _to_ms(h2, m2, s2, ms2),
            "text": text,
        })

    return entries
