"""Source metadata extraction with ffprobe."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ..config import get_ffprobe_path
from ..errors import ProbeError
from ..models import VideoMetadata
from .process import ProcessRunner

logger = logging.getLogger(__name__)

DEFAULT_FRAMERATE = 30.0


def _parse_frame_rate(value: str | None) -> float:
    """Parse ffprobe rates like "30000/1001" or "25"."""
    if not value:
        return DEFAULT_FRAMERATE
    try:
        if "/" in value:
            numerator, denominator = value.split("/", 1)
            if float(denominator) == 0:
                return DEFAULT_FRAMERATE
            return round(float(numerator) / float(denominator), 3)
        return float(value) or DEFAULT_FRAMERATE
    except ValueError:
        return DEFAULT_FRAMERATE


def parse_probe_output(raw: str) -> VideoMetadata:
    """
    Build VideoMetadata from ``ffprobe -print_format json -show_format -show_streams``.

    Raises:
        ProbeError: if the output is not JSON or has no usable duration
    """
    try:
        probe: dict[str, Any] = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProbeError(f"Unparsable ffprobe output: {e}") from e

    streams = probe.get("streams") or []
    fmt = probe.get("format") or {}

    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    subtitles = [s for s in streams if s.get("codec_type") == "subtitle"]

    if video is None:
        raise ProbeError("No video stream found in source")

    duration_raw = fmt.get("duration") or video.get("duration")
    try:
        duration = float(duration_raw)
    except (TypeError, ValueError) as e:
        raise ProbeError(f"Source has no readable duration: {duration_raw!r}") from e

    try:
        bitrate = int(fmt.get("bit_rate") or 0)
    except ValueError:
        bitrate = 0

    return VideoMetadata(
        duration=duration,
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        framerate=_parse_frame_rate(video.get("r_frame_rate")),
        bitrate=bitrate,
        codec=video.get("codec_name") or "unknown",
        audio_codec=(audio or {}).get("codec_name") or "unknown",
        subtitle_codecs=tuple(s.get("codec_name") or "unknown" for s in subtitles),
    )


class MetadataProber:
    """Runs ffprobe on a source file. Failures are fatal and never retried here."""

    def __init__(self, runner: ProcessRunner | None = None, ffprobe_path: str | None = None):
        self.runner = runner or ProcessRunner()
        self.ffprobe_path = ffprobe_path or get_ffprobe_path()

    def build_args(self, source: str | Path) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(source),
        ]

    async def probe(self, source: str | Path) -> VideoMetadata:
        """
        Inspect a source file.

        Raises:
            ProbeError: if ffprobe exits non-zero or its output is unusable
        """
        result = await self.runner.run(self.build_args(source))
        if result.returncode != 0:
            raise ProbeError(
                f"ffprobe failed for {source} (exit {result.returncode}): {result.stderr.strip()}"
            )
        metadata = parse_probe_output(result.stdout)
        logger.info(
            f"Probed {source}: {metadata.width}x{metadata.height} "
            f"{metadata.duration:.1f}s {metadata.codec}/{metadata.audio_codec}"
        )
        return metadata
