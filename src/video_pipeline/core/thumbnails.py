"""Thumbnail scheduling, sprite sheet assembly and the WebVTT timeline index."""

from __future__ import annotations

import math
import re
from pathlib import Path

from PIL import Image

THUMB_WIDTH = 160
THUMB_HEIGHT = 90
SPRITE_COLUMNS = 5
MIN_INTERVAL = 10.0
TARGET_COUNT = 20

THUMBNAIL_DIR = "thumbnails"
SPRITE_NAME = "sprite.jpg"
TIMELINE_NAME = "thumbnails.vtt"


def thumbnail_interval(duration: float) -> float:
    """Seconds between thumbnails: at least 10s, about 20 thumbnails for long sources."""
    return max(MIN_INTERVAL, duration / TARGET_COUNT)


def thumbnail_timestamps(duration: float, interval: float | None = None) -> list[float]:
    """Capture points for a source, starting at 0."""
    if duration <= 0:
        return []
    interval = interval or thumbnail_interval(duration)
    count = math.floor(duration / interval)
    return [i * interval for i in range(count)]


def thumbnail_name(index: int) -> str:
    return f"thumb_{index:03d}.jpg"


def format_timestamp(seconds: float) -> str:
    """Format seconds as a WebVTT timestamp, HH:MM:SS.mmm."""
    millis = int(round(seconds * 1000))
    hours, millis = divmod(millis, 3600_000)
    minutes, millis = divmod(millis, 60_000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def parse_timestamp(timestamp: str) -> float:
    """
    Parse timestamp string to seconds.

    Supported formats:
    - "123.45" (seconds)
    - "1:23.45" (minutes:seconds)
    - "1:23:45.67" (hours:minutes:seconds)
    - "01:23:45,670" (SRT format)
    """
    timestamp = timestamp.strip()

    try:
        return float(timestamp)
    except ValueError:
        pass

    timestamp = timestamp.replace(",", ".")

    match = re.match(r"(?:(\d+):)?(\d+):(\d+(?:\.\d+)?)", timestamp)
    if match:
        hours = int(match.group(1) or 0)
        minutes = int(match.group(2))
        seconds = float(match.group(3))
        return hours * 3600 + minutes * 60 + seconds

    raise ValueError(f"Invalid timestamp format: {timestamp}")


def build_sprite(
    thumbnails: list[Path],
    output_path: Path,
    columns: int = SPRITE_COLUMNS,
    width: int = THUMB_WIDTH,
    height: int = THUMB_HEIGHT,
) -> tuple[int, int]:
    """
    Tile thumbnails left-to-right, top-to-bottom into one JPEG.

    Thumbnails are resized to exactly width x height so cell coordinates in
    the timeline index stay on a fixed grid.

    Returns:
        (columns, rows) of the sprite grid
    """
    if not thumbnails:
        raise ValueError("No thumbnails to assemble")

    rows = math.ceil(len(thumbnails) / columns)
    sprite = Image.new("RGB", (columns * width, rows * height), color=(0, 0, 0))

    for index, path in enumerate(thumbnails):
        row, col = divmod(index, columns)
        with Image.open(path) as img:
            cell = img.convert("RGB")
            if cell.size != (width, height):
                cell = cell.resize((width, height), Image.Resampling.LANCZOS)
            sprite.paste(cell, (col * width, row * height))

    output_path.parent.mkdir(parents=True, exist_ok=True)
    sprite.save(output_path, format="JPEG", quality=85)
    return columns, rows


def build_timeline_vtt(
    count: int,
    interval: float,
    columns: int = SPRITE_COLUMNS,
    width: int = THUMB_WIDTH,
    height: int = THUMB_HEIGHT,
    sprite_name: str = SPRITE_NAME,
) -> str:
    """
    Map each fixed-length interval of the timeline to its sprite cell.

    Cue i covers [i * interval, (i + 1) * interval) and points at
    ``sprite.jpg#xywh=x,y,w,h``.
    """
    lines = ["WEBVTT", ""]
    for i in range(count):
        row, col = divmod(i, columns)
        lines.append(f"{format_timestamp(i * interval)} --> {format_timestamp((i + 1) * interval)}")
        lines.append(f"{sprite_name}#xywh={col * width},{row * height},{width},{height}")
        lines.append("")
    return "\n".join(lines)


def write_sprite_and_timeline(
    thumbnails: list[Path],
    output_dir: Path,
    interval: float,
    columns: int = SPRITE_COLUMNS,
    width: int = THUMB_WIDTH,
    height: int = THUMB_HEIGHT,
) -> tuple[Path, Path]:
    """Assemble sprite.jpg and thumbnails.vtt into output_dir."""
    sprite_path = output_dir / SPRITE_NAME
    build_sprite(thumbnails, sprite_path, columns, width, height)

    timeline_path = output_dir / TIMELINE_NAME
    timeline_path.write_text(
        build_timeline_vtt(len(thumbnails), interval, columns, width, height),
        encoding="utf-8",
    )
    return sprite_path, timeline_path
