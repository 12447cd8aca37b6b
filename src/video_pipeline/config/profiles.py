"""
Transcoding profile catalog.

This is "code as configuration" - edit BUILTIN_PROFILES, or add a "profiles"
list to config.json, to change the rendition ladder.
"""

from __future__ import annotations

from typing import Any

from ..errors import UnknownProfileError
from ..models import TranscodingProfile
from .settings import load_config

BUILTIN_PROFILES: list[dict[str, Any]] = [
    {"name": "240p", "width": 426, "height": 240, "video_bitrate": 400, "fps": 24,
     "codec": "libx264", "preset": "fast", "audio_codec": "aac", "audio_bitrate": 64},
    {"name": "360p", "width": 640, "height": 360, "video_bitrate": 800, "fps": 24,
     "codec": "libx264", "preset": "fast", "audio_codec": "aac", "audio_bitrate": 96},
    {"name": "480p", "width": 854, "height": 480, "video_bitrate": 1200, "fps": 30,
     "codec": "libx264", "preset": "medium", "audio_codec": "aac", "audio_bitrate": 128},
    {"name": "720p", "width": 1280, "height": 720, "video_bitrate": 2500, "fps": 30,
     "codec": "libx264", "preset": "medium", "audio_codec": "aac", "audio_bitrate": 128},
    {"name": "1080p", "width": 1920, "height": 1080, "video_bitrate": 5000, "fps": 30,
     "codec": "libx264", "preset": "medium", "audio_codec": "aac", "audio_bitrate": 192},
    {"name": "1440p", "width": 2560, "height": 1440, "video_bitrate": 8000, "fps": 30,
     "codec": "libx265", "preset": "slow", "audio_codec": "aac", "audio_bitrate": 192},
    {"name": "4K", "width": 3840, "height": 2160, "video_bitrate": 15000, "fps": 30,
     "codec": "libx265", "preset": "slow", "audio_codec": "aac", "audio_bitrate": 256},
]


def get_profile_catalog() -> dict[str, TranscodingProfile]:
    """
    Build the profile catalog.

    Entries from config.json replace built-in profiles with the same name
    and are appended otherwise.

    Returns:
        Mapping of profile name -> TranscodingProfile, in ladder order
    """
    catalog: dict[str, TranscodingProfile] = {}
    for entry in BUILTIN_PROFILES:
        catalog[entry["name"]] = TranscodingProfile(**entry)

    for entry in load_config().get("profiles", []):
        catalog[entry["name"]] = TranscodingProfile(**entry)

    return catalog


def load_profiles(names: list[str]) -> list[TranscodingProfile]:
    """
    Resolve profile names in the order requested.

    Raises:
        UnknownProfileError: if any name is not in the catalog
    """
    catalog = get_profile_catalog()
    missing = [name for name in names if name not in catalog]
    if missing:
        raise UnknownProfileError(
            f"Unknown transcoding profile(s): {', '.join(missing)}. "
            f"Available: {', '.join(catalog)}"
        )
    return [catalog[name] for name in names]
