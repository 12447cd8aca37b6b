"""HLS / DASH manifest generation and media playlist parsing."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from ..models import TranscodingProfile

MASTER_HLS = "master.m3u8"
MASTER_DASH = "master.mpd"
SEGMENT_DURATION = 6

_VIDEO_CODEC_TAGS = {
    "libx264": "avc1.640028",
    "h264": "avc1.640028",
    "libx265": "hev1.1.6.L93.B0",
    "hevc": "hev1.1.6.L93.B0",
}


def codec_string(profile: TranscodingProfile) -> str:
    """RFC 6381 codec string for a profile, e.g. ``avc1.640028,mp4a.40.2``."""
    video = _VIDEO_CODEC_TAGS.get(profile.codec, "avc1.640028")
    audio = "mp4a.40.2" if profile.audio_codec == "aac" else "mp4a.40.5"
    return f"{video},{audio}"


def rendition_playlist_name(profile_name: str) -> str:
    return f"{profile_name}.m3u8"


def segment_pattern(profile_name: str) -> str:
    return f"{profile_name}_%03d.ts"


def build_master_playlist(profiles: list[TranscodingProfile]) -> str:
    """
    Build the HLS master playlist, one variant per profile in declaration order.

    BANDWIDTH is video + audio bitrate in bits/sec.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:6", "#EXT-X-INDEPENDENT-SEGMENTS", ""]
    for profile in profiles:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth},"
            f"RESOLUTION={profile.resolution},"
            f"FRAME-RATE={profile.fps:.3f},"
            f'CODECS="{codec_string(profile)}"'
        )
        lines.append(rendition_playlist_name(profile.name))
        lines.append("")
    return "\n".join(lines)


@dataclass(frozen=True)
class PlaylistSegment:
    duration: float
    uri: str


def parse_media_playlist(content: str) -> list[PlaylistSegment]:
    """Read the segments of an HLS media playlist in order."""
    segments = []
    pending_duration: float | None = None
    for raw in content.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#EXTINF:"):
            value = line[len("#EXTINF:"):].split(",", 1)[0]
            try:
                pending_duration = float(value)
            except ValueError:
                pending_duration = None
            continue
        if line.startswith("#"):
            continue
        segments.append(PlaylistSegment(duration=pending_duration or 0.0, uri=line))
        pending_duration = None
    return segments


def list_segments(playlist_path: Path) -> list[str]:
    """Segment file names referenced by a media playlist on disk."""
    content = playlist_path.read_text(encoding="utf-8")
    return [segment.uri for segment in parse_media_playlist(content) if segment.uri.endswith(".ts")]


def segment_route_uri(uri: str) -> str:
    """Address a flat ``{quality}_NNN.ts`` segment as ``{quality}/{quality}_NNN.ts``."""
    if "/" in uri or "_" not in uri:
        return uri
    return f"{uri.rsplit('_', 1)[0]}/{uri}"


def route_media_playlist(content: str) -> str:
    """Rewrite the segment lines of a media playlist to per-quality segment URIs."""
    lines = []
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            line = segment_route_uri(stripped)
        lines.append(line)
    return "\n".join(lines)


def route_master_playlist(content: str, query: str) -> str:
    """Append ``?{query}`` to every variant playlist URI of a master playlist."""
    lines = []
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.endswith(".m3u8") and not stripped.startswith("#"):
            line = f"{stripped}?{query}"
        lines.append(line)
    return "\n".join(lines)


_SEGMENT_URL = re.compile(r'(<SegmentURL media=")([^"]+)(")')


def route_dash_manifest(content: str) -> str:
    """Rewrite every SegmentURL of an MPD to a per-quality segment URI."""
    return _SEGMENT_URL.sub(lambda m: m.group(1) + segment_route_uri(m.group(2)) + m.group(3), content)


def _iso_duration(seconds: float) -> str:
    return f"PT{seconds:.3f}S"


def build_dash_manifest(
    profiles: list[TranscodingProfile],
    duration: float,
    segments: dict[str, list[PlaylistSegment]],
) -> str:
    """
    Build a static DASH MPD describing the same MPEG-TS renditions.

    Args:
        profiles: Renditions in declaration order
        duration: Presentation duration in seconds
        segments: Segment list per profile name, read from its media playlist
    """
    mpd = ET.Element(
        "MPD",
        {
            "xmlns": "urn:mpeg:dash:schema:mpd:2011",
            "profiles": "urn:mpeg:dash:profile:mp2t-simple:2011",
            "type": "static",
            "mediaPresentationDuration": _iso_duration(duration),
            "minBufferTime": _iso_duration(SEGMENT_DURATION),
        },
    )
    period = ET.SubElement(mpd, "Period", {"id": "0", "start": "PT0S"})
    adaptation = ET.SubElement(
        period,
        "AdaptationSet",
        {"mimeType": "video/mp2t", "segmentAlignment": "true", "bitstreamSwitching": "true"},
    )
    for profile in profiles:
        representation = ET.SubElement(
            adaptation,
            "Representation",
            {
                "id": profile.name,
                "bandwidth": str(profile.bandwidth),
                "width": str(profile.width),
                "height": str(profile.height),
                "frameRate": f"{profile.fps:g}",
                "codecs": codec_string(profile),
            },
        )
        segment_list = ET.SubElement(
            representation,
            "SegmentList",
            {"timescale": "1000", "duration": str(SEGMENT_DURATION * 1000)},
        )
        for segment in segments.get(profile.name, []):
            ET.SubElement(segment_list, "SegmentURL", {"media": segment.uri})

    ET.indent(mpd)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(mpd, encoding="unicode") + "\n"


def write_manifests(output_dir: Path, profiles: list[TranscodingProfile], duration: float) -> list[Path]:
    """Write master.m3u8 and master.mpd for renditions already encoded into output_dir."""
    hls_path = output_dir / MASTER_HLS
    hls_path.write_text(build_master_playlist(profiles), encoding="utf-8")

    segments = {}
    for profile in profiles:
        playlist = output_dir / rendition_playlist_name(profile.name)
        if playlist.exists():
            segments[profile.name] = parse_media_playlist(playlist.read_text(encoding="utf-8"))

    dash_path = output_dir / MASTER_DASH
    dash_path.write_text(build_dash_manifest(profiles, duration, segments), encoding="utf-8")
    return [hls_path, dash_path]
