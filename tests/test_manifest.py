"""Tests for manifest generation."""

from __future__ import annotations

import xml.etree.ElementTree as ET

import pytest

from video_pipeline.config import load_profiles
from video_pipeline.core.manifest import (
    build_dash_manifest,
    build_master_playlist,
    codec_string,
    list_segments,
    route_dash_manifest,
    route_master_playlist,
    segment_route_uri,
    parse_media_playlist,
    write_manifests,
)

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:6
#EXT-X-TARGETDURATION:6
#EXTINF:6.000000,
720p_000.ts
#EXTINF:4.500000,
720p_001.ts
#EXT-X-ENDLIST
"""


def test_master_playlist_lists_profiles_in_order():
    profiles = load_profiles(["720p", "240p"])

    playlist = build_master_playlist(profiles)
    lines = playlist.splitlines()

    assert lines[0] == "#EXTM3U"
    variants = [line for line in lines if line.startswith("#EXT-X-STREAM-INF")]
    assert "BANDWIDTH=2628000" in variants[0]
    assert "RESOLUTION=1280x720" in variants[0]
    assert "RESOLUTION=426x240" in variants[1]
    assert 'CODECS="avc1.640028,mp4a.40.2"' in variants[0]
    assert lines.index("720p.m3u8") < lines.index("240p.m3u8")


def test_codec_string_for_hevc():
    profile = load_profiles(["4K"])[0]

    assert codec_string(profile) == "hev1.1.6.L93.B0,mp4a.40.2"


def test_parse_media_playlist():
    segments = parse_media_playlist(MEDIA_PLAYLIST)

    assert [s.uri for s in segments] == ["720p_000.ts", "720p_001.ts"]
    assert segments[1].duration == 4.5


def test_list_segments_only_ts(tmp_path):
    playlist = tmp_path / "720p.m3u8"
    playlist.write_text(MEDIA_PLAYLIST + "other.m4s\n")

    assert list_segments(playlist) == ["720p_000.ts", "720p_001.ts"]


def test_dash_manifest_describes_renditions():
    profiles = load_profiles(["240p", "720p"])
    segments = {"720p": parse_media_playlist(MEDIA_PLAYLIST)}

    mpd = build_dash_manifest(profiles, 10.5, segments)
    root = ET.fromstring(mpd.split("\n", 1)[1])
    ns = {"mpd": "urn:mpeg:dash:schema:mpd:2011"}

    assert root.get("mediaPresentationDuration") == "PT10.500S"
    representations = root.findall(".//mpd:Representation", ns)
    assert [r.get("id") for r in representations] == ["240p", "720p"]
    assert representations[1].get("bandwidth") == "2628000"
    urls = representations[1].findall(".//mpd:SegmentURL", ns)
    assert [u.get("media") for u in urls] == ["720p_000.ts", "720p_001.ts"]


def test_write_manifests(tmp_path):
    (tmp_path / "720p.m3u8").write_text(MEDIA_PLAYLIST)
    profiles = load_profiles(["720p"])

    paths = write_manifests(tmp_path, profiles, 10.5)

    assert [p.name for p in paths] == ["master.m3u8", "master.mpd"]
    assert "720p.m3u8" in (tmp_path / "master.m3u8").read_text()
    assert "720p_001.ts" in (tmp_path / "master.mpd").read_text()


@pytest.mark.parametrize(
    "uri,expected",
    [
        ("480p_000.ts", "480p/480p_000.ts"),
        ("hd_1080p_012.ts", "hd_1080p/hd_1080p_012.ts"),
        ("480p/480p_000.ts", "480p/480p_000.ts"),
        ("segment.ts", "segment.ts"),
    ],
)
def test_segment_route_uri(uri, expected):
    assert segment_route_uri(uri) == expected


def test_route_master_playlist_appends_query_to_variants():
    master = build_master_playlist(load_profiles(["240p", "720p"]))

    routed = route_master_playlist(master, "session_id=s1")

    variants = [line for line in routed.splitlines() if line and not line.startswith("#")]
    assert variants == ["240p.m3u8?session_id=s1", "720p.m3u8?session_id=s1"]
    assert routed.count("#EXT-X-STREAM-INF") == 2


def test_route_dash_manifest_addresses_segments_by_quality():
    profiles = load_profiles(["720p"])
    mpd = build_dash_manifest(profiles, 10.5, {"720p": parse_media_playlist(MEDIA_PLAYLIST)})

    routed = route_dash_manifest(mpd)

    ns = {"d": "urn:mpeg:dash:schema:mpd:2011"}
    media = [s.get("media") for s in ET.fromstring(routed.split("\n", 1)[1]).iterfind(".//d:SegmentURL", ns)]
    assert media == ["720p/720p_000.ts", "720p/720p_001.ts"]
