"""Tests for metadata probing and progress parsing."""

from __future__ import annotations

import json

import pytest

from video_pipeline.core.probe import MetadataProber, _parse_frame_rate, parse_probe_output
from video_pipeline.core.progress import (
    ProgressSample,
    ProgressStream,
    parse_progress_line,
    profile_percent,
)
from video_pipeline.errors import ProbeError
from video_pipeline.models import ProgressEvent, ProgressKind


def _probe(streams, fmt):
    return json.dumps({"streams": streams, "format": fmt})


def test_parse_probe_output_full():
    raw = _probe(
        [
            {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720,
             "r_frame_rate": "30000/1001"},
            {"codec_type": "audio", "codec_name": "aac"},
            {"codec_type": "subtitle", "codec_name": "subrip"},
            {"codec_type": "subtitle", "codec_name": "hdmv_pgs_subtitle"},
        ],
        {"duration": "95.5", "bit_rate": "2400000"},
    )

    metadata = parse_probe_output(raw)

    assert metadata.duration == 95.5
    assert (metadata.width, metadata.height) == (1280, 720)
    assert metadata.framerate == 29.97
    assert metadata.bitrate == 2400000
    assert metadata.codec == "h264"
    assert metadata.audio_codec == "aac"
    assert metadata.subtitle_codecs == ("subrip", "hdmv_pgs_subtitle")


def test_parse_probe_output_without_audio():
    raw = _probe([{"codec_type": "video", "codec_name": "vp9", "width": 640, "height": 360}],
                 {"duration": "10"})

    metadata = parse_probe_output(raw)

    assert metadata.audio_codec == "unknown"
    assert metadata.framerate == 30.0
    assert metadata.bitrate == 0


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        _probe([{"codec_type": "audio", "codec_name": "aac"}], {"duration": "10"}),
        _probe([{"codec_type": "video", "codec_name": "h264"}], {"duration": "N/A"}),
        _probe([{"codec_type": "video", "codec_name": "h264"}], {}),
    ],
)
def test_parse_probe_output_rejects_unusable(raw):
    with pytest.raises(ProbeError):
        parse_probe_output(raw)


@pytest.mark.parametrize(
    "value,expected",
    [("25/1", 25.0), ("24", 24.0), ("0/0", 30.0), (None, 30.0), ("abc", 30.0)],
)
def test_parse_frame_rate(value, expected):
    assert _parse_frame_rate(value) == expected


@pytest.mark.asyncio
async def test_prober_runs_ffprobe(fake_runner, source_file):
    prober = MetadataProber(fake_runner)

    metadata = await prober.probe(source_file)

    assert metadata.duration == 120.0
    args = fake_runner.calls[0]
    assert args[0] == "ffprobe"
    assert "-show_streams" in args
    assert args[-1] == str(source_file)


@pytest.mark.asyncio
async def test_prober_nonzero_exit_raises(fake_runner, source_file):
    fake_runner.probe_exit = 1

    with pytest.raises(ProbeError, match="Invalid data"):
        await MetadataProber(fake_runner).probe(source_file)


def test_parse_progress_line():
    line = "frame=  240 fps= 60 q=28.0 size=    1024kB time=00:01:08.50 bitrate=1048.6kbits/s speed=2x"

    assert parse_progress_line(line) == ProgressSample(elapsed=68.5)


@pytest.mark.parametrize(
    "line",
    ["", "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'in.mp4':", "time=N/A bitrate=N/A"],
)
def test_parse_progress_line_without_time(line):
    assert parse_progress_line(line) is None


def test_profile_percent_clamped():
    assert profile_percent(ProgressSample(30.0), 120.0) == 25.0
    assert profile_percent(ProgressSample(130.0), 120.0) == 100.0
    assert profile_percent(ProgressSample(5.0), 0.0) == 0.0


@pytest.mark.asyncio
async def test_progress_stream_delivers_until_closed():
    stream = ProgressStream()
    stream.publish(ProgressEvent(kind=ProgressKind.STARTED, job_id="j"))
    stream.publish(ProgressEvent(kind=ProgressKind.PROGRESS, job_id="j", progress=50))
    stream.close()
    stream.publish(ProgressEvent(kind=ProgressKind.PROGRESS, job_id="j", progress=60))

    events = [event async for event in stream]

    assert stream.closed
    assert [e.kind for e in events] == [ProgressKind.STARTED, ProgressKind.PROGRESS]
