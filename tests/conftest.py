"""Pytest configuration with a fake ffmpeg/ffprobe runner and temp directories."""

from __future__ import annotations

import asyncio
import json
import math
from pathlib import Path

import pytest
from PIL import Image

from video_pipeline.config import load_profiles
from video_pipeline.core.manifest import write_manifests
from video_pipeline.core.process import ProcessResult, ProcessRunner
from video_pipeline.core.store import RecordStore

SEGMENT_BYTES = 1000


@pytest.fixture(scope="session")
def event_loop_policy():
    """Use default event loop policy."""
    return asyncio.DefaultEventLoopPolicy()


def pytest_configure(config):
    """Configure pytest-asyncio and custom markers."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeRunner(ProcessRunner):
    """
    Stands in for ffprobe/ffmpeg.

    ffprobe calls return a JSON description of a source with ``duration``
    seconds. ffmpeg calls write plausible output files (HLS playlists and
    segments, JPEG thumbnails, WebVTT, MP4) and report encoder status lines.

    Attributes:
        fail_when: predicate over the argument list; matching calls exit 1
        hold: when set, encoder (HLS) calls block until terminated
    """

    def __init__(self, duration: float = 120.0, subtitle_codecs: list[str] | None = None):
        super().__init__()
        self.duration = duration
        self.subtitle_codecs = subtitle_codecs or []
        self.calls: list[list[str]] = []
        self.fail_when = None
        self.probe_exit = 0
        self.hold = False
        self.started = asyncio.Event()
        self._stops: dict[str, asyncio.Event] = {}

    def probe_json(self) -> str:
        streams = [
            {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080,
             "r_frame_rate": "30/1"},
            {"codec_type": "audio", "codec_name": "aac"},
        ]
        streams += [{"codec_type": "subtitle", "codec_name": c} for c in self.subtitle_codecs]
        return json.dumps({
            "streams": streams,
            "format": {"duration": str(self.duration), "bit_rate": "5000000"},
        })

    def encoder_calls(self) -> list[list[str]]:
        return [c for c in self.calls if c[-1].endswith(".m3u8")]

    async def run(self, args, on_line=None, key=None):
        self.calls.append(list(args))
        if Path(args[0]).name.startswith("ffprobe"):
            if self.probe_exit:
                return ProcessResult(self.probe_exit, "", "Invalid data found when processing input")
            return ProcessResult(0, self.probe_json(), "")

        if self.fail_when is not None and self.fail_when(args):
            return ProcessResult(1, "", "Conversion failed!")

        output = Path(args[-1])
        if output.suffix == ".m3u8":
            if self.hold:
                stop = self._stops[key] = asyncio.Event()
                self.started.set()
                try:
                    await stop.wait()
                finally:
                    self._stops.pop(key, None)
                return ProcessResult(255, "", "Exiting normally, received signal 15.")
            self._write_rendition(args, output, on_line)
        elif output.suffix == ".jpg":
            output.parent.mkdir(parents=True, exist_ok=True)
            Image.new("RGB", (160, 90), color=(40, 80, 120)).save(output, format="JPEG")
        elif output.suffix == ".vtt":
            output.write_text("WEBVTT\n\n00:00:01.000 --> 00:00:02.500\nHello\n", encoding="utf-8")
        else:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"\x00" * 64)
        return ProcessResult(0, "", "")

    def _write_rendition(self, args, playlist: Path, on_line) -> None:
        pattern = args[args.index("-hls_segment_filename") + 1]
        count = max(1, math.ceil(self.duration / 6))
        lines = ["#EXTM3U", "#EXT-X-VERSION:6", "#EXT-X-TARGETDURATION:6", "#EXT-X-MEDIA-SEQUENCE:0"]
        for i in range(count):
            segment = Path(pattern % i)
            segment.write_bytes(b"\x47" * SEGMENT_BYTES)
            lines += ["#EXTINF:6.000000,", segment.name]
        lines.append("#EXT-X-ENDLIST")
        playlist.write_text("\n".join(lines) + "\n", encoding="utf-8")

        if on_line:
            half = self.duration / 2
            on_line(f"frame=  100 fps= 60 q=28.0 size=512kB time=00:00:{half:05.2f} bitrate=1000.0kbits/s")
            on_line(f"frame=  200 fps= 60 q=28.0 size=1024kB time=00:{int(self.duration // 60):02d}:"
                    f"{self.duration % 60:05.2f} bitrate=1000.0kbits/s")

    def is_running(self, key):
        return key in self._stops

    def terminate(self, key):
        stop = self._stops.get(key)
        if stop is None:
            return False
        stop.set()
        return True

    def terminate_all(self):
        return sum(1 for key in list(self._stops) if self.terminate(key))


@pytest.fixture(autouse=True)
def pipeline_dirs(tmp_path, monkeypatch):
    """Point every configured directory at a fresh temp tree."""
    dirs = {
        "config": tmp_path / "config",
        "data": tmp_path / "data",
        "storage": tmp_path / "videos",
        "offline": tmp_path / "offline",
    }
    monkeypatch.setenv("VIDEO_PIPELINE_CONFIG_DIR", str(dirs["config"]))
    monkeypatch.setenv("VIDEO_PIPELINE_DATA_DIR", str(dirs["data"]))
    monkeypatch.setenv("VIDEO_PIPELINE_STORAGE_DIR", str(dirs["storage"]))
    monkeypatch.setenv("VIDEO_PIPELINE_OFFLINE_DIR", str(dirs["offline"]))
    monkeypatch.setenv("FFMPEG_PATH", "ffmpeg")
    monkeypatch.setenv("FFPROBE_PATH", "ffprobe")
    return dirs


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def store(tmp_path):
    return RecordStore(tmp_path / "records")


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "lecture.mp4"
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture
def video_folder(pipeline_dirs):
    """A produced video folder with 480p and 720p renditions of three segments each."""

    def make(video_id: str = "vid1", qualities=("480p", "720p"), segments: int = 3) -> Path:
        folder = pipeline_dirs["storage"] / video_id
        folder.mkdir(parents=True, exist_ok=True)
        for quality in qualities:
            lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:6"]
            for i in range(segments):
                name = f"{quality}_{i:03d}.ts"
                (folder / name).write_bytes(b"\x47" * SEGMENT_BYTES)
                lines += ["#EXTINF:6.000000,", name]
            lines.append("#EXT-X-ENDLIST")
            (folder / f"{quality}.m3u8").write_text("\n".join(lines) + "\n", encoding="utf-8")
        write_manifests(folder, load_profiles(list(qualities)), duration=segments * 6.0)
        (folder / "thumbnails.vtt").write_text("WEBVTT\n", encoding="utf-8")
        Image.new("RGB", (800, 90)).save(folder / "sprite.jpg", format="JPEG")
        return folder

    return make
