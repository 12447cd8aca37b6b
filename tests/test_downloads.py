"""Tests for offline download packaging and licenses."""

from __future__ import annotations

import base64
from datetime import datetime, timedelta

import pytest

from video_pipeline.core.downloads import (
    CANCELLED_REASON,
    OfflineDownloadManager,
    decode_license,
    download_key,
    encode_license,
    is_safe_name,
)
from video_pipeline.core.streaming import StreamingSessionManager
from video_pipeline.errors import DownloadValidationError, LicenseExpired
from video_pipeline.models import DownloadStatus


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def downloads(store, pipeline_dirs, clock):
    return OfflineDownloadManager(
        store,
        storage_dir=pipeline_dirs["storage"],
        offline_dir=pipeline_dirs["offline"],
        clock=clock,
    )


@pytest.mark.parametrize(
    "name,safe",
    [("vid1", True), ("480p_000.ts", True), ("..", False), ("../vid1", False),
     ("a/b", False), (".hidden", False), ("", False)],
)
def test_is_safe_name(name, safe):
    assert is_safe_name(name) is safe


def test_license_token_round_trip():
    payload = {"viewer_id": "v", "video_id": "x", "issued": "2026-01-01T00:00:00",
               "expires": "2026-01-31T00:00:00"}

    assert decode_license(encode_license(payload)) == payload


@pytest.mark.parametrize(
    "token",
    [
        "not base64!!",
        base64.b64encode(b"hello").decode(),
        base64.b64encode(b'{"viewer_id": "v"}').decode(),
    ],
)
def test_decode_license_rejects_foreign_tokens(token):
    with pytest.raises(DownloadValidationError):
        decode_license(token)


@pytest.mark.asyncio
async def test_download_copies_rendition(downloads, video_folder, pipeline_dirs, clock):
    video_folder()

    download = await downloads.start_download("viewer1", "vid1", "480p")

    assert download.id.startswith("download_")
    assert download.status == DownloadStatus.PENDING
    assert download.size == 3000
    assert download.expiry_date == clock.now + timedelta(days=30)
    assert download.drm_license

    await downloads.wait()
    finished = downloads.get_download(download.id)

    assert finished.status == DownloadStatus.COMPLETED
    assert finished.downloaded_bytes == finished.size == 3000
    package = pipeline_dirs["offline"] / download.id
    assert sorted(p.name for p in package.iterdir()) == [
        "480p.m3u8", "480p_000.ts", "480p_001.ts", "480p_002.ts"
    ]


@pytest.mark.asyncio
async def test_download_skips_missing_segments(downloads, video_folder):
    folder = video_folder()
    (folder / "480p_001.ts").unlink()

    download = await downloads.start_download("viewer1", "vid1", "480p")
    await downloads.wait()

    finished = downloads.get_download(download.id)
    assert finished.size == 2000
    assert finished.downloaded_bytes == 2000
    assert finished.status == DownloadStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("video_id,quality", [("vid1", "1080p"), ("missing", "480p"), ("../vid1", "480p")])
async def test_start_download_rejects_unavailable_rendition(downloads, video_folder, video_id, quality):
    video_folder()

    with pytest.raises(DownloadValidationError):
        await downloads.start_download("viewer1", video_id, quality)


@pytest.mark.asyncio
async def test_cancel_download(downloads, video_folder, store, pipeline_dirs):
    video_folder()
    download = await downloads.start_download("viewer1", "vid1", "720p")

    assert await downloads.cancel_download(download.id) is True

    cancelled = downloads.get_download(download.id)
    assert cancelled.status == DownloadStatus.FAILED
    assert cancelled.error == CANCELLED_REASON
    assert not (pipeline_dirs["offline"] / download.id).exists()
    assert store.get(download_key(download.id)) is not None

    assert await downloads.cancel_download(download.id) is False
    assert await downloads.cancel_download("download_0_missing") is False


@pytest.mark.asyncio
async def test_completed_download_cannot_be_cancelled(downloads, video_folder):
    video_folder()
    download = await downloads.start_download("viewer1", "vid1", "480p")
    await downloads.wait()

    assert await downloads.cancel_download(download.id) is False
    assert downloads.get_download(download.id).status == DownloadStatus.COMPLETED


@pytest.mark.asyncio
async def test_list_downloads_per_viewer(downloads, video_folder, clock):
    video_folder()
    first = await downloads.start_download("viewer1", "vid1", "480p")
    clock.advance(minutes=1)
    second = await downloads.start_download("viewer1", "vid1", "720p")
    await downloads.start_download("viewer2", "vid1", "480p")
    await downloads.wait()

    assert [d.id for d in downloads.list_downloads("viewer1")] == [first.id, second.id]
    assert downloads.list_downloads("nobody") == []

    clock.advance(days=31)

    assert downloads.list_downloads("viewer1") == []
    assert downloads.get_download(first.id).status == DownloadStatus.EXPIRED


@pytest.mark.asyncio
async def test_verify_license(downloads, video_folder, clock):
    video_folder()
    download = await downloads.start_download("viewer1", "vid1", "480p")
    await downloads.wait()

    payload = downloads.verify_license(download.id)

    assert payload["viewer_id"] == "viewer1"
    assert payload["video_id"] == "vid1"

    clock.advance(days=30)
    with pytest.raises(LicenseExpired):
        downloads.verify_license(download.id)


@pytest.mark.asyncio
async def test_verify_license_rejects_unusable_downloads(downloads, video_folder):
    video_folder()
    download = await downloads.start_download("viewer1", "vid1", "480p")
    await downloads.cancel_download(download.id)

    with pytest.raises(DownloadValidationError):
        downloads.verify_license(download.id)
    with pytest.raises(DownloadValidationError):
        downloads.verify_license("download_0_missing")


@pytest.mark.asyncio
async def test_session_manager_delegates_downloads(store, pipeline_dirs, video_folder):
    video_folder()
    sessions = StreamingSessionManager(store, storage_dir=pipeline_dirs["storage"])

    download = await sessions.start_download("viewer1", "vid1", "720p")
    await sessions.downloads.wait()

    assert sessions.get_download(download.id).status == DownloadStatus.COMPLETED
    assert [d.id for d in sessions.list_downloads("viewer1")] == [download.id]
    assert sessions.verify_license(download.id)["video_id"] == "vid1"
    assert (pipeline_dirs["offline"] / download.id / "720p_002.ts").exists()
