"""Offline download packaging and license tokens."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
import shutil
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from ..config import get_download_config, get_offline_dir, get_storage_dir
from ..errors import DownloadValidationError, LicenseExpired
from ..models import DownloadStatus, OfflineDownload
from .manifest import list_segments, rendition_playlist_name
from .store import RecordStore

logger = logging.getLogger(__name__)

DOWNLOAD_TTL_SECONDS = 30 * 24 * 3600
CANCELLED_REASON = "Download cancelled by user"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_\-][A-Za-z0-9_.\-]*$")


def is_safe_name(name: str) -> bool:
    """True for a single path component that cannot climb out of its parent."""
    return bool(_SAFE_NAME.match(name)) and ".." not in name


def download_key(download_id: str) -> str:
    return f"download:{download_id}"


def new_download_id() -> str:
    return f"download_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def encode_license(payload: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_license(token: str) -> dict[str, Any]:
    """
    Decode an opaque license token.

    Raises:
        DownloadValidationError: the token is not a license we issued
    """
    try:
        payload = json.loads(base64.b64decode(token, validate=True))
    except (binascii.Error, ValueError) as e:
        raise DownloadValidationError(f"Malformed license token: {e}") from e
    if not isinstance(payload, dict) or not {"viewer_id", "video_id", "issued", "expires"} <= payload.keys():
        raise DownloadValidationError("License token is missing required fields")
    return payload


class OfflineDownloadManager:
    """
    Copies a rendition's segments into an offline package folder.

    Status only moves forward: pending -> downloading -> completed | failed,
    and pending -> failed on cancellation. "expired" is never stored; it is
    how a download past its expiry date is reported.
    """

    def __init__(
        self,
        store: RecordStore,
        storage_dir: Path | None = None,
        offline_dir: Path | None = None,
        config: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.storage_dir = Path(storage_dir or get_storage_dir())
        self.offline_dir = Path(offline_dir or get_offline_dir())
        self.config = config or get_download_config()
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    # ---- licenses ----------------------------------------------------------

    def issue_license(self, viewer_id: str, video_id: str, issued: datetime | None = None) -> str:
        issued = issued or self._clock()
        expires = issued + timedelta(days=self.config["license_days"])
        return encode_license({
            "viewer_id": viewer_id,
            "video_id": video_id,
            "issued": issued.isoformat(),
            "expires": expires.isoformat(),
        })

    def verify_license(self, download_id: str) -> dict[str, Any]:
        """
        Check that a download may still be played offline.

        Raises:
            DownloadValidationError: unknown or failed download, or a token
                that does not belong to it
            LicenseExpired: the download or its license is past expiry

        Returns:
            The decoded license payload
        """
        download = self._load(download_id)
        if download is None:
            raise DownloadValidationError(f"Unknown download: {download_id}")
        if download.status == DownloadStatus.FAILED:
            raise DownloadValidationError(f"Download {download_id} failed: {download.error}")
        if not download.drm_license:
            raise DownloadValidationError(f"Download {download_id} has no license")

        payload = decode_license(download.drm_license)
        if payload["viewer_id"] != download.viewer_id or payload["video_id"] != download.video_id:
            raise DownloadValidationError(f"License does not match download {download_id}")

        now = self._clock()
        if download.is_expired(now) or datetime.fromisoformat(payload["expires"]) <= now:
            raise LicenseExpired(f"License for download {download_id} expired")
        return payload

    # ---- records -----------------------------------------------------------

    def _load(self, download_id: str) -> OfflineDownload | None:
        data = self.store.get(download_key(download_id))
        return OfflineDownload(**data) if data is not None else None

    def _transition(
        self,
        download_id: str,
        allowed_from: set[DownloadStatus],
        ttl: float = DOWNLOAD_TTL_SECONDS,
        **changes: Any,
    ) -> OfflineDownload | None:
        """Apply changes only while the stored status is one of allowed_from."""

        def apply(data: dict[str, Any]) -> dict[str, Any] | None:
            download = OfflineDownload(**data)
            if download.status not in allowed_from:
                return None
            updated = download.model_copy(update=changes)
            updated.downloaded_bytes = min(updated.downloaded_bytes, updated.size)
            return updated.model_dump(mode="json")

        data = self.store.update(download_key(download_id), apply, ttl)
        return OfflineDownload(**data) if data is not None else None

    def _present(self, download: OfflineDownload) -> OfflineDownload:
        if download.is_expired(self._clock()):
            return download.model_copy(update={"status": DownloadStatus.EXPIRED})
        return download

    def _playlist_for(self, video_id: str, quality: str) -> Path:
        if not is_safe_name(video_id) or not is_safe_name(quality):
            raise DownloadValidationError(f"Invalid video or quality: {video_id}/{quality}")
        playlist = self.storage_dir / video_id / rendition_playlist_name(quality)
        if not playlist.exists():
            raise DownloadValidationError(f"Quality {quality} is not available for video {video_id}")
        return playlist

    # ---- operations --------------------------------------------------------

    async def start_download(self, viewer_id: str, video_id: str, quality: str) -> OfflineDownload:
        """
        Create a download and start copying its segments in the background.

        Raises:
            DownloadValidationError: the rendition does not exist
        """
        playlist = self._playlist_for(video_id, quality)
        video_dir = playlist.parent
        segments = await asyncio.to_thread(list_segments, playlist)
        size = sum((video_dir / s).stat().st_size for s in segments if (video_dir / s).exists())

        now = self._clock()
        download = OfflineDownload(
            id=new_download_id(),
            viewer_id=viewer_id,
            video_id=video_id,
            quality=quality,
            size=size,
            created_at=now,
            expiry_date=now + timedelta(days=self.config["license_days"]),
            drm_license=self.issue_license(viewer_id, video_id, now),
        )
        self.store.put(download_key(download.id), download.model_dump(mode="json"), DOWNLOAD_TTL_SECONDS)
        logger.info(f"Download {download.id}: {video_id}/{quality} for {viewer_id} ({size} bytes)")

        task = asyncio.create_task(self._transfer(download.id, video_dir, segments))
        self._tasks[download.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(download.id, None))
        return download

    async def _transfer(self, download_id: str, video_dir: Path, segments: list[str]) -> None:
        started = self._transition(
            download_id, {DownloadStatus.PENDING}, status=DownloadStatus.DOWNLOADING
        )
        if started is None:
            return

        package_dir = self.offline_dir / download_id
        transferred = 0
        try:
            await asyncio.to_thread(package_dir.mkdir, parents=True, exist_ok=True)
            for segment in segments:
                source = video_dir / segment
                if not source.exists():
                    logger.warning(f"Download {download_id}: segment {segment} is missing, skipping")
                    continue
                await asyncio.to_thread(shutil.copyfile, source, package_dir / segment)
                transferred += source.stat().st_size
                if self._transition(
                    download_id, {DownloadStatus.DOWNLOADING}, downloaded_bytes=transferred
                ) is None:
                    logger.info(f"Download {download_id} stopped")
                    return

            playlist = rendition_playlist_name(started.quality)
            await asyncio.to_thread(shutil.copyfile, video_dir / playlist, package_dir / playlist)

            done = self._transition(
                download_id,
                {DownloadStatus.DOWNLOADING},
                status=DownloadStatus.COMPLETED,
                downloaded_bytes=started.size,
            )
            if done is not None:
                logger.info(f"Download {download_id} completed")

        except OSError as e:
            self._transition(
                download_id,
                {DownloadStatus.PENDING, DownloadStatus.DOWNLOADING},
                status=DownloadStatus.FAILED,
                error=str(e),
            )
            logger.error(f"Download {download_id} failed: {e}")

    def get_download(self, download_id: str) -> OfflineDownload | None:
        download = self._load(download_id)
        return self._present(download) if download is not None else None

    async def cancel_download(self, download_id: str) -> bool:
        """
        Mark a pending or in-flight download failed and drop its package.

        Returns:
            False if the download is unknown or already finished
        """
        cancelled = self._transition(
            download_id,
            {DownloadStatus.PENDING, DownloadStatus.DOWNLOADING},
            ttl=self.config["cancelled_ttl_seconds"],
            status=DownloadStatus.FAILED,
            error=CANCELLED_REASON,
        )
        if cancelled is None:
            return False

        task = self._tasks.pop(download_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await asyncio.to_thread(shutil.rmtree, self.offline_dir / download_id, True)
        logger.info(f"Download {download_id} cancelled")
        return True

    def list_downloads(self, viewer_id: str) -> list[OfflineDownload]:
        """A viewer's downloads that have not expired, oldest first."""
        now = self._clock()
        downloads = [
            OfflineDownload(**data) for _, data in self.store.scan("download")
            if data.get("viewer_id") == viewer_id
        ]
        return sorted(
            (d for d in downloads if not d.is_expired(now)),
            key=lambda d: d.created_at,
        )

    async def wait(self) -> None:
        """Wait for every running transfer to finish."""
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await self.wait()
        self._tasks.clear()
