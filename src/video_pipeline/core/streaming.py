"""Adaptive streaming sessions: bandwidth tracking, quality advice and content lookup."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

from ..config import get_storage_dir, get_streaming_config
from ..models import (
    ErrorCategory,
    OfflineDownload,
    QualityLevel,
    QualityRecommendation,
    StreamingAnalytics,
    StreamingError,
    StreamingSession,
    SwitchReason,
)
from .downloads import OfflineDownloadManager, is_safe_name
from .manifest import (
    MASTER_DASH,
    MASTER_HLS,
    rendition_playlist_name,
    route_dash_manifest,
    route_master_playlist,
    route_media_playlist,
)
from .store import RecordStore
from .thumbnails import SPRITE_NAME, TIMELINE_NAME

logger = logging.getLogger(__name__)

AUTO_QUALITY = "auto"
SESSION_DATA_ID = "com.learning.analytics"
THUMBNAIL_ASSETS = {TIMELINE_NAME, SPRITE_NAME}


def session_key(session_id: str) -> str:
    return f"streaming:session:{session_id}"


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def tag_hls_manifest(manifest: str, session_id: str) -> str:
    """Insert an EXT-X-SESSION-DATA line carrying the session id after #EXTM3U."""
    tag = f'#EXT-X-SESSION-DATA:DATA-ID="{SESSION_DATA_ID}",VALUE="{session_id}"'
    lines = manifest.split("\n")
    if lines and lines[0].strip() == "#EXTM3U":
        return "\n".join([lines[0], tag, *lines[1:]])
    return "\n".join([tag, *lines])


class QualityLadder:
    """Quality levels ordered from lowest to highest bandwidth requirement."""

    def __init__(self, levels: list[QualityLevel]):
        if not levels:
            raise ValueError("Quality ladder needs at least one level")
        self.levels = sorted(levels, key=lambda q: q.bandwidth)
        self._rank = {q.name: i for i, q in enumerate(self.levels)}

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]]) -> QualityLadder:
        return cls([QualityLevel(**entry) for entry in entries])

    def __contains__(self, name: str) -> bool:
        return name in self._rank

    @property
    def names(self) -> list[str]:
        return [q.name for q in self.levels]

    def rank(self, name: str) -> int | None:
        return self._rank.get(name)

    def lower(self, name: str) -> str | None:
        """The rung directly below ``name``, or None at the bottom or for unknown names."""
        rank = self._rank.get(name)
        if rank is None or rank == 0:
            return None
        return self.levels[rank - 1].name

    def recommend(
        self,
        mean_bandwidth: float,
        current: str,
        down_factor: float,
        up_factor: float,
    ) -> str:
        """
        Highest level the measured bandwidth can sustain.

        A level is suitable when its requirement fits in ``mean * down_factor``;
        a level above the current one must also satisfy
        ``requirement * up_factor <= mean``. With nothing suitable the lowest
        level is returned.
        """
        current_rank = self._rank.get(current)
        best = self.levels[0].name
        for rank, level in enumerate(self.levels):
            if level.bandwidth > mean_bandwidth * down_factor:
                continue
            if current_rank is not None and rank > current_rank and level.bandwidth * up_factor > mean_bandwidth:
                continue
            best = level.name
        return best


class StreamingSessionManager:
    """
    Per-viewer playback state, kept in the record store.

    Sessions idle longer than the inactivity window are treated as gone.
    Operations on unknown or expired sessions log a warning and return None;
    playback telemetry never raises.
    """

    def __init__(
        self,
        store: RecordStore,
        storage_dir: Path | None = None,
        config: dict[str, Any] | None = None,
        downloads: OfflineDownloadManager | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.storage_dir = Path(storage_dir or get_storage_dir())
        self.config = config or get_streaming_config()
        self.ladder = QualityLadder.from_config(self.config["qualities"])
        self.downloads = downloads or OfflineDownloadManager(store, storage_dir=self.storage_dir, clock=clock)
        self._clock = clock

    @property
    def inactivity_window(self) -> timedelta:
        return timedelta(minutes=self.config["session_timeout_minutes"])

    # ---- session records ---------------------------------------------------

    def _is_stale(self, session: StreamingSession, now: datetime) -> bool:
        return now - session.last_activity > self.inactivity_window

    def _save(self, session: StreamingSession) -> None:
        self.store.put(session_key(session.id), session.model_dump(mode="json"), self.config["session_ttl_seconds"])

    def _mutate(
        self, session_id: str, action: str, fn: Callable[[StreamingSession], Any]
    ) -> tuple[StreamingSession, Any] | None:
        """
        Read-modify-write one session and mark it active.

        Returns:
            (updated session, value returned by fn), or None for a missing session
        """
        session = self.get_session(session_id)
        if session is None:
            logger.warning(f"SessionNotFound: {action} ignored for unknown or expired session {session_id}")
            return None

        outcome: dict[str, Any] = {}

        def apply(data: dict[str, Any]) -> dict[str, Any]:
            current = StreamingSession(**data)
            outcome["value"] = fn(current)
            current.last_activity = self._clock()
            return current.model_dump(mode="json")

        data = self.store.update(session_key(session_id), apply, self.config["session_ttl_seconds"])
        if data is None:
            logger.warning(f"SessionNotFound: session {session_id} vanished during {action}")
            return None
        return StreamingSession(**data), outcome.get("value")

    # ---- lifecycle ---------------------------------------------------------

    def start_session(self, viewer_id: str, video_id: str, quality: str = AUTO_QUALITY) -> StreamingSession:
        if quality != AUTO_QUALITY and quality not in self.ladder:
            raise ValueError(f"Unknown quality: {quality}")
        now = self._clock()
        session = StreamingSession(
            id=new_session_id(),
            viewer_id=viewer_id,
            video_id=video_id,
            current_quality=quality,
            buffer_health=1.0,
            last_activity=now,
            analytics=StreamingAnalytics(start_time=now),
        )
        self._save(session)
        logger.info(f"Session {session.id} started: viewer {viewer_id}, video {video_id}")
        return session

    def get_session(self, session_id: str) -> StreamingSession | None:
        data = self.store.get(session_key(session_id))
        if data is None:
            return None
        session = StreamingSession(**data)
        if self._is_stale(session, self._clock()):
            self.store.delete(session_key(session_id))
            logger.info(f"Session {session_id} expired after inactivity")
            return None
        return session

    def end_session(self, session_id: str) -> bool:
        return self.store.delete(session_key(session_id))

    def expire_sessions(self) -> int:
        """Discard every session idle past the inactivity window. Returns the number removed."""
        now = self._clock()
        expired = 0
        for key, data in list(self.store.scan("streaming:session")):
            session = StreamingSession(**data)
            if self._is_stale(session, now):
                self.store.delete(key)
                expired += 1
        if expired:
            logger.info(f"Expired {expired} idle streaming session(s)")
        return expired

    # ---- bandwidth and quality ----------------------------------------------

    def _recommendation(self, session: StreamingSession) -> str | None:
        window = int(self.config["recommendation_window"])
        history = session.bandwidth_history
        if len(history) < window:
            return None
        recent = history[-window:]
        return self.ladder.recommend(
            sum(recent) / len(recent),
            session.current_quality,
            float(self.config["switch_down_factor"]),
            float(self.config["switch_up_factor"]),
        )

    def recommend_quality(self, session_id: str) -> str | None:
        """The quality the current bandwidth history supports, or None without enough samples."""
        session = self.get_session(session_id)
        return self._recommendation(session) if session is not None else None

    def update_bandwidth(
        self,
        session_id: str,
        bytes_transferred: int,
        transfer_seconds: float,
        reported_bandwidth: float | None = None,
    ) -> QualityRecommendation | None:
        """
        Record one bandwidth sample (bits/sec) measured from a segment transfer.

        Returns:
            A recommendation when the supported quality differs from the current one
        """
        if transfer_seconds > 0:
            sample = bytes_transferred * 8 / transfer_seconds
        elif reported_bandwidth:
            sample = float(reported_bandwidth)
        else:
            logger.warning(f"Session {session_id}: ignoring bandwidth sample with no transfer time")
            return None

        history_size = int(self.config["history_size"])

        def record(session: StreamingSession) -> str | None:
            session.bandwidth = sample
            session.bandwidth_history = (session.bandwidth_history + [sample])[-history_size:]
            analytics = session.analytics
            analytics.average_bandwidth = sum(session.bandwidth_history) / len(session.bandwidth_history)
            analytics.peak_bandwidth = max(analytics.peak_bandwidth, sample)
            return self._recommendation(session)

        mutated = self._mutate(session_id, "bandwidth update", record)
        if mutated is None:
            return None
        session, suggested = mutated
        if suggested is None or suggested == session.current_quality:
            return None
        return QualityRecommendation(
            session_id=session_id,
            current_quality=session.current_quality,
            suggested_quality=suggested,
            bandwidth=sample,
            reason=SwitchReason.AUTO,
        )

    def switch_quality(
        self, session_id: str, quality: str, reason: SwitchReason | str = SwitchReason.USER
    ) -> StreamingSession | None:
        """Record a quality change made by the player. Every call counts as one switch."""
        if quality != AUTO_QUALITY and quality not in self.ladder:
            raise ValueError(f"Unknown quality: {quality}")
        reason = SwitchReason(reason)

        def switch(session: StreamingSession) -> str:
            previous = session.current_quality
            session.current_quality = quality
            session.analytics.quality_switches += 1
            return previous

        mutated = self._mutate(session_id, "quality switch", switch)
        if mutated is None:
            return None
        session, previous = mutated
        logger.info(f"Session {session_id}: quality {previous} -> {quality} ({reason.value})")
        return session

    def report_buffering(
        self, session_id: str, health: float, rebuffer_seconds: float | None = None
    ) -> QualityRecommendation | None:
        """
        Record buffer health in [0, 1] and an optional rebuffer stall.

        Returns:
            A one-rung-down recommendation when health is low and a stall occurred
        """
        health = max(0.0, min(float(health), 1.0))

        def record(session: StreamingSession) -> None:
            session.buffer_health = health
            if rebuffer_seconds:
                session.analytics.rebuffer_events += 1
                session.analytics.rebuffer_time += rebuffer_seconds

        mutated = self._mutate(session_id, "buffering report", record)
        if mutated is None:
            return None
        session, _ = mutated

        if not rebuffer_seconds or health >= float(self.config["low_buffer_threshold"]):
            return None
        lower = self.ladder.lower(session.current_quality)
        if lower is None:
            return None
        logger.info(f"Session {session_id}: buffer health {health:.2f} after stall, suggesting {lower}")
        return QualityRecommendation(
            session_id=session_id,
            current_quality=session.current_quality,
            suggested_quality=lower,
            bandwidth=session.bandwidth,
            reason=SwitchReason.BUFFER,
        )

    def report_error(
        self, session_id: str, category: ErrorCategory | str, message: str
    ) -> StreamingError | None:
        """Append a playback error stamped with the session's quality and bandwidth."""
        category = ErrorCategory(category)

        def record(session: StreamingSession) -> StreamingError:
            error = StreamingError(
                type=category,
                message=message,
                timestamp=self._clock(),
                quality=session.current_quality,
                bandwidth=session.bandwidth,
            )
            session.analytics.errors.append(error)
            return error

        mutated = self._mutate(session_id, "error report", record)
        if mutated is None:
            return None
        _, error = mutated
        logger.warning(f"Session {session_id}: {category.value} error: {message}")
        return error

    def update_watch_time(self, session_id: str, seconds: float) -> StreamingSession | None:
        if seconds < 0:
            raise ValueError("Watch time increment must not be negative")

        def record(session: StreamingSession) -> None:
            session.watch_time += seconds
            session.analytics.total_watch_time += seconds

        mutated = self._mutate(session_id, "watch time update", record)
        return mutated[0] if mutated is not None else None

    # ---- content -----------------------------------------------------------

    def _video_dir(self, video_id: str) -> Path | None:
        if not is_safe_name(video_id):
            return None
        return self.storage_dir / video_id

    def get_manifest(self, video_id: str, session_id: str, fmt: str = "hls") -> str | None:
        """
        Master manifest for a video, read from its folder.

        HLS manifests are tagged with the session id for analytics and their
        variant URIs carry it on to the rendition playlists. Segment URIs
        are rewritten to ``{quality}/{segment}``.

        Returns:
            Manifest text, or None for an unknown session, video or format
        """
        if fmt not in ("hls", "dash"):
            raise ValueError(f"Unsupported manifest format: {fmt}")
        if self._mutate(session_id, "manifest request", lambda s: None) is None:
            return None

        video_dir = self._video_dir(video_id)
        if video_dir is None:
            return None
        path = video_dir / (MASTER_HLS if fmt == "hls" else MASTER_DASH)
        if not path.is_file():
            logger.warning(f"{fmt.upper()} manifest not found for video {video_id}")
            return None

        manifest = path.read_text(encoding="utf-8")
        if fmt == "hls":
            query = urlencode({"session_id": session_id})
            return tag_hls_manifest(route_master_playlist(manifest, query), session_id)
        return route_dash_manifest(manifest)

    def get_rendition_playlist(self, video_id: str, quality: str, session_id: str | None = None) -> str | None:
        """
        Media playlist of one rendition, with segment URIs pointing at the segment route.

        A given session id is marked active; an unknown one yields None.
        """
        if session_id is not None and self._mutate(session_id, "playlist request", lambda s: None) is None:
            return None

        video_dir = self._video_dir(video_id)
        if video_dir is None or not is_safe_name(quality):
            return None
        path = video_dir / rendition_playlist_name(quality)
        if not path.is_file():
            logger.warning(f"Rendition playlist {quality} not found for video {video_id}")
            return None
        return route_media_playlist(path.read_text(encoding="utf-8"))

    def get_segment(self, video_id: str, quality: str, segment_name: str) -> bytes | None:
        """
        Bytes of one media segment of one rendition.

        Returns:
            None for unknown files, segments of another quality, or names
            that would escape the video folder
        """
        video_dir = self._video_dir(video_id)
        if video_dir is None or not is_safe_name(segment_name):
            return None
        if not segment_name.startswith(f"{quality}_") or not segment_name.endswith(".ts"):
            return None

        path = (video_dir / segment_name).resolve()
        if video_dir.resolve() not in path.parents or not path.is_file():
            return None
        return path.read_bytes()

    def get_thumbnail_asset(self, video_id: str, name: str) -> Path | None:
        """Path of thumbnails.vtt or sprite.jpg for a video, if produced."""
        video_dir = self._video_dir(video_id)
        if video_dir is None or name not in THUMBNAIL_ASSETS:
            return None
        path = video_dir / name
        return path if path.is_file() else None

    # ---- offline downloads -------------------------------------------------

    async def start_download(self, viewer_id: str, video_id: str, quality: str) -> OfflineDownload:
        return await self.downloads.start_download(viewer_id, video_id, quality)

    def get_download(self, download_id: str) -> OfflineDownload | None:
        return self.downloads.get_download(download_id)

    async def cancel_download(self, download_id: str) -> bool:
        return await self.downloads.cancel_download(download_id)

    def list_downloads(self, viewer_id: str) -> list[OfflineDownload]:
        return self.downloads.list_downloads(viewer_id)

    def verify_license(self, download_id: str) -> dict[str, Any]:
        return self.downloads.verify_license(download_id)
