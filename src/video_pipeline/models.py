"""Data models for video-pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Lifecycle status shared by transcoding and processing jobs."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Orchestrator queue / job type."""

    TRANSCODE = "transcode"
    THUMBNAIL = "thumbnail"
    SUBTITLE = "subtitle"
    PREVIEW = "preview"


class VideoMetadata(BaseModel):
    """Probed properties of a source file. Immutable once probed."""

    model_config = ConfigDict(frozen=True)

    duration: float
    width: int
    height: int
    framerate: float
    bitrate: int
    codec: str
    audio_codec: str
    subtitle_codecs: tuple[str, ...] = ()


class TranscodingProfile(BaseModel):
    """One rung of the rendition ladder."""

    model_config = ConfigDict(frozen=True)

    name: str
    width: int
    height: int
    video_bitrate: int  # kbps
    fps: float
    codec: str = "libx264"
    preset: str = "medium"
    audio_codec: str = "aac"
    audio_bitrate: int = 128  # kbps

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Approximate total bandwidth in bits/sec (video + audio)."""
        return (self.video_bitrate + self.audio_bitrate) * 1000


class TranscodingJob(BaseModel):
    """A single source -> N renditions encoding run."""

    id: str
    input_path: str
    output_dir: str
    profiles: list[TranscodingProfile]
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error: str | None = None
    metadata: VideoMetadata | None = None
    renditions: list[str] = Field(default_factory=list)
    thumbnails: int = 0
    subtitles: list[str] = Field(default_factory=list)


class ProcessingJob(BaseModel):
    """Orchestrator record for any of the four job types."""

    id: str
    type: JobType
    input_path: str
    output_path: str
    options: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    attempts: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)

    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class ProgressKind(str, Enum):
    STARTED = "started"
    PROFILE_PROGRESS = "profile_progress"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressEvent(BaseModel):
    """One entry on a job's progress channel."""

    kind: ProgressKind
    job_id: str
    progress: float = 0.0
    profile: str | None = None
    error: str | None = None


class ErrorCategory(str, Enum):
    NETWORK = "network"
    DECODE = "decode"
    MANIFEST = "manifest"
    DRM = "drm"


class SwitchReason(str, Enum):
    USER = "user"
    AUTO = "auto"
    BUFFER = "buffer"


class StreamingError(BaseModel):
    """Playback error reported by a client. Never mutated once recorded."""

    model_config = ConfigDict(frozen=True)

    type: ErrorCategory
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    quality: str
    bandwidth: float


class StreamingAnalytics(BaseModel):
    start_time: datetime = Field(default_factory=datetime.now)
    total_watch_time: float = 0.0
    quality_switches: int = 0
    rebuffer_events: int = 0
    rebuffer_time: float = 0.0
    average_bandwidth: float = 0.0
    peak_bandwidth: float = 0.0
    errors: list[StreamingError] = Field(default_factory=list)


class StreamingSession(BaseModel):
    """Per-viewer adaptive playback state."""

    id: str
    viewer_id: str
    video_id: str
    current_quality: str = "auto"
    bandwidth: float = 0.0
    buffer_health: float = 0.0
    watch_time: float = 0.0
    last_activity: datetime = Field(default_factory=datetime.now)
    bandwidth_history: list[float] = Field(default_factory=list)
    analytics: StreamingAnalytics = Field(default_factory=StreamingAnalytics)


class QualityLevel(BaseModel):
    """A rung the player can switch to, with its bandwidth requirement."""

    model_config = ConfigDict(frozen=True)

    name: str
    width: int
    height: int
    bitrate: int  # kbps
    bandwidth: int  # bits/sec required


class QualityRecommendation(BaseModel):
    """Advisory event; the player decides whether to switch."""

    session_id: str
    current_quality: str
    suggested_quality: str
    bandwidth: float
    reason: SwitchReason


class DownloadStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class OfflineDownload(BaseModel):
    id: str
    viewer_id: str
    video_id: str
    quality: str
    size: int = 0
    downloaded_bytes: int = 0
    status: DownloadStatus = DownloadStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.now)
    expiry_date: datetime
    drm_license: str | None = None
    error: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now()) >= self.expiry_date
