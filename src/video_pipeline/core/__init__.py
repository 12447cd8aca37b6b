"""Core functionality for video-pipeline."""

from .downloads import OfflineDownloadManager, decode_license
from .housekeeping import cleanup_offline_packages, sweep_job_records
from .manifest import build_dash_manifest, build_master_playlist, list_segments, write_manifests
from .orchestrator import JobOrchestrator
from .probe import MetadataProber, parse_probe_output
from .process import ProcessResult, ProcessRunner
from .progress import ProgressSample, ProgressStream, parse_progress_line
from .scheduler import HousekeepingScheduler
from .store import RecordStore
from .streaming import QualityLadder, StreamingSessionManager
from .transcoder import TranscodeHandle, TranscodingEngine

__all__ = [
    # Media tooling
    "MetadataProber",
    "parse_probe_output",
    "ProcessRunner",
    "ProcessResult",
    "ProgressSample",
    "ProgressStream",
    "parse_progress_line",
    "build_master_playlist",
    "build_dash_manifest",
    "list_segments",
    "write_manifests",
    "TranscodingEngine",
    "TranscodeHandle",
    # Jobs
    "JobOrchestrator",
    "RecordStore",
    # Streaming
    "QualityLadder",
    "StreamingSessionManager",
    "OfflineDownloadManager",
    "decode_license",
    # Housekeeping
    "sweep_job_records",
    "cleanup_offline_packages",
    "HousekeepingScheduler",
]
