"""Basic settings and directory management."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir, user_data_dir

APP_NAME = "video-pipeline"


def get_config_dir() -> Path:
    """Get the configuration directory."""
    return Path(os.environ.get("VIDEO_PIPELINE_CONFIG_DIR", user_config_dir(APP_NAME)))


def get_data_dir() -> Path:
    """Get the data directory holding the persisted record store."""
    return Path(os.environ.get("VIDEO_PIPELINE_DATA_DIR", user_data_dir(APP_NAME)))


def get_storage_dir() -> Path:
    """Get the root under which each video's renditions live ({root}/{video_id}/)."""
    default = get_data_dir() / "videos"
    return Path(os.environ.get("VIDEO_PIPELINE_STORAGE_DIR", str(default)))


def get_offline_dir() -> Path:
    """Get the directory where offline download packages are assembled."""
    default = get_data_dir() / "offline"
    return Path(os.environ.get("VIDEO_PIPELINE_OFFLINE_DIR", str(default)))


def get_store_dir() -> Path:
    return get_data_dir() / "records"


def get_ffmpeg_path() -> str:
    return os.environ.get("FFMPEG_PATH", "ffmpeg")


def get_ffprobe_path() -> str:
    return os.environ.get("FFPROBE_PATH", "ffprobe")


def get_config_file() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from file."""
    config: dict[str, Any] = {}
    config_file = get_config_file()
    if config_file.exists():
        with open(config_file) as f:
            config = json.load(f)
    return config


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(config, f, indent=2)


def ensure_dirs() -> None:
    """Ensure all required directories exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_data_dir().mkdir(parents=True, exist_ok=True)
    get_store_dir().mkdir(parents=True, exist_ok=True)
    get_storage_dir().mkdir(parents=True, exist_ok=True)
    get_offline_dir().mkdir(parents=True, exist_ok=True)


# Queue policy per job type. Concurrency mirrors relative CPU cost.
# max_attempts counts the first run, so transcode gets two retries.
DEFAULT_QUEUE_CONFIG: dict[str, dict[str, Any]] = {
    "transcode": {
        "concurrency": 2,
        "max_attempts": 3,
        "backoff": "exponential",
        "backoff_delay": 30.0,
        "capacity": 100,
    },
    "thumbnail": {
        "concurrency": 4,
        "max_attempts": 2,
        "backoff": "fixed",
        "backoff_delay": 5.0,
        "capacity": 100,
    },
    "subtitle": {
        "concurrency": 3,
        "max_attempts": 2,
        "backoff": "fixed",
        "backoff_delay": 5.0,
        "capacity": 100,
    },
    "preview": {
        "concurrency": 2,
        "max_attempts": 2,
        "backoff": "fixed",
        "backoff_delay": 5.0,
        "capacity": 100,
    },
}


def get_queue_config() -> dict[str, dict[str, Any]]:
    """Get per-queue policy, with config file entries merged per job type."""
    overrides = load_config().get("queues", {})
    return {
        name: {**defaults, **overrides.get(name, {})}
        for name, defaults in DEFAULT_QUEUE_CONFIG.items()
    }


DEFAULT_STREAMING_CONFIG: dict[str, Any] = {
    "session_timeout_minutes": 30,
    "session_ttl_seconds": 7200,
    "history_size": 10,
    "recommendation_window": 3,
    "switch_down_factor": 0.8,
    "switch_up_factor": 1.5,
    "low_buffer_threshold": 0.3,
    "qualities": [
        {"name": "240p", "width": 426, "height": 240, "bitrate": 400, "bandwidth": 500000},
        {"name": "360p", "width": 640, "height": 360, "bitrate": 800, "bandwidth": 1000000},
        {"name": "480p", "width": 854, "height": 480, "bitrate": 1200, "bandwidth": 1500000},
        {"name": "720p", "width": 1280, "height": 720, "bitrate": 2500, "bandwidth": 3000000},
        {"name": "1080p", "width": 1920, "height": 1080, "bitrate": 5000, "bandwidth": 6000000},
    ],
}


def get_streaming_config() -> dict[str, Any]:
    """Get adaptive streaming configuration with defaults."""
    config = load_config()
    streaming = config.get("streaming", {})
    return {**DEFAULT_STREAMING_CONFIG, **streaming}


DEFAULT_DOWNLOAD_CONFIG: dict[str, Any] = {
    "license_days": 30,
    "cancelled_ttl_seconds": 24 * 3600,
}


def get_download_config() -> dict[str, Any]:
    """Get offline download configuration with defaults."""
    config = load_config()
    downloads = config.get("downloads", {})
    return {**DEFAULT_DOWNLOAD_CONFIG, **downloads}


# Housekeeping configuration
DEFAULT_HOUSEKEEPING_CONFIG: dict[str, Any] = {
    "enabled": True,
    "schedule": "0 * * * *",  # Job sweep every hour
    "session_sweep_seconds": 300,  # Every 5 minutes
    "completed_retention_hours": 24,
    "failed_retention_hours": 7 * 24,
}


def get_housekeeping_config() -> dict[str, Any]:
    """Get housekeeping configuration with defaults."""
    config = load_config()
    housekeeping = config.get("housekeeping", {})
    return {**DEFAULT_HOUSEKEEPING_CONFIG, **housekeeping}
