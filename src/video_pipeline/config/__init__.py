"""Configuration module for video-pipeline."""

from .settings import (
    ensure_dirs,
    get_config_dir,
    get_config_file,
    get_data_dir,
    get_download_config,
    get_ffmpeg_path,
    get_ffprobe_path,
    get_housekeeping_config,
    get_offline_dir,
    get_queue_config,
    get_storage_dir,
    get_store_dir,
    get_streaming_config,
    load_config,
    save_config,
)
from .profiles import get_profile_catalog, load_profiles

__all__ = [
    "ensure_dirs",
    "get_config_dir",
    "get_config_file",
    "get_data_dir",
    "get_download_config",
    "get_ffmpeg_path",
    "get_ffprobe_path",
    "get_housekeeping_config",
    "get_offline_dir",
    "get_queue_config",
    "get_storage_dir",
    "get_store_dir",
    "get_streaming_config",
    "load_config",
    "save_config",
    "get_profile_catalog",
    "load_profiles",
]
