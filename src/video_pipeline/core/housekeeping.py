"""Periodic removal of stale job records and offline packages."""

from __future__ import annotations

import logging
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from ..models import DownloadStatus, JobStatus, OfflineDownload, ProcessingJob
from .downloads import download_key
from .store import RecordStore

logger = logging.getLogger(__name__)


def get_job_age_hours(job: ProcessingJob, now: datetime) -> float:
    """Hours since the job finished, or since it was created if it never ran."""
    reference = job.end_time or job.created_at
    return (now - reference).total_seconds() / 3600.0


def sweep_job_records(
    store: RecordStore,
    completed_retention_hours: float,
    failed_retention_hours: float,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Delete finished job records past their retention.

    Completed jobs are kept for ``completed_retention_hours`` and failed jobs
    for ``failed_retention_hours``; pending and processing jobs are never
    touched. Records whose store TTL already lapsed are purged as well.

    Returns:
        Dictionary with sweep statistics:
        {
            "success": True,
            "deleted_completed": 3,
            "deleted_failed": 1,
            "skipped_active": 2,
            "purged_expired": 0,
            "details": [...]
        }
    """
    now = now or datetime.now()
    deleted_completed = 0
    deleted_failed = 0
    skipped_active = 0
    details = []

    for key, data in list(store.scan("job")):
        job = ProcessingJob(**data)

        if not job.is_finished():
            skipped_active += 1
            continue

        age_hours = get_job_age_hours(job, now)
        retention = completed_retention_hours if job.status == JobStatus.COMPLETED else failed_retention_hours
        if age_hours <= retention:
            logger.debug(f"Kept {job.id}: age {age_hours:.1f}h <= retention {retention}h")
            continue

        if store.delete(key):
            if job.status == JobStatus.COMPLETED:
                deleted_completed += 1
            else:
                deleted_failed += 1
            details.append({
                "job_id": job.id,
                "type": job.type.value,
                "status": job.status.value,
                "age_hours": round(age_hours, 2),
            })

    purged = store.purge_expired()

    return {
        "success": True,
        "deleted_completed": deleted_completed,
        "deleted_failed": deleted_failed,
        "skipped_active": skipped_active,
        "purged_expired": purged,
        "details": details,
    }


def delete_package_safe(folder_path: Path) -> tuple[bool, str | None, int]:
    """
    Delete an offline package folder.

    Returns:
        Tuple of (success, error_message, bytes_freed)
    """
    try:
        folder_size = sum(f.stat().st_size for f in folder_path.rglob("*") if f.is_file())
        shutil.rmtree(folder_path)
        return True, None, folder_size

    except PermissionError as e:
        error_msg = f"Permission denied: {e}"
        logger.warning(f"Skipped {folder_path}: {error_msg}")
        return False, error_msg, 0

    except OSError as e:
        logger.debug(f"Retrying delete for {folder_path} after error: {e}")
        time.sleep(0.1)
        try:
            folder_size = sum(f.stat().st_size for f in folder_path.rglob("*") if f.is_file())
            shutil.rmtree(folder_path)
            return True, None, folder_size
        except OSError as retry_error:
            error_msg = f"Failed after retry: {retry_error}"
            logger.error(f"Failed to delete {folder_path}: {error_msg}")
            return False, error_msg, 0


def cleanup_offline_packages(
    store: RecordStore, offline_dir: Path, now: datetime | None = None
) -> dict[str, Any]:
    """
    Remove offline package folders whose download is gone, failed or expired.

    Folders of pending, downloading and valid completed downloads are kept.
    """
    now = now or datetime.now()
    deleted_count = 0
    freed_bytes = 0
    errors = []

    if not offline_dir.exists():
        return {"success": True, "deleted_count": 0, "freed_bytes": 0, "errors": []}

    for folder in offline_dir.iterdir():
        if not folder.is_dir():
            continue

        data = store.get(download_key(folder.name))
        if data is not None:
            download = OfflineDownload(**data)
            if download.status != DownloadStatus.FAILED and not download.is_expired(now):
                continue

        logger.info(f"Deleting offline package {folder.name}")
        success, error_msg, size = delete_package_safe(folder)
        if success:
            deleted_count += 1
            freed_bytes += size
        else:
            errors.append({"folder": folder.name, "error": error_msg})

    return {
        "success": not errors,
        "deleted_count": deleted_count,
        "freed_bytes": freed_bytes,
        "errors": errors,
    }
