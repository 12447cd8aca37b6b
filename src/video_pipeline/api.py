"""REST API routes for video-pipeline."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from .errors import (
    DownloadValidationError,
    LicenseExpired,
    PipelineError,
    QueueCapacityExceeded,
    SessionNotFound,
    UnknownProfileError,
)
from .models import ErrorCategory, JobStatus, JobType, SwitchReason
from .services import PipelineServices

router = APIRouter()

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (UnknownProfileError, 400),
    (DownloadValidationError, 400),
    (SessionNotFound, 404),
    (LicenseExpired, 410),
    (QueueCapacityExceeded, 429),
]


def install_error_handlers(app: FastAPI) -> None:
    """Translate pipeline errors into HTTP status codes."""

    async def handle_pipeline_error(request: Request, exc: PipelineError) -> JSONResponse:
        status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
        return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})

    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    app.add_exception_handler(PipelineError, handle_pipeline_error)
    app.add_exception_handler(ValueError, handle_value_error)


def get_services(request: Request) -> PipelineServices:
    return request.app.state.services


Services = Annotated[PipelineServices, Depends(get_services)]


# Pydantic models for request bodies
class TranscodeOptions(BaseModel):
    generate_thumbnails: bool = False
    extract_subtitles: bool = False
    generate_preview: bool = False


class TranscodeRequest(BaseModel):
    """Request body for submitting a transcode job."""
    source_path: str
    output_dir: str
    profile_names: list[str] = Field(min_length=1)
    options: TranscodeOptions = Field(default_factory=TranscodeOptions)


class SessionRequest(BaseModel):
    viewer_id: str
    video_id: str
    quality: str = "auto"


class BandwidthRequest(BaseModel):
    """One segment transfer measured by the player."""
    bytes_transferred: int = Field(ge=0)
    transfer_time: float = Field(ge=0, description="Seconds")
    bandwidth: float | None = Field(default=None, description="Player estimate in bits/sec")


class QualityRequest(BaseModel):
    quality: str
    reason: SwitchReason = SwitchReason.USER


class BufferingRequest(BaseModel):
    health: float = Field(ge=0, le=1)
    rebuffer_time: float | None = Field(default=None, ge=0)


class ErrorReport(BaseModel):
    category: ErrorCategory
    message: str


class WatchTimeRequest(BaseModel):
    seconds: float = Field(ge=0)


class DownloadRequest(BaseModel):
    viewer_id: str
    video_id: str
    quality: str


def _session_not_found(session_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Session not found or expired: {session_id}")


@router.get("/health")
async def health():
    """Health check and service info."""
    return {
        "name": "video-pipeline",
        "version": "0.1.0",
        "status": "healthy",
        "endpoints": {
            "api": "/api",
            "docs": "/docs",
        },
    }


# ---- jobs -------------------------------------------------------------------

@router.post("/jobs/transcode", status_code=202)
async def api_submit_transcode(body: TranscodeRequest, services: Services):
    """Queue a transcode job. Returns immediately with the job id."""
    job_id = services.orchestrator.submit_transcode(
        body.source_path,
        body.output_dir,
        body.profile_names,
        body.options.model_dump(),
    )
    return {"job_id": job_id}


@router.get("/jobs/{job_id}")
async def api_job_status(job_id: str, services: Services):
    job = services.orchestrator.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job.model_dump(mode="json")


@router.delete("/jobs/{job_id}")
async def api_cancel_job(job_id: str, services: Services):
    """Cancel a pending or processing job."""
    if services.orchestrator.get_status(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {"cancelled": await services.orchestrator.cancel(job_id)}


@router.get("/jobs")
async def api_list_jobs(
    services: Services,
    status: Annotated[JobStatus | None, Query(description="Filter by status")] = None,
    type: Annotated[JobType | None, Query(description="Filter by job type")] = None,
):
    """List persisted jobs, oldest first."""
    return [job.model_dump(mode="json") for job in services.orchestrator.list_jobs(status, type)]


@router.get("/queues")
async def api_queue_stats(services: Services):
    return services.orchestrator.queue_stats()


# ---- sessions ---------------------------------------------------------------

@router.post("/sessions", status_code=201)
async def api_start_session(body: SessionRequest, services: Services):
    session = services.sessions.start_session(body.viewer_id, body.video_id, body.quality)
    return {"session_id": session.id}


@router.get("/sessions/{session_id}")
async def api_get_session(session_id: str, services: Services):
    session = services.sessions.get_session(session_id)
    if session is None:
        raise _session_not_found(session_id)
    return session.model_dump(mode="json")


@router.post("/sessions/{session_id}/bandwidth")
async def api_update_bandwidth(session_id: str, body: BandwidthRequest, services: Services):
    """Record a bandwidth sample; may return a quality recommendation."""
    if services.sessions.get_session(session_id) is None:
        raise _session_not_found(session_id)
    recommendation = services.sessions.update_bandwidth(
        session_id, body.bytes_transferred, body.transfer_time, body.bandwidth
    )
    return {"recommendation": recommendation.model_dump(mode="json") if recommendation else None}


@router.post("/sessions/{session_id}/quality")
async def api_switch_quality(session_id: str, body: QualityRequest, services: Services):
    session = services.sessions.switch_quality(session_id, body.quality, body.reason)
    if session is None:
        raise _session_not_found(session_id)
    return {
        "current_quality": session.current_quality,
        "quality_switches": session.analytics.quality_switches,
    }


@router.post("/sessions/{session_id}/buffering")
async def api_report_buffering(session_id: str, body: BufferingRequest, services: Services):
    if services.sessions.get_session(session_id) is None:
        raise _session_not_found(session_id)
    recommendation = services.sessions.report_buffering(session_id, body.health, body.rebuffer_time)
    return {"recommendation": recommendation.model_dump(mode="json") if recommendation else None}


@router.post("/sessions/{session_id}/error")
async def api_report_error(session_id: str, body: ErrorReport, services: Services):
    error = services.sessions.report_error(session_id, body.category, body.message)
    if error is None:
        raise _session_not_found(session_id)
    return error.model_dump(mode="json")


@router.post("/sessions/{session_id}/watch-time")
async def api_update_watch_time(session_id: str, body: WatchTimeRequest, services: Services):
    session = services.sessions.update_watch_time(session_id, body.seconds)
    if session is None:
        raise _session_not_found(session_id)
    return {"watch_time": session.watch_time}


# ---- content ----------------------------------------------------------------

@router.get("/videos/{video_id}/master.m3u8")
async def api_hls_manifest(
    video_id: str,
    services: Services,
    session_id: Annotated[str, Query(description="Streaming session id")],
):
    manifest = services.sessions.get_manifest(video_id, session_id, "hls")
    if manifest is None:
        raise HTTPException(status_code=404, detail="Manifest or session not found")
    return PlainTextResponse(manifest, media_type="application/vnd.apple.mpegurl")


@router.get("/videos/{video_id}/master.mpd")
async def api_dash_manifest(
    video_id: str,
    services: Services,
    session_id: Annotated[str, Query(description="Streaming session id")],
):
    manifest = services.sessions.get_manifest(video_id, session_id, "dash")
    if manifest is None:
        raise HTTPException(status_code=404, detail="Manifest or session not found")
    return PlainTextResponse(manifest, media_type="application/dash+xml")


@router.get("/videos/{video_id}/{quality}.m3u8")
async def api_rendition_playlist(
    video_id: str,
    quality: str,
    services: Services,
    session_id: Annotated[str | None, Query(description="Streaming session id")] = None,
):
    playlist = services.sessions.get_rendition_playlist(video_id, quality, session_id)
    if playlist is None:
        raise HTTPException(status_code=404, detail="Playlist or session not found")
    return PlainTextResponse(playlist, media_type="application/vnd.apple.mpegurl")


@router.get("/videos/{video_id}/thumbnails.vtt")
async def api_thumbnail_timeline(video_id: str, services: Services):
    path = services.sessions.get_thumbnail_asset(video_id, "thumbnails.vtt")
    if path is None:
        raise HTTPException(status_code=404, detail="Thumbnail timeline not found")
    return FileResponse(path, media_type="text/vtt")


@router.get("/videos/{video_id}/sprite.jpg")
async def api_thumbnail_sprite(video_id: str, services: Services):
    path = services.sessions.get_thumbnail_asset(video_id, "sprite.jpg")
    if path is None:
        raise HTTPException(status_code=404, detail="Sprite sheet not found")
    return FileResponse(path, media_type="image/jpeg")


@router.get("/videos/{video_id}/{quality}/{segment_name}")
async def api_segment(video_id: str, quality: str, segment_name: str, services: Services):
    data = services.sessions.get_segment(video_id, quality, segment_name)
    if data is None:
        raise HTTPException(status_code=404, detail="Segment not found")
    return Response(content=data, media_type="video/mp2t")


# ---- offline downloads ------------------------------------------------------

@router.post("/downloads", status_code=201)
async def api_start_download(body: DownloadRequest, services: Services):
    download = await services.sessions.start_download(body.viewer_id, body.video_id, body.quality)
    return {"download_id": download.id, "size": download.size, "expiry_date": download.expiry_date.isoformat()}


@router.get("/downloads")
async def api_list_downloads(
    services: Services,
    viewer_id: Annotated[str, Query(description="Viewer whose downloads to list")],
) -> list[dict[str, Any]]:
    return [d.model_dump(mode="json") for d in services.sessions.list_downloads(viewer_id)]


@router.get("/downloads/{download_id}")
async def api_get_download(download_id: str, services: Services):
    download = services.sessions.get_download(download_id)
    if download is None:
        raise HTTPException(status_code=404, detail=f"Download not found: {download_id}")
    return download.model_dump(mode="json")


@router.get("/downloads/{download_id}/license")
async def api_verify_license(download_id: str, services: Services):
    """Validate the license of an offline download."""
    return {"valid": True, "license": services.sessions.verify_license(download_id)}


@router.delete("/downloads/{download_id}")
async def api_cancel_download(download_id: str, services: Services):
    if services.sessions.get_download(download_id) is None:
        raise HTTPException(status_code=404, detail=f"Download not found: {download_id}")
    return {"cancelled": await services.sessions.cancel_download(download_id)}
