"""Tests for the HTTP API."""

from __future__ import annotations

import re
import time
from datetime import datetime, timedelta
from urllib.parse import urljoin

import pytest
from fastapi.testclient import TestClient

from video_pipeline.app import create_app
from video_pipeline.config import get_queue_config
from video_pipeline.core import JobOrchestrator, StreamingSessionManager, TranscodingEngine
from video_pipeline.services import PipelineServices


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock()


def build_services(store, runner, storage_dir, clock, queue_config=None):
    engine = TranscodingEngine(runner=runner)
    return PipelineServices(
        store=store,
        engine=engine,
        orchestrator=JobOrchestrator(engine, store, queue_config),
        sessions=StreamingSessionManager(store, storage_dir=storage_dir, clock=clock),
    )


@pytest.fixture
def services(store, fake_runner, pipeline_dirs, clock):
    return build_services(store, fake_runner, pipeline_dirs["storage"], clock)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


def poll(client, url, field, expected, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(url).json()
        if body.get(field) == expected:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{url}: {field} never became {expected}; last {body}")
        time.sleep(0.02)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["name"] == "video-pipeline"


def test_transcode_job_lifecycle(client, source_file, tmp_path):
    response = client.post("/api/jobs/transcode", json={
        "source_path": str(source_file),
        "output_dir": str(tmp_path / "out"),
        "profile_names": ["240p", "720p"],
    })

    assert response.status_code == 202
    job_id = response.json()["job_id"]

    job = poll(client, f"/api/jobs/{job_id}", "status", "completed")
    assert job["progress"] == 100
    assert job["result"]["renditions"] == ["240p", "720p"]

    listed = client.get("/api/jobs", params={"type": "transcode", "status": "completed"}).json()
    assert [j["id"] for j in listed] == [job_id]
    assert client.get("/api/queues").json()["transcode"]["completed"] == 1
    assert client.delete(f"/api/jobs/{job_id}").json() == {"cancelled": False}


def test_transcode_validation_errors(client, source_file, tmp_path):
    body = {"source_path": str(source_file), "output_dir": str(tmp_path / "out")}

    unknown = client.post("/api/jobs/transcode", json={**body, "profile_names": ["999p"]})
    empty = client.post("/api/jobs/transcode", json={**body, "profile_names": []})

    assert unknown.status_code == 400
    assert "999p" in unknown.json()["error"]
    assert empty.status_code == 422


def test_unknown_job(client):
    assert client.get("/api/jobs/transcode_0_missing").status_code == 404
    assert client.delete("/api/jobs/transcode_0_missing").status_code == 404


def test_full_queue_returns_429(store, fake_runner, pipeline_dirs, clock, source_file, tmp_path):
    config = get_queue_config()
    config["transcode"]["capacity"] = 1
    services = build_services(store, fake_runner, pipeline_dirs["storage"], clock, config)
    app = create_app(services)
    # Without the lifespan no workers run, so queued jobs stay queued
    app.state.services = services
    client = TestClient(app)
    body = {"source_path": str(source_file), "output_dir": str(tmp_path / "out"), "profile_names": ["240p"]}

    assert client.post("/api/jobs/transcode", json=body).status_code == 202
    response = client.post("/api/jobs/transcode", json=body)

    assert response.status_code == 429
    assert response.json()["success"] is False


def test_session_flow(client):
    response = client.post("/api/sessions", json={"viewer_id": "viewer1", "video_id": "vid1"})
    assert response.status_code == 201
    session_id = response.json()["session_id"]
    base = f"/api/sessions/{session_id}"

    sample = {"bytes_transferred": 125000, "transfer_time": 1.0}
    assert client.post(f"{base}/bandwidth", json=sample).json() == {"recommendation": None}
    client.post(f"{base}/bandwidth", json=sample)
    recommendation = client.post(f"{base}/bandwidth", json=sample).json()["recommendation"]
    assert recommendation["suggested_quality"] == "240p"
    assert recommendation["reason"] == "auto"

    switched = client.post(f"{base}/quality", json={"quality": "720p"}).json()
    assert switched == {"current_quality": "720p", "quality_switches": 1}

    buffering = client.post(f"{base}/buffering", json={"health": 0.1, "rebuffer_time": 3.0}).json()
    assert buffering["recommendation"]["suggested_quality"] == "480p"

    error = client.post(f"{base}/error", json={"category": "network", "message": "timeout"}).json()
    assert error["type"] == "network"
    assert error["quality"] == "720p"

    assert client.post(f"{base}/watch-time", json={"seconds": 42}).json() == {"watch_time": 42.0}

    session = client.get(base).json()
    assert session["analytics"]["rebuffer_events"] == 1
    assert len(session["analytics"]["errors"]) == 1


def test_session_errors(client):
    missing = "/api/sessions/session_0_missing"

    assert client.get(missing).status_code == 404
    assert client.post(f"{missing}/bandwidth", json={"bytes_transferred": 1, "transfer_time": 1}).status_code == 404
    assert client.post(f"{missing}/quality", json={"quality": "480p"}).status_code == 404
    assert client.post(f"{missing}/watch-time", json={"seconds": 1}).status_code == 404

    bad_quality = client.post("/api/sessions", json={"viewer_id": "v", "video_id": "x", "quality": "8K"})
    assert bad_quality.status_code == 400
    created = client.post("/api/sessions", json={"viewer_id": "v", "video_id": "x"})
    session_id = created.json()["session_id"]
    assert client.post(f"/api/sessions/{session_id}/buffering", json={"health": 2}).status_code == 422


def test_content_endpoints(client, video_folder):
    video_folder()
    session_id = client.post("/api/sessions", json={"viewer_id": "v", "video_id": "vid1"}).json()["session_id"]

    hls = client.get("/api/videos/vid1/master.m3u8", params={"session_id": session_id})
    assert hls.status_code == 200
    assert hls.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert f'VALUE="{session_id}"' in hls.text

    dash = client.get("/api/videos/vid1/master.mpd", params={"session_id": session_id})
    assert dash.headers["content-type"].startswith("application/dash+xml")

    assert client.get("/api/videos/vid1/master.m3u8", params={"session_id": "nope"}).status_code == 404
    assert client.get("/api/videos/vid1/master.m3u8").status_code == 422

    segment = client.get("/api/videos/vid1/480p/480p_001.ts")
    assert segment.status_code == 200
    assert segment.headers["content-type"] == "video/mp2t"
    assert len(segment.content) == 1000
    assert client.get("/api/videos/vid1/480p/720p_001.ts").status_code == 404

    assert client.get("/api/videos/vid1/sprite.jpg").headers["content-type"] == "image/jpeg"
    assert client.get("/api/videos/vid1/thumbnails.vtt").text.startswith("WEBVTT")
    assert client.get("/api/videos/missing/sprite.jpg").status_code == 404


def _uris(playlist: str) -> list[str]:
    return [line for line in playlist.splitlines() if line and not line.startswith("#")]


def test_hls_master_resolves_to_playable_segments(client, video_folder):
    video_folder()
    session_id = client.post("/api/sessions", json={"viewer_id": "v", "video_id": "vid1"}).json()["session_id"]

    master = client.get("/api/videos/vid1/master.m3u8", params={"session_id": session_id})
    variants = [urljoin(str(master.url), uri) for uri in _uris(master.text)]
    assert len(variants) == 2

    for variant_url in variants:
        playlist = client.get(variant_url)
        assert playlist.status_code == 200, variant_url
        assert playlist.headers["content-type"].startswith("application/vnd.apple.mpegurl")

        segment_urls = [urljoin(str(playlist.url), uri) for uri in _uris(playlist.text)]
        assert len(segment_urls) == 3
        for segment_url in segment_urls:
            segment = client.get(segment_url)
            assert segment.status_code == 200, segment_url
            assert segment.headers["content-type"] == "video/mp2t"


def test_dash_segment_urls_resolve(client, video_folder):
    video_folder()
    session_id = client.post("/api/sessions", json={"viewer_id": "v", "video_id": "vid1"}).json()["session_id"]

    mpd = client.get("/api/videos/vid1/master.mpd", params={"session_id": session_id})
    media = re.findall(r'<SegmentURL media="([^"]+)"', mpd.text)

    assert len(media) == 6
    for uri in media:
        assert client.get(urljoin(str(mpd.url), uri)).status_code == 200, uri


def test_rendition_playlist_errors(client, video_folder):
    video_folder()

    assert client.get("/api/videos/vid1/1080p.m3u8").status_code == 404
    assert client.get("/api/videos/missing/480p.m3u8").status_code == 404
    assert client.get("/api/videos/vid1/480p.m3u8", params={"session_id": "nope"}).status_code == 404


def test_download_flow(client, video_folder, clock):
    video_folder()

    response = client.post("/api/downloads", json={"viewer_id": "viewer1", "video_id": "vid1", "quality": "480p"})
    assert response.status_code == 201
    created = response.json()
    assert created["size"] == 3000
    assert created["expiry_date"] == (clock.now + timedelta(days=30)).isoformat()

    download = poll(client, f"/api/downloads/{created['download_id']}", "status", "completed")
    assert download["downloaded_bytes"] == 3000

    listed = client.get("/api/downloads", params={"viewer_id": "viewer1"}).json()
    assert [d["id"] for d in listed] == [created["download_id"]]

    license_response = client.get(f"/api/downloads/{created['download_id']}/license")
    assert license_response.json()["valid"] is True
    assert license_response.json()["license"]["viewer_id"] == "viewer1"

    assert client.delete(f"/api/downloads/{created['download_id']}").json() == {"cancelled": False}

    clock.now += timedelta(days=31)
    assert client.get(f"/api/downloads/{created['download_id']}/license").status_code == 410


def test_download_errors(client, video_folder):
    video_folder()

    unavailable = client.post("/api/downloads", json={"viewer_id": "v", "video_id": "vid1", "quality": "1080p"})
    assert unavailable.status_code == 400

    assert client.get("/api/downloads/download_0_missing").status_code == 404
    assert client.delete("/api/downloads/download_0_missing").status_code == 404
    assert client.get("/api/downloads/download_0_missing/license").status_code == 400
