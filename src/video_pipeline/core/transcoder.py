"""Transcoding engine: drives ffmpeg to build a streaming-ready video folder."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Callable

from ..config import get_ffmpeg_path, load_profiles
from ..errors import EncoderError, JobCancelled
from ..models import (
    JobStatus,
    ProgressEvent,
    ProgressKind,
    TranscodingJob,
    TranscodingProfile,
    VideoMetadata,
)
from .manifest import SEGMENT_DURATION, rendition_playlist_name, segment_pattern, write_manifests
from .probe import MetadataProber
from .process import ProcessRunner
from .progress import ProgressStream, parse_progress_line, profile_percent
from .subtitles import SUBTITLE_DIR, parse_vtt, select_tracks
from .thumbnails import (
    SPRITE_NAME,
    THUMB_HEIGHT,
    THUMB_WIDTH,
    THUMBNAIL_DIR,
    build_sprite,
    parse_timestamp,
    thumbnail_interval,
    thumbnail_name,
    thumbnail_timestamps,
    write_sprite_and_timeline,
)

logger = logging.getLogger(__name__)

CRF = 23
PREVIEW_CRF = 28


class TranscodeHandle:
    """Handle on a transcoding run started with TranscodingEngine.transcode()."""

    def __init__(self, job: TranscodingJob, task: asyncio.Task):
        self.job = job
        self._task = task

    @property
    def id(self) -> str:
        return self.job.id

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> TranscodingJob:
        """Wait for the run to end. Re-raises the job's failure."""
        return await self._task


class TranscodingEngine:
    """
    Produces renditions, manifests, thumbnails and subtitles for one source.

    Every ffmpeg run is keyed by the job id so cancel() can terminate it.
    """

    def __init__(
        self,
        prober: MetadataProber | None = None,
        runner: ProcessRunner | None = None,
        ffmpeg_path: str | None = None,
    ):
        self.runner = runner or ProcessRunner()
        self.prober = prober or MetadataProber(self.runner)
        self.ffmpeg_path = ffmpeg_path or get_ffmpeg_path()
        self._cancelled: set[str] = set()

    # ---- argument builders -------------------------------------------------

    def build_encoder_args(
        self, source: str | Path, output_dir: str | Path, profile: TranscodingProfile
    ) -> list[str]:
        """ffmpeg arguments encoding one profile into an HLS rendition."""
        output_dir = Path(output_dir)
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(source),
            "-vf", f"scale=-2:{profile.height}",
            "-c:v", profile.codec,
            "-preset", profile.preset,
            "-crf", str(CRF),
            "-maxrate", f"{profile.video_bitrate}k",
            "-bufsize", f"{profile.video_bitrate * 2}k",
            "-r", f"{profile.fps:g}",
            "-c:a", profile.audio_codec,
            "-b:a", f"{profile.audio_bitrate}k",
            "-f", "hls",
            "-hls_time", str(SEGMENT_DURATION),
            "-hls_list_size", "0",
            "-hls_segment_filename", str(output_dir / segment_pattern(profile.name)),
            "-hls_flags", "independent_segments",
            str(output_dir / rendition_playlist_name(profile.name)),
        ]

    def build_thumbnail_args(
        self, source: str | Path, timestamp: float, output_file: Path, width: int, height: int
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-ss", f"{timestamp:.3f}",
            "-i", str(source),
            "-vframes", "1",
            "-vf", f"scale={width}:{height}",
            "-y",
            str(output_file),
        ]

    def build_subtitle_args(self, source: str | Path, index: int, output_file: Path, convert: bool) -> list[str]:
        return [
            self.ffmpeg_path,
            "-i", str(source),
            "-map", f"0:s:{index}",
            "-c:s", "webvtt" if convert else "copy",
            "-y",
            str(output_file),
        ]

    def build_preview_args(
        self, source: str | Path, output_file: Path, start: float, duration: float, height: int
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-ss", f"{start:g}",
            "-i", str(source),
            "-t", f"{duration:g}",
            "-vf", f"scale=-2:{height}",
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", str(PREVIEW_CRF),
            "-c:a", "aac",
            "-movflags", "+faststart",
            "-y",
            str(output_file),
        ]

    # ---- cancellation ------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """
        Mark a job cancelled and terminate its running ffmpeg, if any.

        Returns:
            True if a running process was signalled
        """
        self._cancelled.add(job_id)
        return self.runner.terminate(job_id)

    def release(self, job_id: str) -> None:
        """Forget the cancellation flag of a job that has ended."""
        self._cancelled.discard(job_id)

    def _check_cancelled(self, job_id: str | None) -> None:
        if job_id is not None and job_id in self._cancelled:
            raise JobCancelled(f"Job {job_id} was cancelled")

    async def _run_ffmpeg(
        self,
        args: list[str],
        job_id: str | None,
        failure: str,
        on_line: Callable[[str], None] | None = None,
    ) -> None:
        self._check_cancelled(job_id)
        result = await self.runner.run(args, on_line=on_line, key=job_id)
        self._check_cancelled(job_id)
        if result.returncode != 0:
            raise EncoderError(
                f"{failure} (exit {result.returncode})",
                returncode=result.returncode,
                stderr=result.stderr,
            )

    # ---- full transcoding run ---------------------------------------------

    async def run(
        self,
        job: TranscodingJob,
        stream: ProgressStream | None = None,
        extract_subtitles: bool = False,
    ) -> TranscodingJob:
        """
        Run a transcoding job to completion.

        Profiles are encoded one after another in declared order. After
        profile k of N, progress is round(k / N * 100); the job only reaches
        100 once manifests and thumbnails are written as well.

        Raises:
            ProbeError: the source could not be inspected
            EncoderError: any ffmpeg invocation failed
            JobCancelled: cancel() was called for this job
        """
        stream = stream or ProgressStream()
        output_dir = Path(job.output_dir)
        job.status = JobStatus.PROCESSING
        stream.publish(ProgressEvent(kind=ProgressKind.STARTED, job_id=job.id))
        logger.info(f"Transcoding {job.input_path} -> {output_dir} [{', '.join(p.name for p in job.profiles)}]")

        try:
            self._check_cancelled(job.id)
            metadata = await self.prober.probe(job.input_path)
            job.metadata = metadata
            output_dir.mkdir(parents=True, exist_ok=True)

            total = len(job.profiles)
            for index, profile in enumerate(job.profiles):
                await self._encode_profile(job, profile, metadata.duration, stream)
                job.renditions.append(profile.name)
                finished = index + 1
                if finished < total:
                    self._advance(job, round(finished / total * 100), stream)
                logger.info(f"Job {job.id}: rendition {profile.name} done ({finished}/{total})")

            write_manifests(output_dir, job.profiles, metadata.duration)

            thumbnails = await self.generate_thumbnails(
                job.input_path,
                output_dir / THUMBNAIL_DIR,
                sprite_dir=output_dir,
                metadata=metadata,
                job_id=job.id,
            )
            job.thumbnails = len(thumbnails["thumbnails"])

            if extract_subtitles:
                extracted = await self.extract_subtitles(
                    job.input_path, output_dir / SUBTITLE_DIR, metadata=metadata, job_id=job.id
                )
                job.subtitles = [Path(p).name for p in extracted]

            job.progress = 100
            job.status = JobStatus.COMPLETED
            stream.publish(ProgressEvent(kind=ProgressKind.COMPLETED, job_id=job.id, progress=100))
            logger.info(f"Job {job.id} completed: {len(job.renditions)} renditions, {job.thumbnails} thumbnails")
            return job

        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            stream.publish(
                ProgressEvent(kind=ProgressKind.FAILED, job_id=job.id, progress=job.progress, error=str(e))
            )
            logger.error(f"Job {job.id} failed: {e}")
            raise

        finally:
            self.release(job.id)
            stream.close()

    def _advance(self, job: TranscodingJob, progress: int, stream: ProgressStream) -> None:
        if progress > job.progress:
            job.progress = progress
        stream.publish(ProgressEvent(kind=ProgressKind.PROGRESS, job_id=job.id, progress=job.progress))

    async def _encode_profile(
        self,
        job: TranscodingJob,
        profile: TranscodingProfile,
        duration: float,
        stream: ProgressStream,
    ) -> None:
        def on_line(line: str) -> None:
            sample = parse_progress_line(line)
            if sample is not None:
                stream.publish(
                    ProgressEvent(
                        kind=ProgressKind.PROFILE_PROGRESS,
                        job_id=job.id,
                        progress=profile_percent(sample, duration),
                        profile=profile.name,
                    )
                )

        args = self.build_encoder_args(job.input_path, job.output_dir, profile)
        await self._run_ffmpeg(args, job.id, f"Encoding profile {profile.name} failed", on_line)

    def transcode(
        self,
        source: str | Path,
        output_dir: str | Path,
        profiles: list[TranscodingProfile],
        job_id: str | None = None,
        extract_subtitles: bool = False,
    ) -> tuple[TranscodeHandle, ProgressStream]:
        """
        Start a transcoding run in the background.

        Must be called from a running event loop.

        Returns:
            (handle, progress stream); the stream closes when the run ends
        """
        job = TranscodingJob(
            id=job_id or uuid.uuid4().hex,
            input_path=str(source),
            output_dir=str(output_dir),
            profiles=list(profiles),
        )
        stream = ProgressStream()
        task = asyncio.create_task(self.run(job, stream, extract_subtitles=extract_subtitles))
        # Failure is recorded on the job; retrieving it here keeps unawaited handles quiet
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        return TranscodeHandle(job, task), stream

    # ---- standalone operations --------------------------------------------

    async def _metadata(self, source: str | Path, metadata: VideoMetadata | None) -> VideoMetadata:
        return metadata if metadata is not None else await self.prober.probe(source)

    async def generate_thumbnails(
        self,
        source: str | Path,
        output_dir: str | Path,
        *,
        sprite_dir: str | Path | None = None,
        count: int | None = None,
        interval: float | None = None,
        timestamps: list[float | str] | None = None,
        width: int = THUMB_WIDTH,
        height: int = THUMB_HEIGHT,
        metadata: VideoMetadata | None = None,
        job_id: str | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> dict[str, Any]:
        """
        Capture thumbnails and assemble the sprite sheet.

        Capture points come from explicit ``timestamps``, else ``count``
        evenly spaced captures (``interval`` defaults to duration / count),
        else one capture every max(10s, duration / 20).

        ``on_progress`` receives capture progress capped at 99; the caller
        reports 100 once the sprite is written.

        Returns:
            dict with thumbnail paths, sprite path, timeline path (None for
            explicit timestamps) and the interval used
        """
        output_dir = Path(output_dir)
        sprite_dir = Path(sprite_dir) if sprite_dir is not None else output_dir
        metadata = await self._metadata(source, metadata)
        duration = metadata.duration

        if timestamps:
            points = [parse_timestamp(t) if isinstance(t, str) else float(t) for t in timestamps]
            interval = None
        elif count:
            interval = interval or duration / count
            points = [i * interval for i in range(count) if i * interval < duration]
        else:
            interval = interval or thumbnail_interval(duration)
            points = thumbnail_timestamps(duration, interval)

        output_dir.mkdir(parents=True, exist_ok=True)
        paths: list[Path] = []
        for index, timestamp in enumerate(points):
            path = output_dir / thumbnail_name(index)
            args = self.build_thumbnail_args(source, timestamp, path, width, height)
            await self._run_ffmpeg(args, job_id, f"Thumbnail capture at {timestamp:.1f}s failed")
            paths.append(path)
            if on_progress:
                on_progress(min(99, round(len(paths) / len(points) * 100)))

        result: dict[str, Any] = {
            "thumbnails": [str(p) for p in paths],
            "sprite": None,
            "timeline": None,
            "interval": interval,
        }
        if not paths:
            logger.warning(f"No thumbnails captured for {source} (duration {duration:.1f}s)")
            return result

        if interval is None:
            sprite_path = sprite_dir / SPRITE_NAME
            await asyncio.to_thread(build_sprite, paths, sprite_path, width=width, height=height)
        else:
            sprite_path, timeline_path = await asyncio.to_thread(
                write_sprite_and_timeline, paths, sprite_dir, interval, width=width, height=height
            )
            result["timeline"] = str(timeline_path)
        result["sprite"] = str(sprite_path)
        logger.info(f"Generated {len(paths)} thumbnails for {source}")
        return result

    async def extract_subtitles(
        self,
        source: str | Path,
        output_dir: str | Path,
        *,
        metadata: VideoMetadata | None = None,
        job_id: str | None = None,
    ) -> list[str]:
        """
        Extract up to 10 text subtitle streams as WebVTT.

        A stream that fails to extract, or yields no cues, is skipped with a
        warning; the other streams are still written.

        Returns:
            Paths of the written .vtt files
        """
        output_dir = Path(output_dir)
        metadata = await self._metadata(source, metadata)
        tracks = select_tracks(metadata.subtitle_codecs)
        if not tracks:
            logger.info(f"No extractable subtitle streams in {source}")
            return []

        output_dir.mkdir(parents=True, exist_ok=True)
        extracted = []
        for track in tracks:
            path = output_dir / track.file_name
            args = self.build_subtitle_args(source, track.index, path, track.needs_conversion)
            try:
                await self._run_ffmpeg(args, job_id, f"Subtitle stream {track.index} extraction failed")
            except EncoderError as e:
                logger.warning(f"{e}: {e.stderr.splitlines()[-1] if e.stderr else 'no output'}")
                continue
            if not parse_vtt(path.read_text(encoding="utf-8", errors="replace")):
                logger.warning(f"Subtitle stream {track.index} has no cues, dropping {path.name}")
                path.unlink(missing_ok=True)
                continue
            extracted.append(str(path))
        return extracted

    async def generate_preview(
        self,
        source: str | Path,
        output_file: str | Path,
        *,
        start: float = 60.0,
        duration: float = 30.0,
        quality: str = "480p",
        metadata: VideoMetadata | None = None,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Cut a short H.264 preview clip scaled to the height of ``quality``.

        The window is moved back to fit inside short sources.

        Raises:
            UnknownProfileError: quality is not a known profile
        """
        height = load_profiles([quality])[0].height
        metadata = await self._metadata(source, metadata)

        start = max(0.0, min(start, metadata.duration - duration))
        length = min(duration, metadata.duration - start)

        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        args = self.build_preview_args(source, output_file, start, length, height)
        await self._run_ffmpeg(args, job_id, "Preview generation failed")
        logger.info(f"Preview {output_file} ({length:g}s from {start:g}s at {quality})")
        return {"path": str(output_file), "start": start, "duration": length, "quality": quality}
