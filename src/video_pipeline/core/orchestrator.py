"""Job orchestration: typed queues, worker pools, retries and follow-on jobs."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..config import get_queue_config, load_profiles
from ..errors import JobCancelled, ProbeError, QueueCapacityExceeded, UnknownProfileError
from ..models import (
    JobStatus,
    JobType,
    ProcessingJob,
    ProgressKind,
    TranscodingJob,
)
from .progress import ProgressStream
from .store import RecordStore
from .transcoder import TranscodingEngine

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 7 * 24 * 3600
CANCELLED_REASON = "Job cancelled by user"

# Failures that retrying cannot fix
_FATAL_ERRORS = (ProbeError, UnknownProfileError)

FOLLOW_ON_DEFAULTS: dict[JobType, dict[str, Any]] = {
    JobType.THUMBNAIL: {"count": 20, "width": 160, "height": 90},
    JobType.SUBTITLE: {},
    JobType.PREVIEW: {"start_time": 60, "duration": 30, "quality": "480p"},
}


def new_job_id(job_type: JobType) -> str:
    return f"{job_type.value}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def retry_delay(policy: dict[str, Any], attempts: int) -> float:
    """Delay before the next attempt, given how many attempts already ran."""
    delay = float(policy.get("backoff_delay", 0))
    if policy.get("backoff") == "exponential":
        return delay * 2 ** max(attempts - 1, 0)
    return delay


class JobOrchestrator:
    """
    Runs processing jobs on four independent queues.

    The record store is the only authority on job state: every transition
    is a per-record read-modify-write, and workers re-read the record when
    they dequeue a job, so a job cancelled while waiting is skipped.
    """

    def __init__(
        self,
        engine: TranscodingEngine,
        store: RecordStore,
        queue_config: dict[str, dict[str, Any]] | None = None,
    ):
        self.engine = engine
        self.store = store
        self.queue_config = queue_config or get_queue_config()
        self._queues: dict[JobType, asyncio.Queue] = {
            job_type: asyncio.Queue(maxsize=int(self._policy(job_type).get("capacity", 100)))
            for job_type in JobType
        }
        self._handlers: dict[JobType, Callable[[ProcessingJob], Awaitable[dict[str, Any]]]] = {
            JobType.TRANSCODE: self._run_transcode,
            JobType.THUMBNAIL: self._run_thumbnail,
            JobType.SUBTITLE: self._run_subtitle,
            JobType.PREVIEW: self._run_preview,
        }
        self._active: dict[JobType, set[str]] = {job_type: set() for job_type in JobType}
        self._enqueued: set[str] = set()
        self._retries: dict[str, asyncio.Task] = {}
        self._workers: list[asyncio.Task] = []

    def _policy(self, job_type: JobType) -> dict[str, Any]:
        return self.queue_config.get(job_type.value, {})

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ---- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start worker pools and re-queue jobs left unfinished by a previous run."""
        if self._workers:
            return

        self._recover()

        for job_type in JobType:
            concurrency = int(self._policy(job_type).get("concurrency", 1))
            for n in range(concurrency):
                self._workers.append(
                    asyncio.create_task(self._worker(job_type), name=f"{job_type.value}-worker-{n}")
                )
        logger.info(f"Job orchestrator started with {len(self._workers)} workers")

    async def stop(self) -> None:
        """Cancel pending retries, terminate running encoders and stop workers."""
        for task in self._retries.values():
            task.cancel()
        self._retries.clear()

        terminated = self.engine.runner.terminate_all()
        if terminated:
            logger.info(f"Terminated {terminated} running encoder(s)")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Job orchestrator stopped")

    def _recover(self) -> None:
        for _, data in self.store.scan("job"):
            job = ProcessingJob(**data)
            if job.is_finished() or job.id in self._enqueued or job.id in self._retries:
                continue
            if job.status == JobStatus.PROCESSING:
                self._update(job.id, self._reset_to_pending)
            try:
                self._enqueue(job.type, job.id)
            except QueueCapacityExceeded:
                logger.warning(f"Could not re-queue job {job.id}: {job.type.value} queue is full")
                continue
            logger.info(f"Re-queued unfinished job {job.id}")

    @staticmethod
    def _reset_to_pending(job: ProcessingJob) -> bool:
        if job.status != JobStatus.PROCESSING:
            return False
        job.status = JobStatus.PENDING
        return True

    # ---- persistence -------------------------------------------------------

    def _save(self, job: ProcessingJob) -> None:
        self.store.put(job_key(job.id), job.model_dump(mode="json"), JOB_TTL_SECONDS)

    def _update(
        self, job_id: str, mutate: Callable[[ProcessingJob], bool | None]
    ) -> ProcessingJob | None:
        """Apply ``mutate`` to the stored record; returning False leaves it untouched."""

        def apply(data: dict[str, Any]) -> dict[str, Any] | None:
            job = ProcessingJob(**data)
            if mutate(job) is False:
                return None
            return job.model_dump(mode="json")

        data = self.store.update(job_key(job_id), apply, JOB_TTL_SECONDS)
        return ProcessingJob(**data) if data is not None else None

    # ---- submission --------------------------------------------------------

    def _enqueue(self, job_type: JobType, job_id: str) -> None:
        try:
            self._queues[job_type].put_nowait(job_id)
        except asyncio.QueueFull as e:
            raise QueueCapacityExceeded(
                f"The {job_type.value} queue is full ({self._queues[job_type].maxsize} jobs); retry later"
            ) from e
        self._enqueued.add(job_id)

    def submit(
        self,
        job_type: JobType,
        input_path: str | Path,
        output_path: str | Path,
        options: dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> str:
        """
        Queue a job without waiting for it.

        Raises:
            QueueCapacityExceeded: the queue for this job type is full

        Returns:
            The new job id
        """
        job_type = JobType(job_type)
        if self._queues[job_type].full():
            raise QueueCapacityExceeded(
                f"The {job_type.value} queue is full ({self._queues[job_type].maxsize} jobs); retry later"
            )

        job = ProcessingJob(
            id=new_job_id(job_type),
            type=job_type,
            input_path=str(input_path),
            output_path=str(output_path),
            options=dict(options or {}),
            parent_id=parent_id,
        )
        self._save(job)
        self._enqueue(job_type, job.id)
        logger.info(f"Queued {job_type.value} job {job.id} for {input_path}")
        return job.id

    def submit_transcode(
        self,
        source: str | Path,
        output_dir: str | Path,
        profile_names: list[str],
        options: dict[str, Any] | None = None,
    ) -> str:
        """
        Queue a transcode job.

        ``options`` may set generate_thumbnails, extract_subtitles and
        generate_preview to queue follow-on jobs once the transcode completes.

        Raises:
            UnknownProfileError: a profile name is not in the catalog
            QueueCapacityExceeded: the transcode queue is full
        """
        if not profile_names:
            raise UnknownProfileError("At least one transcoding profile is required")
        load_profiles(profile_names)
        return self.submit(
            JobType.TRANSCODE,
            source,
            output_dir,
            {**(options or {}), "profiles": list(profile_names)},
        )

    # ---- queries -----------------------------------------------------------

    def get_status(self, job_id: str) -> ProcessingJob | None:
        data = self.store.get(job_key(job_id))
        return ProcessingJob(**data) if data is not None else None

    def list_jobs(
        self, status: JobStatus | None = None, job_type: JobType | None = None
    ) -> list[ProcessingJob]:
        jobs = []
        for _, data in self.store.scan("job"):
            job = ProcessingJob(**data)
            if status is not None and job.status != status:
                continue
            if job_type is not None and job.type != job_type:
                continue
            jobs.append(job)
        return sorted(jobs, key=lambda j: j.created_at)

    def queue_stats(self) -> dict[str, dict[str, int]]:
        """Waiting / active / completed / failed counts per queue."""
        stats = {
            job_type.value: {"waiting": 0, "active": len(self._active[job_type]), "completed": 0, "failed": 0}
            for job_type in JobType
        }
        for job in self.list_jobs():
            entry = stats[job.type.value]
            if job.status == JobStatus.PENDING:
                entry["waiting"] += 1
            elif job.status == JobStatus.COMPLETED:
                entry["completed"] += 1
            elif job.status == JobStatus.FAILED:
                entry["failed"] += 1
        return stats

    # ---- cancellation ------------------------------------------------------

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job.

        A pending job is skipped when a worker dequeues it; a processing job
        has its encoder terminated. Either way the record becomes failed
        with a cancellation reason and is not retried.

        Returns:
            False if the job is unknown or already completed/failed
        """
        job = self.get_status(job_id)
        if job is None or job.is_finished():
            return False

        retry = self._retries.pop(job_id, None)
        if retry is not None:
            retry.cancel()

        if job.status == JobStatus.PROCESSING:
            self.engine.cancel(job_id)

        def mark_cancelled(record: ProcessingJob) -> bool:
            if record.is_finished():
                return False
            record.status = JobStatus.FAILED
            record.error = CANCELLED_REASON
            record.end_time = datetime.now()
            return True

        updated = self._update(job_id, mark_cancelled)
        if updated is None:
            return False
        logger.info(f"Cancelled {job.type.value} job {job_id}")
        return True

    # ---- workers -----------------------------------------------------------

    async def _worker(self, job_type: JobType) -> None:
        queue = self._queues[job_type]
        while True:
            job_id = await queue.get()
            self._enqueued.discard(job_id)
            try:
                await self._process(job_type, job_id)
            except Exception:
                logger.exception(f"Unexpected error processing {job_type.value} job {job_id}")
            finally:
                queue.task_done()

    async def _process(self, job_type: JobType, job_id: str) -> None:
        def begin(job: ProcessingJob) -> bool:
            if job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.progress = 0
            job.start_time = datetime.now()
            return True

        job = self._update(job_id, begin)
        if job is None:
            logger.info(f"Skipping {job_type.value} job {job_id}: no longer pending")
            return

        self._active[job_type].add(job_id)
        try:
            result = await self._handlers[job_type](job)
        except JobCancelled:
            logger.info(f"Job {job_id} stopped after cancellation")
        except Exception as e:
            self._handle_failure(job, e)
        else:
            self._complete(job, result)
        finally:
            self._active[job_type].discard(job_id)
            self.engine.release(job_id)

    def _complete(self, job: ProcessingJob, result: dict[str, Any]) -> None:
        def finish(record: ProcessingJob) -> bool:
            if record.status != JobStatus.PROCESSING:
                return False
            record.status = JobStatus.COMPLETED
            record.progress = 100
            record.error = None
            record.end_time = datetime.now()
            record.result = result
            return True

        if self._update(job.id, finish) is None:
            return
        logger.info(f"{job.type.value.capitalize()} job {job.id} completed")

        if job.type == JobType.TRANSCODE:
            self._enqueue_follow_ons(job)

    def _handle_failure(self, job: ProcessingJob, error: Exception) -> None:
        policy = self._policy(job.type)
        max_attempts = int(policy.get("max_attempts", 1))
        retry = job.attempts < max_attempts and not isinstance(error, _FATAL_ERRORS)
        message = str(error) or error.__class__.__name__

        def record_failure(record: ProcessingJob) -> bool:
            if record.status != JobStatus.PROCESSING:
                return False
            record.error = message
            if retry:
                record.status = JobStatus.PENDING
            else:
                record.status = JobStatus.FAILED
                record.end_time = datetime.now()
            return True

        if self._update(job.id, record_failure) is None:
            return

        if retry:
            delay = retry_delay(policy, job.attempts)
            logger.warning(
                f"{job.type.value.capitalize()} job {job.id} failed (attempt {job.attempts}/{max_attempts}): "
                f"{message}; retrying in {delay:g}s"
            )
            self._retries[job.id] = asyncio.create_task(self._retry_after(job.type, job.id, delay))
        else:
            logger.error(f"{job.type.value.capitalize()} job {job.id} failed permanently: {message}")

    async def _retry_after(self, job_type: JobType, job_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            job = self.get_status(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return
            await self._queues[job_type].put(job_id)
            self._enqueued.add(job_id)
        finally:
            self._retries.pop(job_id, None)

    def _enqueue_follow_ons(self, parent: ProcessingJob) -> None:
        output = Path(parent.output_path)
        wanted = [
            (JobType.THUMBNAIL, "generate_thumbnails", output / "thumbnails"),
            (JobType.SUBTITLE, "extract_subtitles", output / "subtitles"),
            (JobType.PREVIEW, "generate_preview", output / "preview.mp4"),
        ]
        children = []
        for job_type, flag, target in wanted:
            if not parent.options.get(flag):
                continue
            try:
                children.append(
                    self.submit(
                        job_type,
                        parent.input_path,
                        target,
                        FOLLOW_ON_DEFAULTS[job_type],
                        parent_id=parent.id,
                    )
                )
            except QueueCapacityExceeded as e:
                logger.warning(f"Follow-on {job_type.value} job for {parent.id} not queued: {e}")

        if children:
            def link(record: ProcessingJob) -> bool:
                record.children.extend(children)
                return True

            self._update(parent.id, link)

    # ---- handlers ----------------------------------------------------------

    def _progress_setter(self, job_id: str) -> Callable[[int], None]:
        def set_progress(progress: int) -> None:
            def apply(record: ProcessingJob) -> bool:
                if record.status != JobStatus.PROCESSING or progress <= record.progress:
                    return False
                record.progress = progress
                return True

            self._update(job_id, apply)

        return set_progress

    async def _follow_progress(self, job_id: str, stream: ProgressStream) -> None:
        set_progress = self._progress_setter(job_id)
        async for event in stream:
            if event.kind == ProgressKind.PROGRESS:
                set_progress(int(event.progress))

    async def _run_transcode(self, job: ProcessingJob) -> dict[str, Any]:
        transcoding = TranscodingJob(
            id=job.id,
            input_path=job.input_path,
            output_dir=job.output_path,
            profiles=load_profiles(job.options.get("profiles", [])),
        )
        stream = ProgressStream()
        follower = asyncio.create_task(self._follow_progress(job.id, stream))
        try:
            await self.engine.run(transcoding, stream)
        finally:
            await follower

        return {
            "renditions": transcoding.renditions,
            "thumbnails": transcoding.thumbnails,
            "metadata": transcoding.metadata.model_dump(mode="json") if transcoding.metadata else None,
            "manifest": str(Path(job.output_path) / "master.m3u8"),
        }

    async def _run_thumbnail(self, job: ProcessingJob) -> dict[str, Any]:
        options = job.options
        return await self.engine.generate_thumbnails(
            job.input_path,
            job.output_path,
            count=options.get("count", FOLLOW_ON_DEFAULTS[JobType.THUMBNAIL]["count"]),
            interval=options.get("interval"),
            timestamps=options.get("timestamps"),
            width=options.get("width", FOLLOW_ON_DEFAULTS[JobType.THUMBNAIL]["width"]),
            height=options.get("height", FOLLOW_ON_DEFAULTS[JobType.THUMBNAIL]["height"]),
            job_id=job.id,
            on_progress=self._progress_setter(job.id),
        )

    async def _run_subtitle(self, job: ProcessingJob) -> dict[str, Any]:
        files = await self.engine.extract_subtitles(job.input_path, job.output_path, job_id=job.id)
        return {"files": files}

    async def _run_preview(self, job: ProcessingJob) -> dict[str, Any]:
        defaults = FOLLOW_ON_DEFAULTS[JobType.PREVIEW]
        options = {**defaults, **job.options}
        return await self.engine.generate_preview(
            job.input_path,
            job.output_path,
            start=float(options["start_time"]),
            duration=float(options["duration"]),
            quality=options["quality"],
            job_id=job.id,
        )
