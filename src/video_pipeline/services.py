"""Explicit construction and lifecycle of the pipeline's service objects."""

from __future__ import annotations

import logging

from .config import ensure_dirs, get_offline_dir, get_storage_dir, get_store_dir
from .core import (
    HousekeepingScheduler,
    JobOrchestrator,
    OfflineDownloadManager,
    ProcessRunner,
    RecordStore,
    StreamingSessionManager,
    TranscodingEngine,
)

logger = logging.getLogger(__name__)


class PipelineServices:
    """Holds one instance of each service; passed by reference to callers."""

    def __init__(
        self,
        store: RecordStore,
        engine: TranscodingEngine,
        orchestrator: JobOrchestrator,
        sessions: StreamingSessionManager,
        housekeeping: HousekeepingScheduler | None = None,
    ):
        self.store = store
        self.engine = engine
        self.orchestrator = orchestrator
        self.sessions = sessions
        self.housekeeping = housekeeping

    @classmethod
    def from_config(cls) -> PipelineServices:
        """Build services from the configured directories and config file."""
        ensure_dirs()
        store = RecordStore(get_store_dir())
        engine = TranscodingEngine(runner=ProcessRunner())
        downloads = OfflineDownloadManager(store, storage_dir=get_storage_dir(), offline_dir=get_offline_dir())
        sessions = StreamingSessionManager(store, storage_dir=get_storage_dir(), downloads=downloads)
        return cls(
            store=store,
            engine=engine,
            orchestrator=JobOrchestrator(engine, store),
            sessions=sessions,
            housekeeping=HousekeepingScheduler(store, sessions),
        )

    async def start(self) -> None:
        self.orchestrator.start()
        if self.housekeeping is not None:
            await self.housekeeping.start()
        logger.info("Pipeline services started")

    async def stop(self) -> None:
        if self.housekeeping is not None:
            await self.housekeeping.stop()
        await self.sessions.downloads.stop()
        await self.orchestrator.stop()
        logger.info("Pipeline services stopped")
