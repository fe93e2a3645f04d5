import asyncio
import logging

from api_ingest.services.processing_service import ProcessingService
from api_ingest.services.upload_service import UploadSessionManager

logger = logging.getLogger(__name__)


class Sweeper:
    """Periodically expires idle upload sessions and purges records past retention."""

    def __init__(
        self,
        upload_manager: UploadSessionManager,
        processing_service: ProcessingService,
        interval: float,
        job_retention: float,
    ):
        self.upload_manager = upload_manager
        self.processing_service = processing_service
        self.interval = interval
        self.job_retention = job_retention
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> None:
        await self.upload_manager.expire_inactive()
        await self.upload_manager.purge_expired()
        await asyncio.to_thread(self.processing_service.purge_expired_jobs, self.job_retention)

    async def _run(self):
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # a failed sweep is retried on the next tick
                logger.error(f"Sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info(f"Sweeper started (every {self.interval}s)")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Sweeper stopped")
