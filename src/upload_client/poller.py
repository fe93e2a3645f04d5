import asyncio
import logging
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "failed"}


class ProgressPoller:
    """
    Polls the progress of a processing job until it is completed or failed.

    Iterate it directly, or `start()` a background task that feeds
    `on_progress` and `cancel()` it when the caller loses interest.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        job_id: str,
        *,
        interval: float = 2.0,
        on_progress: Callable[[dict], None] | None = None,
    ):
        self.client = client
        self.job_id = job_id
        self.interval = interval
        self.on_progress = on_progress
        self.last: dict | None = None
        self._task: asyncio.Task | None = None

    async def poll_once(self) -> dict:
        response = await self.client.get(f"/api/jobs/{self.job_id}/progress")
        response.raise_for_status()
        self.last = response.json()["data"]
        return self.last

    async def __aiter__(self):
        while True:
            try:
                progress = await self.poll_once()
            except httpx.TransportError as e:
                logger.warning(f"Polling job {self.job_id} failed: {e}")
            else:
                yield progress
                if progress["status"] in TERMINAL_STATUSES:
                    return
            await asyncio.sleep(self.interval)

    async def _run(self) -> dict | None:
        async for progress in self:
            if self.on_progress:
                self.on_progress(progress)
        return self.last

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> dict | None:
        """Wait for the job to finish; returns the last progress seen, even after cancel()."""
        task = self.start()
        try:
            return await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            return self.last
