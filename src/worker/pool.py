import asyncio
from datetime import datetime
from typing import Callable
import logging

from sqlalchemy.orm import sessionmaker

from api_ingest.models import utcnow
from api_ingest.services.job_service import JobService
from api_ingest.services.processing_service import CANCELLED_REASON
from common.job_queue import Delivery, JobQueue
from worker.pipeline import TranscodingPipeline

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 3


class WorkerPool:
    """
    Pulls jobs off the queue and runs at most `max_concurrent_jobs` pipelines
    at once. A delivery is acknowledged only after its job is terminal; a
    crash in between leaves it unacknowledged so the queue redelivers it.
    A job never runs twice at once here: a redelivery of a job that is still
    running is settled together with that run.
    """

    def __init__(
        self,
        queue: JobQueue,
        pipeline: TranscodingPipeline,
        *,
        session_factory: sessionmaker,
        job_service: JobService,
        max_concurrent_jobs: int = 3,
        job_timeout: float = 3600,
        poll_interval: float = 1.0,
        cancel_poll_interval: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.session_factory = session_factory
        self.jobs = job_service
        self.max_concurrent_jobs = max_concurrent_jobs
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self.cancel_poll_interval = cancel_poll_interval
        self.clock = clock
        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._active: dict[str, asyncio.Task] = {}
        self._deliveries: dict[str, list[Delivery]] = {}
        self._consumer_task: asyncio.Task | None = None
        self._running = False

    @property
    def active_jobs(self) -> list[str]:
        return list(self._active)

    def start(self):
        if self._consumer_task is None:
            self._running = True
            self._consumer_task = asyncio.create_task(self._consume())
            logger.info(f"Worker pool started with {self.max_concurrent_jobs} slot(s)")

    async def stop(self):
        self._running = False
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None
        # unfinished jobs stay unacknowledged and are picked up again after restart
        for task in list(self._active.values()):
            task.cancel()
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        logger.info("Worker pool stopped")

    async def _consume(self):
        while self._running:
            await self._slots.acquire()
            try:
                delivery = await self.queue.dequeue(timeout=self.poll_interval)
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception as e:
                self._slots.release()
                logger.error(f"Error while polling the job queue: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)
                continue
            if delivery is None:
                self._slots.release()
                continue
            job_id = delivery.message.job_id
            if job_id in self._active:
                # settled together with the run already in progress
                logger.info(f"Job {job_id} is already running here, folding delivery {delivery.delivery_count} into it")
                self._deliveries[job_id].append(delivery)
                self._slots.release()
                continue
            self._deliveries[job_id] = [delivery]
            self._active[job_id] = asyncio.create_task(self._handle(job_id))

    async def _handle(self, job_id: str):
        attempt = self._deliveries[job_id][0].delivery_count
        logger.info(f"Picked up job {job_id} (delivery {attempt})")
        retry = False
        try:
            await asyncio.wait_for(self._run_watched(job_id), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            self._fail(job_id, f"Timed out after {self.job_timeout:g}s")
        except asyncio.CancelledError:
            self._active.pop(job_id, None)
            self._deliveries.pop(job_id, None)
            self._slots.release()
            raise
        except Exception as e:
            logger.error(f"Job {job_id} crashed: {e}", exc_info=True)
            if attempt < MAX_DELIVERY_ATTEMPTS:
                retry = True
            else:
                self._fail(job_id, f"Gave up after {attempt} attempts: {e}")
        deliveries = self._deliveries.pop(job_id, [])
        try:
            *superseded, latest = deliveries
            for delivery in superseded:
                await self.queue.ack(delivery)
            if retry:
                await self.queue.nack(latest)
            else:
                await self.queue.ack(latest)
        finally:
            self._active.pop(job_id, None)
            self._slots.release()

    async def _run_watched(self, job_id: str):
        """
        Run the pipeline, keeping its delivery invisible to other consumers and
        stopping it early if the job's cancellation flag gets set.
        """
        task = asyncio.create_task(self.pipeline.run(job_id))
        tick = self.cancel_poll_interval
        if self.queue.heartbeat_interval is not None:
            tick = min(tick, self.queue.heartbeat_interval)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=tick)
                if done:
                    return task.result()
                for delivery in self._deliveries.get(job_id, []):
                    await self.queue.extend(delivery)
                if self._cancel_requested(job_id):
                    logger.info(f"Stopping job {job_id} on request")
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    self._fail(job_id, CANCELLED_REASON)
                    return None
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise

    def _cancel_requested(self, job_id: str) -> bool:
        with self.session_factory() as db:
            return self.jobs.is_cancel_requested(db, job_id)

    def _fail(self, job_id: str, reason: str):
        with self.session_factory() as db:
            job = self.jobs.get(db, id=job_id)
            if job is not None:
                self.jobs.mark_failed(db, job, reason, now=self.clock())
