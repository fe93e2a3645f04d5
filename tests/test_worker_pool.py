"""Tests for the worker pool that drives pipelines off the queue."""

import asyncio

import pytest

from api_ingest.models import JobStatus, Quality
from api_ingest.schema import ProcessingOptions
from api_ingest.services.processing_service import CANCELLED_REASON
from common.job_queue import LocalJobQueue
from common.message_types import ProcessingJobMessage
from worker.pool import WorkerPool

from conftest import FakeTranscoder


class StuckTranscoder(FakeTranscoder):
    """Encoding never finishes until the task is cancelled."""

    def __init__(self):
        super().__init__()
        self.encode_started = asyncio.Event()
        self.cancelled = False

    async def encode(self, source, output_path, profile, video_codec="h264", audio_codec="aac"):
        self.encode_started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def make_pool(container, **kwargs) -> WorkerPool:
    return WorkerPool(
        container.queue,
        container.pipeline,
        session_factory=container.session_factory,
        job_service=container.job_service,
        max_concurrent_jobs=2,
        poll_interval=0.05,
        cancel_poll_interval=0.05,
        **kwargs,
    )


async def submit(container):
    container.storage.put_bytes("uploads/s/source.mp4", b"video")
    with container.session_factory() as db:
        job = container.processing_service.create_job(
            db,
            source_key="uploads/s/source.mp4",
            options=ProcessingOptions(qualities=[Quality.Q360P], generate_hls=False),
        )
    await container.processing_service.enqueue(job)
    return job.id


async def wait_for_status(container, job_id, status: JobStatus, timeout: float = 5.0):
    async def poll():
        while container.processing_service.get_job(job_id).status != status:
            await asyncio.sleep(0.02)
    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_pool_runs_queued_job_and_acknowledges(container):
    job_id = await submit(container)
    pool = make_pool(container)

    pool.start()
    try:
        await wait_for_status(container, job_id, JobStatus.COMPLETED)
    finally:
        await pool.stop()

    assert container.queue.inflight_count == 0
    assert container.queue.pending_count == 0


class SlowPipeline:
    """Records how many runs of each job overlap."""

    def __init__(self, duration: float):
        self.duration = duration
        self.calls = 0
        self.running: dict[str, int] = {}
        self.max_overlap = 0

    async def run(self, job_id):
        self.calls += 1
        self.running[job_id] = self.running.get(job_id, 0) + 1
        self.max_overlap = max(self.max_overlap, self.running[job_id])
        try:
            await asyncio.sleep(self.duration)
        finally:
            self.running[job_id] -= 1


@pytest.mark.asyncio
async def test_long_job_is_not_redelivered_while_running(container):
    queue = LocalJobQueue(visibility_timeout=0.2)
    await queue.start()
    container.storage.put_bytes("uploads/s/source.mp4", b"video")
    with container.session_factory() as db:
        job = container.processing_service.create_job(
            db, source_key="uploads/s/source.mp4", options=ProcessingOptions(qualities=[Quality.Q360P])
        )
    await queue.enqueue(ProcessingJobMessage(job_id=str(job.id), source_key=job.source_key))
    pipeline = SlowPipeline(duration=0.6)
    pool = WorkerPool(
        queue,
        pipeline,
        session_factory=container.session_factory,
        job_service=container.job_service,
        max_concurrent_jobs=3,
        poll_interval=0.05,
        cancel_poll_interval=2.0,
    )

    pool.start()
    try:
        await asyncio.sleep(1.0)
    finally:
        await pool.stop()
        await queue.stop()

    assert pipeline.calls == 1
    assert pipeline.max_overlap == 1
    assert queue.inflight_count == 0
    assert queue.pending_count == 0


@pytest.mark.asyncio
async def test_redelivery_of_running_job_is_folded_into_it(container):
    job_id = await submit(container)
    pipeline = SlowPipeline(duration=0.3)
    pool = WorkerPool(
        container.queue,
        pipeline,
        session_factory=container.session_factory,
        job_service=container.job_service,
        max_concurrent_jobs=3,
        poll_interval=0.05,
    )

    pool.start()
    try:
        while pipeline.calls == 0:
            await asyncio.sleep(0.01)
        # a second copy, as after a consumer group rebalance
        await container.queue.enqueue(ProcessingJobMessage(job_id=str(job_id), source_key="uploads/s/source.mp4"))
        await asyncio.sleep(0.5)
    finally:
        await pool.stop()

    assert pipeline.calls == 1
    assert pool.active_jobs == []
    assert container.queue.inflight_count == 0
    assert container.queue.pending_count == 0


@pytest.mark.asyncio
async def test_job_timeout_fails_job(container):
    stuck = StuckTranscoder()
    container.pipeline.transcoder = stuck
    job_id = await submit(container)
    pool = make_pool(container, job_timeout=0.3)

    pool.start()
    try:
        await wait_for_status(container, job_id, JobStatus.FAILED)
    finally:
        await pool.stop()

    assert "Timed out" in container.processing_service.get_job(job_id).error
    assert stuck.cancelled
    assert container.queue.inflight_count == 0


@pytest.mark.asyncio
async def test_cancel_stops_running_job(container):
    stuck = StuckTranscoder()
    container.pipeline.transcoder = stuck
    job_id = await submit(container)
    pool = make_pool(container)

    pool.start()
    try:
        await asyncio.wait_for(stuck.encode_started.wait(), 5)
        assert container.processing_service.get_job(job_id).status == JobStatus.PROCESSING
        container.processing_service.cancel_job(job_id)
        await wait_for_status(container, job_id, JobStatus.FAILED)
    finally:
        await pool.stop()

    assert container.processing_service.get_job(job_id).error == CANCELLED_REASON
    assert stuck.cancelled
    assert pool.active_jobs == []


@pytest.mark.asyncio
async def test_cancelling_pending_job_skips_work(container, transcoder):
    job_id = await submit(container)
    container.processing_service.cancel_job(job_id)
    pool = make_pool(container)

    pool.start()
    try:
        async def drained():
            while container.queue.pending_count or container.queue.inflight_count:
                await asyncio.sleep(0.02)
        await asyncio.wait_for(drained(), 5)
    finally:
        await pool.stop()

    job = container.processing_service.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == CANCELLED_REASON
    assert transcoder.encoded == []
