"""Tests for job administration: failed listing, retry and queue statistics."""

import pytest

from api_ingest.exceptions.exceptions import InvalidArgument, JobNotFound, QueueUnavailable
from api_ingest.models import JobStatus, Quality
from api_ingest.schema import ProcessingOptions, SubmitJobRequest

SOURCE_KEY = "uploads/direct/source.mp4"


async def submit(container):
    container.storage.put_bytes(SOURCE_KEY, b"video")
    job = await container.processing_service.submit(SubmitJobRequest(
        source_key=SOURCE_KEY, options=ProcessingOptions(qualities=[Quality.Q360P], generate_hls=False),
    ))
    return job.id


@pytest.mark.asyncio
async def test_submit_rejects_missing_source(container):
    with pytest.raises(InvalidArgument):
        await container.processing_service.submit(SubmitJobRequest(source_key="uploads/none/source.mp4"))
    assert container.processing_service.list_jobs() == []


@pytest.mark.asyncio
async def test_retried_job_runs_to_completion(container, transcoder):
    processing = container.processing_service
    transcoder.fail_qualities = {"360p"}
    job_id = await submit(container)
    assert await container.pipeline.run(job_id) == JobStatus.FAILED
    assert [j.id for j in processing.list_failed_jobs()] == [job_id]

    transcoder.fail_qualities = set()
    retried = await processing.retry_job(job_id)

    assert retried.status == JobStatus.PENDING
    assert retried.progress == 0
    assert retried.error is None
    assert retried.failed_qualities == {}
    assert processing.get_progress(job_id).status == JobStatus.PENDING
    assert await container.pipeline.run(job_id) == JobStatus.COMPLETED
    assert processing.list_failed_jobs() == []


@pytest.mark.asyncio
async def test_only_failed_jobs_can_be_retried(container):
    job_id = await submit(container)

    with pytest.raises(InvalidArgument):
        await container.processing_service.retry_job(job_id)
    with pytest.raises(JobNotFound):
        await container.processing_service.retry_job("00000000-0000-0000-0000-000000000000")


@pytest.mark.asyncio
async def test_retry_fails_job_again_when_queue_is_down(container):
    processing = container.processing_service
    job_id = await submit(container)
    processing.cancel_job(job_id)
    await container.queue.stop()

    with pytest.raises(QueueUnavailable):
        await processing.retry_job(job_id)

    job = processing.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "not running" in job.error


@pytest.mark.asyncio
async def test_queue_stats_counts_backlog_and_statuses(container):
    processing = container.processing_service
    first = await submit(container)
    await submit(container)
    processing.cancel_job(first)
    delivery = await container.queue.dequeue(timeout=0)

    stats = processing.queue_stats([delivery.message.job_id])

    assert stats.pending == 1
    assert stats.inflight == 1
    assert stats.active == 1
    assert stats.active_job_ids == [delivery.message.job_id]
    assert stats.jobs_by_status == {"pending": 1, "processing": 0, "completed": 0, "failed": 1}
