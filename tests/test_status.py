"""Tests for merged upload/processing status and the background sweeper."""

import pytest

from api_ingest.exceptions.exceptions import SessionNotFound
from api_ingest.models import JobStatus, ProcessingJob, SessionStatus
from api_ingest.schema import CompleteUploadRequest, InitiateUploadRequest, ProcessingOptions
from api_ingest.services.processing_service import CANCELLED_REASON
from api_ingest.services.sweeper import Sweeper

from conftest import make_video_bytes, md5, split_chunks


async def start_upload(container, size: int = 3 * 4096):
    data = make_video_bytes(size)
    session = await container.upload_manager.initiate(InitiateUploadRequest(
        file_name="clip.mp4", file_size=size, file_type="video/mp4", chunk_size=4096,
        metadata={"processingOptions": {"qualities": ["360p"], "generateHls": False}},
    ))
    return session.session_id, data


async def finish_upload(container, session_id, data):
    for index, chunk in enumerate(split_chunks(data, 4096)):
        await container.upload_manager.upload_chunk(session_id, index, chunk)
    completed = await container.upload_manager.finalize(
        session_id, CompleteUploadRequest(total_chunks=len(split_chunks(data, 4096)), final_hash=md5(data))
    )
    return completed.job_id


@pytest.mark.asyncio
async def test_merged_status_follows_upload_then_processing(container):
    session_id, data = await start_upload(container)
    await container.upload_manager.upload_chunk(session_id, 0, data[:4096])

    status = container.status_reporter.merged_status(session_id)
    assert status.phase == "upload"
    assert status.status == SessionStatus.UPLOADING.value
    assert status.percentage == 33.33
    assert status.overall_percentage == 16.67

    job_id = await finish_upload(container, session_id, data)
    status = container.status_reporter.merged_status(session_id)
    assert status.phase == "processing"
    assert status.job_id == job_id
    assert status.overall_percentage == 50.0

    await container.pipeline.run(job_id)
    status = container.status_reporter.merged_status(session_id)
    assert status.status == "completed"
    assert status.percentage == 100.0
    assert status.overall_percentage == 100.0


@pytest.mark.asyncio
async def test_merged_status_falls_back_to_database(container, fake_redis):
    session_id, data = await start_upload(container)
    job_id = await finish_upload(container, session_id, data)

    fake_redis.hashes.clear()
    with container.session_factory() as db:
        job = db.get(ProcessingJob, job_id)
        job.progress = 40
        db.commit()

    status = container.status_reporter.merged_status(session_id)
    assert status.status == "pending"
    assert status.percentage == 40.0
    assert status.overall_percentage == 70.0


@pytest.mark.asyncio
async def test_merged_status_keeps_completed_outcome_of_deleted_job(container):
    session_id, data = await start_upload(container)
    job_id = await finish_upload(container, session_id, data)
    await container.pipeline.run(job_id)

    container.processing_service.delete_job(job_id)

    status = container.status_reporter.merged_status(session_id)
    assert status.status == "completed"
    assert status.overall_percentage == 100.0


@pytest.mark.asyncio
async def test_merged_status_keeps_failure_of_deleted_job(container):
    session_id, data = await start_upload(container)
    job_id = await finish_upload(container, session_id, data)
    container.processing_service.cancel_job(job_id)
    before = container.status_reporter.merged_status(session_id)

    container.processing_service.delete_job(job_id)

    after = container.status_reporter.merged_status(session_id)
    assert before.status == after.status == "failed"
    assert after.error == CANCELLED_REASON
    assert after.percentage == before.percentage
    assert after.overall_percentage < 100.0


@pytest.mark.asyncio
async def test_merged_status_of_vanished_job_is_unknown(container):
    session_id, data = await start_upload(container)
    job_id = await finish_upload(container, session_id, data)
    # removed behind the service's back, so no outcome was recorded
    with container.session_factory() as db:
        container.job_service.delete(db, id=job_id)

    status = container.status_reporter.merged_status(session_id)
    assert status.status == "unknown"
    assert status.percentage == 0.0
    assert status.error is not None


def test_merged_status_unknown_session(api_container):
    with pytest.raises(SessionNotFound):
        api_container.status_reporter.merged_status("00000000-0000-0000-0000-000000000000")


@pytest.mark.asyncio
async def test_sweeper_expires_then_purges_idle_sessions(container, settings, clock):
    session_id, data = await start_upload(container)
    await container.upload_manager.upload_chunk(session_id, 0, data[:4096])
    sweeper = Sweeper(container.upload_manager, container.processing_service, interval=60, job_retention=settings.JOB_RETENTION)

    clock.advance(settings.SESSION_INACTIVITY_TIMEOUT + 1)
    await sweeper.sweep_once()

    status = await container.upload_manager.get_status(session_id)
    assert status.status == SessionStatus.FAILED
    assert container.storage.list(f"chunks/{session_id}/") == []

    clock.advance(settings.SESSION_RETENTION + 1)
    await sweeper.sweep_once()

    with pytest.raises(SessionNotFound):
        await container.upload_manager.get_status(session_id)


@pytest.mark.asyncio
async def test_sweeper_purges_finished_jobs_after_retention(container, settings, clock):
    container.storage.put_bytes("uploads/direct/source.mp4", b"video")
    with container.session_factory() as db:
        job = container.processing_service.create_job(
            db,
            source_key="uploads/direct/source.mp4",
            options=ProcessingOptions(qualities=["360p"], generate_hls=False),
        )
    await container.pipeline.run(job.id)
    sweeper = Sweeper(container.upload_manager, container.processing_service, interval=60, job_retention=settings.JOB_RETENTION)

    await sweeper.sweep_once()
    assert container.processing_service.get_job(job.id).status == JobStatus.COMPLETED

    clock.advance(settings.JOB_RETENTION + 1)
    await sweeper.sweep_once()

    assert container.processing_service.list_jobs() == []


@pytest.mark.asyncio
async def test_purged_job_leaves_its_outcome_on_the_session(container, settings, clock):
    session_id, data = await start_upload(container)
    job_id = await finish_upload(container, session_id, data)
    await container.pipeline.run(job_id)

    clock.advance(settings.JOB_RETENTION + 1)
    assert container.processing_service.purge_expired_jobs(settings.JOB_RETENTION) == 1

    status = container.status_reporter.merged_status(session_id)
    assert status.status == "completed"
    assert status.percentage == 100.0


@pytest.mark.asyncio
async def test_sweeper_task_starts_and_stops(container, settings):
    sweeper = Sweeper(container.upload_manager, container.processing_service, interval=3600, job_retention=settings.JOB_RETENTION)

    sweeper.start()
    await sweeper.stop()

    assert sweeper._task is None
