"""Tests for the transcoding pipeline."""

import pytest

from api_ingest.exceptions.exceptions import TranscodingError
from api_ingest.models import JobStatus, Quality
from api_ingest.schema import ProcessingOptions
from api_ingest.services.processing_service import CANCELLED_REASON
from worker.pipeline import StageProgress, requested_stages

SOURCE_KEY = "uploads/session/source.mp4"


def create_job(container, **options):
    container.storage.put_bytes(SOURCE_KEY, b"not really a video")
    with container.session_factory() as db:
        job = container.processing_service.create_job(
            db, source_key=SOURCE_KEY, options=ProcessingOptions(**options)
        )
    return job.id


@pytest.mark.asyncio
async def test_full_pipeline(container, transcoder, storage, settings):
    job_id = create_job(container)

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.COMPLETED
    job = container.processing_service.get_job(job_id)
    assert job.progress == 100
    assert set(job.output_urls) == {"360p", "720p", "1080p"}
    assert job.output_urls["720p"] == f"http://cdn.test/renditions/{job_id}/720p.mp4"
    assert len(job.thumbnail_urls) == 3
    assert transcoder.frames == [10.0, 20.0, 30.0]
    assert job.hls_url == f"http://cdn.test/hls/{job_id}/master.m3u8"
    assert job.dash_url is None
    assert job.metadata.width == 1920
    assert job.failed_qualities == {}

    master = storage.get_bytes(f"hls/{job_id}/master.m3u8").decode()
    assert master.startswith("#EXTM3U\n#EXT-X-VERSION:3\n")
    assert "#EXT-X-STREAM-INF:BANDWIDTH=896000,RESOLUTION=640x360\n360p/playlist.m3u8" in master
    assert storage.exists(f"hls/{job_id}/1080p/segment_000.ts")
    assert storage.exists(f"thumbnails/{job_id}/thumb_02.jpg")
    # local scratch space is removed
    assert not (container.pipeline.work_dir / str(job_id)).exists()


@pytest.mark.asyncio
async def test_failed_quality_is_dropped_from_outputs(container, transcoder, storage):
    transcoder.fail_qualities = {"720p"}
    job_id = create_job(container, qualities=[Quality.Q360P, Quality.Q720P])

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.COMPLETED
    job = container.processing_service.get_job(job_id)
    assert list(job.output_urls) == ["360p"]
    assert "720p" in job.failed_qualities
    master = storage.get_bytes(f"hls/{job_id}/master.m3u8").decode()
    assert "360p/playlist.m3u8" in master
    assert "720p" not in master


@pytest.mark.asyncio
async def test_thumbnail_failures_become_warnings(container, transcoder, mocker):
    mocker.patch.object(transcoder, "extract_frame", side_effect=TranscodingError("frame grab failed"))
    job_id = create_job(container, qualities=[Quality.Q360P], thumbnail_count=2)

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.COMPLETED
    job = container.processing_service.get_job(job_id)
    assert job.thumbnail_urls == []
    assert len(job.warnings) == 2
    assert job.warnings[0].startswith("Thumbnail 0 at")


@pytest.mark.asyncio
async def test_job_fails_when_every_quality_fails(container, transcoder):
    transcoder.fail_qualities = {"360p", "720p"}
    job_id = create_job(container, qualities=[Quality.Q360P, Quality.Q720P])

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.FAILED
    job = container.processing_service.get_job(job_id)
    assert "Every quality failed" in job.error
    assert set(job.failed_qualities) == {"360p", "720p"}
    assert job.output_urls == {}


@pytest.mark.asyncio
async def test_source_without_video_stream_fails(container, transcoder):
    transcoder.has_video = False
    job_id = create_job(container)

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.FAILED
    assert "No video stream" in container.processing_service.get_job(job_id).error
    assert transcoder.encoded == []


@pytest.mark.asyncio
async def test_dash_manifest(container, storage):
    job_id = create_job(container, qualities=[Quality.Q360P], generate_hls=False, generate_dash=True)

    await container.pipeline.run(job_id)

    job = container.processing_service.get_job(job_id)
    assert job.hls_url is None
    assert job.dash_url == f"http://cdn.test/dash/{job_id}/manifest.mpd"
    assert storage.exists(f"dash/{job_id}/manifest.mpd")


@pytest.mark.asyncio
async def test_redelivered_terminal_job_is_skipped(container, transcoder):
    job_id = create_job(container, qualities=[Quality.Q360P])
    await container.pipeline.run(job_id)
    encoded = list(transcoder.encoded)

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.COMPLETED
    assert transcoder.encoded == encoded
    assert container.processing_service.get_job(job_id).progress == 100


@pytest.mark.asyncio
async def test_cancel_flag_stops_job_between_stages(container, transcoder):
    job_id = create_job(container)
    with container.session_factory() as db:
        job = container.job_service.get(db, id=job_id)
        container.job_service.request_cancel(db, job)

    status = await container.pipeline.run(job_id)

    assert status == JobStatus.FAILED
    assert container.processing_service.get_job(job_id).error == CANCELLED_REASON
    assert transcoder.encoded == []


@pytest.mark.asyncio
async def test_progress_never_decreases(container, monkeypatch):
    job_id = create_job(container, generate_dash=True)
    observed = []
    original = container.job_service.set_progress

    def recording_set_progress(db, job, progress):
        result = original(db, job, progress)
        observed.append(result.progress)
        return result

    monkeypatch.setattr(container.job_service, "set_progress", recording_set_progress)
    await container.pipeline.run(job_id)

    assert observed == sorted(observed)
    assert max(observed) <= 99
    assert container.processing_service.get_job(job_id).progress == 100


@pytest.mark.asyncio
async def test_progress_is_mirrored_to_cache(container, fake_redis):
    job_id = create_job(container, qualities=[Quality.Q360P])

    await container.pipeline.run(job_id)

    progress = container.processing_service.get_progress(job_id)
    assert progress.status == JobStatus.COMPLETED
    assert progress.progress == 100
    assert fake_redis.ttls[f"job:{job_id}"] == 86400


def test_stage_weights_fill_the_scale():
    stages = requested_stages(ProcessingOptions(generate_thumbnails=False, generate_hls=False))
    assert stages == ["metadata", "encode", "finalize"]

    progress = StageProgress(stages)
    assert progress.advance("metadata") == 15
    assert progress.advance("encode", 0.5) == 53
    assert progress.advance("encode", 0.5) == 92
    # held below 100 until the job is marked completed
    assert progress.advance("finalize") == 99
