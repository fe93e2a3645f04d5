import asyncio
import shutil
from datetime import datetime
from math import floor
from pathlib import Path, PurePosixPath
from typing import Callable
import logging

from sqlalchemy.orm import Session, sessionmaker

from api_ingest.exceptions.exceptions import (
    IngestError,
    PartialEncodeFailure,
    ProcessingFailed,
    StorageError,
    TranscodingError,
)
from api_ingest.models import ProcessingJob, JobStatus, Quality, TERMINAL_JOB_STATES, utcnow
from api_ingest.schema import ProcessingOptions
from api_ingest.services.job_service import JobService
from api_ingest.services.processing_service import CANCELLED_REASON
from api_ingest.storage.object_storage import ObjectStorage
from api_ingest.storage.path_generator import (
    StoragePaths,
    generate_manifest_prefix,
    generate_rendition_object_name,
    generate_thumbnail_object_name,
)
from worker.manifests import build_hls_master
from worker.quality_profiles import QUALITY_PROFILES
from worker.utils import FFmpegTranscoder, thumbnail_timestamps

logger = logging.getLogger(__name__)

STAGE_WEIGHTS = {
    "metadata": 10,
    "thumbnails": 15,
    "encode": 50,
    "hls": 10,
    "dash": 10,
    "finalize": 5,
}

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".mpd": "application/dash+xml",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".jpg": "image/jpeg",
}


class StageProgress:
    """
    Maps stage completion onto a 0-100 scale. Only requested stages count,
    so their weights are rescaled to fill the whole range. The value stays
    below 100 until the job is marked completed.
    """

    def __init__(self, stages: list[str]):
        total = sum(STAGE_WEIGHTS[s] for s in stages)
        self._weights = {s: STAGE_WEIGHTS[s] * 100 / total for s in stages}
        self._done = 0.0

    def advance(self, stage: str, fraction: float = 1.0) -> int:
        self._done += self._weights[stage] * fraction
        return min(floor(self._done + 1e-9), 99)


def requested_stages(options: ProcessingOptions) -> list[str]:
    stages = ["metadata"]
    if options.generate_thumbnails:
        stages.append("thumbnails")
    stages.append("encode")
    if options.generate_hls:
        stages.append("hls")
    if options.generate_dash:
        stages.append("dash")
    stages.append("finalize")
    return stages


class TranscodingPipeline:
    """Runs one processing job end to end: probe, thumbnails, renditions, manifests."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        job_service: JobService,
        storage: ObjectStorage,
        transcoder: FFmpegTranscoder,
        work_dir: str,
        encode_concurrency: int = 2,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.jobs = job_service
        self.storage = storage
        self.transcoder = transcoder
        self.work_dir = Path(work_dir)
        self.encode_concurrency = encode_concurrency
        self.clock = clock

    async def run(self, job_id) -> JobStatus | None:
        """
        Process a job and return its final status. A job that is already
        terminal is left untouched, which makes redeliveries harmless.
        Cancellation of the calling task propagates after local cleanup and
        leaves the job in `processing` for the caller to settle.
        """
        with self.session_factory() as db:
            job = self.jobs.get(db, id=job_id)
            if job is None:
                logger.warning(f"Job {job_id} no longer exists, skipping")
                return None
            if job.status in TERMINAL_JOB_STATES:
                logger.info(f"Job {job_id} is already {job.status.value}, skipping redelivery")
                return job.status

            self.jobs.mark_processing(db, job, now=self.clock())
            job_dir = self.work_dir / str(job.id)
            try:
                await self._process(db, job, job_dir)
            except IngestError as e:
                self.jobs.mark_failed(db, job, str(e), now=self.clock())
            except Exception as e:
                logger.error(f"Job {job.id}: unexpected error: {e}", exc_info=True)
                self.jobs.mark_failed(db, job, f"Unexpected error: {e}", now=self.clock())
            finally:
                await asyncio.to_thread(self._cleanup, job_dir)
            return job.status

    async def _process(self, db: Session, job: ProcessingJob, job_dir: Path) -> None:
        options = ProcessingOptions.model_validate(job.options)
        progress = StageProgress(requested_stages(options))
        job_dir.mkdir(parents=True, exist_ok=True)
        # outputs of an interrupted earlier attempt are overwritten
        job.warnings = []
        job.failed_qualities = {}

        source = job_dir / f"source{PurePosixPath(job.source_key).suffix or '.bin'}"
        await asyncio.to_thread(self.storage.download_file, job.source_key, str(source))

        metadata = await self.transcoder.probe(source)
        logger.info(
            f"Job {job.id}: {metadata.width}x{metadata.height} {metadata.codec}, {metadata.duration}s"
        )
        job.video_metadata = metadata.model_dump()
        self._advance(db, job, progress.advance("metadata"))

        if options.generate_thumbnails:
            self._check_cancelled(db, job)
            job.thumbnail_urls = await self._thumbnails(job, source, metadata.duration, options.thumbnail_count, job_dir)
            self._advance(db, job, progress.advance("thumbnails"))

        self._check_cancelled(db, job)
        try:
            renditions = await self._encode_all(db, job, source, options, job_dir, progress)
        except PartialEncodeFailure as e:
            logger.warning(f"Job {job.id}: {e}")
            renditions = e.succeeded
            job.failed_qualities = e.failures
        job.output_urls = {
            quality: self.storage.url_for(generate_rendition_object_name(job.id, quality))
            for quality in renditions
        }
        self._advance(db, job, job.progress)

        if options.generate_hls:
            self._check_cancelled(db, job)
            job.hls_url = await self._hls(job, renditions, job_dir / "hls")
            self._advance(db, job, progress.advance("hls"))

        if options.generate_dash:
            self._check_cancelled(db, job)
            job.dash_url = await self._dash(job, renditions, job_dir / "dash")
            self._advance(db, job, progress.advance("dash"))

        self._check_cancelled(db, job)
        self._advance(db, job, progress.advance("finalize"))
        self.jobs.mark_completed(db, job, now=self.clock())

    async def _thumbnails(self, job: ProcessingJob, source: Path, duration: float, count: int, job_dir: Path) -> list[str]:
        urls = []
        for i, timestamp in enumerate(thumbnail_timestamps(duration, count)):
            output = job_dir / f"thumb_{i:02d}.jpg"
            key = generate_thumbnail_object_name(job.id, i)
            try:
                await self.transcoder.extract_frame(source, timestamp, output)
                await asyncio.to_thread(self.storage.put_file, key, str(output), "image/jpeg")
            except (TranscodingError, StorageError) as e:
                logger.warning(f"Job {job.id}: thumbnail {i} at {timestamp}s failed: {e}")
                job.warnings = [*job.warnings, f"Thumbnail {i} at {timestamp}s failed: {e}"]
                continue
            urls.append(self.storage.url_for(key))
        return urls

    async def _encode_all(
        self,
        db: Session,
        job: ProcessingJob,
        source: Path,
        options: ProcessingOptions,
        job_dir: Path,
        progress: StageProgress,
    ) -> dict[str, Path]:
        """
        Encode every requested quality, at most `encode_concurrency` at a time.
        Raises PartialEncodeFailure when some qualities failed and
        ProcessingFailed when all of them did.
        """
        semaphore = asyncio.Semaphore(self.encode_concurrency)
        share = 1 / len(options.qualities)

        async def encode_one(quality: Quality) -> tuple[str, Path | None, str | None]:
            async with semaphore:
                output = job_dir / f"{quality.value}.mp4"
                try:
                    await self.transcoder.encode(
                        source, output, QUALITY_PROFILES[quality], options.video_codec, options.audio_codec
                    )
                    await asyncio.to_thread(
                        self.storage.put_file,
                        generate_rendition_object_name(job.id, quality.value),
                        str(output),
                        "video/mp4",
                    )
                except (TranscodingError, StorageError) as e:
                    logger.warning(f"Job {job.id}: {quality.value} failed: {e}")
                    self._advance(db, job, progress.advance("encode", share))
                    return quality.value, None, str(e)
                logger.info(f"Job {job.id}: {quality.value} rendition ready")
                self._advance(db, job, progress.advance("encode", share))
                return quality.value, output, None

        results = await asyncio.gather(*(encode_one(q) for q in options.qualities))
        succeeded = {quality: path for quality, path, _ in results if path is not None}
        failures = {quality: error for quality, _, error in results if error is not None}
        if not succeeded:
            job.failed_qualities = failures
            raise ProcessingFailed(f"Every quality failed to encode: {', '.join(sorted(failures))}")
        if failures:
            raise PartialEncodeFailure(succeeded, failures)
        return succeeded

    async def _hls(self, job: ProcessingJob, renditions: dict[str, Path], hls_dir: Path) -> str:
        variants = []
        for quality, rendition in renditions.items():
            await self.transcoder.segment_hls(rendition, hls_dir / quality)
            variants.append((QUALITY_PROFILES[Quality(quality)], f"{quality}/playlist.m3u8"))
        (hls_dir / "master.m3u8").write_text(build_hls_master(variants))
        prefix = generate_manifest_prefix(StoragePaths.HLS, job.id)
        await asyncio.to_thread(self._upload_tree, hls_dir, prefix)
        return self.storage.url_for(f"{prefix}master.m3u8")

    async def _dash(self, job: ProcessingJob, renditions: dict[str, Path], dash_dir: Path) -> str:
        manifest = await self.transcoder.package_dash(list(renditions.values()), dash_dir)
        prefix = generate_manifest_prefix(StoragePaths.DASH, job.id)
        await asyncio.to_thread(self._upload_tree, dash_dir, prefix)
        return self.storage.url_for(f"{prefix}{manifest.name}")

    def _upload_tree(self, local_dir: Path, prefix: str) -> None:
        for path in sorted(local_dir.rglob("*")):
            if path.is_file():
                key = prefix + path.relative_to(local_dir).as_posix()
                self.storage.put_file(key, str(path), CONTENT_TYPES.get(path.suffix, "application/octet-stream"))

    def _advance(self, db: Session, job: ProcessingJob, value: int) -> None:
        self.jobs.set_progress(db, job, value)

    def _check_cancelled(self, db: Session, job: ProcessingJob) -> None:
        if self.jobs.is_cancel_requested(db, job.id):
            raise ProcessingFailed(CANCELLED_REASON)

    def _cleanup(self, job_dir: Path) -> None:
        try:
            if job_dir.exists():
                shutil.rmtree(job_dir)
                logger.info(f"Cleaned up working directory: {job_dir}")
        except OSError as e:
            logger.warning(f"Error cleaning up directory {job_dir}: {e}")
