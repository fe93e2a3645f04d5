import asyncio
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4
from logging import getLogger

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from api_ingest.exceptions.exceptions import InvalidArgument, QueueUnavailable
from api_ingest.models import ProcessingJob, UploadSession, JobStatus, TERMINAL_JOB_STATES, utcnow
from api_ingest.schema import (
    JobCreateSchema,
    JobSchema,
    JobProgressResponse,
    ProcessingOptions,
    QueueStatsResponse,
    SubmitJobRequest,
)
from api_ingest.services.job_service import JobService
from api_ingest.storage.object_storage import ObjectStorage
from common.job_queue import JobQueue
from common.message_types import ProcessingJobMessage

logger = getLogger(__name__)

CANCELLED_REASON = "Cancelled by request"


class ProcessingService:
    """Creates, enqueues and reports on processing jobs."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        job_service: JobService,
        job_queue: JobQueue,
        storage: ObjectStorage,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.jobs = job_service
        self.queue = job_queue
        self.storage = storage
        self.clock = clock

    def create_job(
        self,
        db: Session,
        *,
        source_key: str,
        options: ProcessingOptions,
        target: dict | None = None,
        session_id=None,
    ) -> ProcessingJob:
        job = self.jobs.create(db, obj_in=JobCreateSchema(
            id=uuid4(),
            session_id=session_id,
            source_key=source_key,
            target=target or {},
            options=options.model_dump(mode="json"),
        ))
        logger.info(f"Created processing job {job.id} for {source_key}")
        return job

    async def enqueue(self, job: ProcessingJob) -> None:
        await self.queue.enqueue(ProcessingJobMessage(job_id=str(job.id), source_key=job.source_key))

    async def submit(self, request: SubmitJobRequest) -> JobSchema:
        if not await asyncio.to_thread(self.storage.exists, request.source_key):
            raise InvalidArgument(f"Source object {request.source_key} does not exist")
        with self.session_factory() as db:
            job = self.create_job(
                db,
                source_key=request.source_key,
                options=request.options,
                target=request.target_entity_ids,
            )
            try:
                await self.enqueue(job)
            except QueueUnavailable as e:
                self.jobs.mark_failed(db, job, str(e), now=self.clock())
                raise
            return JobSchema.from_job(job)

    def get_job(self, job_id) -> JobSchema:
        with self.session_factory() as db:
            return JobSchema.from_job(self.jobs.get_or_raise(db, job_id))

    def list_jobs(self) -> list[JobSchema]:
        with self.session_factory() as db:
            jobs = self.jobs.get_all(db).order_by(ProcessingJob.created_at.desc()).all()
            return [JobSchema.from_job(j) for j in jobs]

    def get_progress(self, job_id) -> JobProgressResponse:
        cached = self.jobs.cached_progress(job_id)
        if cached is not None:
            return JobProgressResponse(
                job_id=job_id,
                progress=cached["progress"],
                status=JobStatus(cached["status"]),
                error=cached["error"],
            )
        with self.session_factory() as db:
            job = self.jobs.get_or_raise(db, job_id)
            return JobProgressResponse(
                job_id=job.id, progress=job.progress, status=job.status, error=job.error_message
            )

    def cancel_job(self, job_id) -> JobSchema:
        with self.session_factory() as db:
            job = self.jobs.get_or_raise(db, job_id)
            if job.status == JobStatus.PENDING:
                # not picked up yet; the worker acknowledges terminal jobs without running them
                self.jobs.mark_failed(db, job, CANCELLED_REASON, now=self.clock())
            elif job.status == JobStatus.PROCESSING:
                self.jobs.request_cancel(db, job)
                logger.info(f"Cancellation requested for running job {job.id}")
            return JobSchema.from_job(job)

    def delete_job(self, job_id) -> None:
        with self.session_factory() as db:
            job = self.jobs.get_or_raise(db, job_id)
            if job.status not in TERMINAL_JOB_STATES:
                raise InvalidArgument(f"Job {job_id} is {job.status.value}; cancel it first")
            self._remove(db, job)

    def list_failed_jobs(self) -> list[JobSchema]:
        with self.session_factory() as db:
            jobs = (
                self.jobs.get_all(db)
                .filter(ProcessingJob.status == JobStatus.FAILED)
                .order_by(ProcessingJob.completed_at.desc())
                .all()
            )
            return [JobSchema.from_job(j) for j in jobs]

    async def retry_job(self, job_id) -> JobSchema:
        """Put a failed job back to pending and queue it again."""
        with self.session_factory() as db:
            job = self.jobs.get_or_raise(db, job_id)
            if job.status != JobStatus.FAILED:
                raise InvalidArgument(f"Job {job_id} is {job.status.value}; only failed jobs can be retried")
            self.jobs.reset(db, job)
            try:
                await self.enqueue(job)
            except QueueUnavailable as e:
                self.jobs.mark_failed(db, job, str(e), now=self.clock())
                raise
            logger.info(f"Job {job.id} queued again for retry")
            return JobSchema.from_job(job)

    def queue_stats(self, active_jobs: list[str] | None = None) -> QueueStatsResponse:
        with self.session_factory() as db:
            by_status = {status.value: 0 for status in JobStatus}
            rows = db.query(ProcessingJob.status, func.count(ProcessingJob.id)).group_by(ProcessingJob.status)
            for status, count in rows:
                by_status[status.value] = count
        counts = self.queue.counts()
        return QueueStatsResponse(
            pending=counts.get("pending"),
            inflight=counts.get("inflight"),
            active=len(active_jobs or []),
            active_job_ids=list(active_jobs or []),
            jobs_by_status=by_status,
        )

    async def recover_unfinished(self) -> int:
        """
        Re-enqueue every non-terminal job. Used at startup by in-process
        queues, whose contents do not survive a restart.
        """
        with self.session_factory() as db:
            unfinished = (
                self.jobs.get_all(db)
                .filter(ProcessingJob.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]))
                .order_by(ProcessingJob.created_at)
                .all()
            )
            for job in unfinished:
                await self.enqueue(job)
        if unfinished:
            logger.info(f"Recovered {len(unfinished)} unfinished job(s)")
        return len(unfinished)

    def purge_expired_jobs(self, retention_seconds: float) -> int:
        cutoff = self.clock() - timedelta(seconds=retention_seconds)
        with self.session_factory() as db:
            expired = self.jobs.find_purgeable(db, cutoff)
            for job in expired:
                self._remove(db, job)
        if expired:
            logger.info(f"Purged {len(expired)} processing job(s) past retention")
        return len(expired)

    def _remove(self, db: Session, job: ProcessingJob) -> None:
        # the session keeps the job's outcome so its status survives the deletion
        if job.session_id is not None:
            session = db.get(UploadSession, job.session_id)
            if session is not None:
                session.job_outcome = {
                    "status": job.status.value,
                    "progress": job.progress,
                    "error": job.error_message,
                }
                db.add(session)
        self.jobs.delete(db, id=job.id)
