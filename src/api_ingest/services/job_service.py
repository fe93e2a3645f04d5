from datetime import datetime
from logging import getLogger

from sqlalchemy.orm import Session

from api_ingest.exceptions.exceptions import JobNotFound
from api_ingest.models import ProcessingJob, JobStatus, TERMINAL_JOB_STATES, as_utc
from api_ingest.schema import JobCreateSchema
from api_ingest.services.base_service import BaseService
from common.redis_client import RedisClient

logger = getLogger(__name__)


class JobService(BaseService[ProcessingJob, JobCreateSchema]):
    def __init__(self, progress_cache: RedisClient | None = None):
        super().__init__(ProcessingJob)
        self.progress_cache = progress_cache

    def create(self, db, *, obj_in):
        job = super().create(db, obj_in=obj_in)
        self._mirror(job)
        return job

    def get_or_raise(self, db: Session, job_id) -> ProcessingJob:
        job = self.get(db, id=job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def save(self, db: Session, job: ProcessingJob) -> ProcessingJob:
        db.add(job)
        db.commit()
        self._mirror(job)
        return job

    def set_progress(self, db: Session, job: ProcessingJob, progress: int) -> ProcessingJob:
        # progress never moves backwards, also across redeliveries of the same job
        job.progress = max(job.progress or 0, min(int(progress), 100))
        return self.save(db, job)

    def mark_processing(self, db: Session, job: ProcessingJob, *, now: datetime) -> ProcessingJob:
        job.status = JobStatus.PROCESSING
        job.attempts = (job.attempts or 0) + 1
        job.started_at = job.started_at or now
        logger.info(f"Job {job.id}: processing (attempt {job.attempts})")
        return self.save(db, job)

    def mark_completed(self, db: Session, job: ProcessingJob, *, now: datetime) -> bool:
        if job.status in TERMINAL_JOB_STATES:
            return False
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.completed_at = now
        self.save(db, job)
        logger.info(f"Job {job.id}: completed")
        return True

    def mark_failed(self, db: Session, job: ProcessingJob, error: str, *, now: datetime) -> bool:
        if job.status in TERMINAL_JOB_STATES:
            return False
        job.status = JobStatus.FAILED
        job.error_message = error
        job.completed_at = now
        self.save(db, job)
        logger.warning(f"Job {job.id}: failed ({error})")
        return True

    def reset(self, db: Session, job: ProcessingJob) -> ProcessingJob:
        job.status = JobStatus.PENDING
        job.progress = 0
        job.error_message = None
        job.cancel_requested = False
        job.completed_at = None
        job.failed_qualities = {}
        job.warnings = []
        return self.save(db, job)

    def request_cancel(self, db: Session, job: ProcessingJob) -> ProcessingJob:
        job.cancel_requested = True
        return self.save(db, job)

    def is_cancel_requested(self, db: Session, job_id) -> bool:
        job = self.get(db, id=job_id)
        if job is None:
            return True
        db.refresh(job)
        return bool(job.cancel_requested)

    def find_purgeable(self, db: Session, cutoff: datetime) -> list[ProcessingJob]:
        jobs = self.get_all(db).filter(ProcessingJob.status.in_(list(TERMINAL_JOB_STATES))).all()
        return [j for j in jobs if j.completed_at is not None and as_utc(j.completed_at) < cutoff]

    def delete(self, db, *, id) -> None:
        super().delete(db, id=id)
        if self.progress_cache is not None:
            self.progress_cache.forget_job(id)

    def cached_progress(self, job_id) -> dict | None:
        if self.progress_cache is None:
            return None
        return self.progress_cache.get_job_progress(job_id)

    def _mirror(self, job: ProcessingJob) -> None:
        if self.progress_cache is not None:
            self.progress_cache.store_job_progress(job.id, job.status.value, job.progress, job.error_message)
