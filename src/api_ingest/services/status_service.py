from logging import getLogger

from sqlalchemy.orm import sessionmaker

from api_ingest.models import UploadSession, SessionStatus
from api_ingest.schema import UploadStatusResponse, MergedStatusResponse
from api_ingest.services.job_service import JobService
from api_ingest.services.session_service import SessionService

logger = getLogger(__name__)

# share of the overall bar that belongs to the upload phase
UPLOAD_PHASE_SHARE = 50.0

ASSEMBLED_STATES = {SessionStatus.COMPLETED, SessionStatus.HANDED_OFF}
UNKNOWN_JOB_STATUS = "unknown"


def build_upload_status(session: UploadSession, received: list[int]) -> UploadStatusResponse:
    if session.status in ASSEMBLED_STATES:
        # chunk rows are dropped once the asset is assembled
        received = list(range(session.total_chunks))
    received_set = set(received)
    missing = [i for i in range(session.total_chunks) if i not in received_set]
    uploaded_bytes = sum(expected_chunk_size(session, i) for i in received_set)
    return UploadStatusResponse(
        session_id=session.id,
        file_name=session.file_name,
        status=session.status,
        received_chunks=len(received_set),
        total_chunks=session.total_chunks,
        percentage=upload_percentage(len(received_set), session.total_chunks),
        missing_indices=missing,
        uploaded_bytes=uploaded_bytes,
        job_id=session.job_id,
        error=session.error_message,
    )


def expected_chunk_size(session: UploadSession, chunk_index: int) -> int:
    if chunk_index == session.total_chunks - 1:
        return session.file_size - session.chunk_size * (session.total_chunks - 1)
    return session.chunk_size


def upload_percentage(received: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(received / total * 100, 2)


class StatusReporter:
    """Read-only view merging upload progress with the progress of the job it spawned."""

    def __init__(self, *, session_factory: sessionmaker, session_service: SessionService, job_service: JobService):
        self.session_factory = session_factory
        self.sessions = session_service
        self.jobs = job_service

    def merged_status(self, session_id) -> MergedStatusResponse:
        with self.session_factory() as db:
            session = self.sessions.get_or_raise(db, session_id)
            if session.job_id is None:
                upload = build_upload_status(session, self.sessions.received_indices(db, session.id))
                return MergedStatusResponse(
                    session_id=session.id,
                    phase="upload",
                    status=session.status.value,
                    percentage=upload.percentage,
                    overall_percentage=round(upload.received_chunks / upload.total_chunks * UPLOAD_PHASE_SHARE, 2),
                    error=session.error_message,
                )

            progress, status, error = self._job_progress(db, session)
            return MergedStatusResponse(
                session_id=session.id,
                phase="processing",
                status=status,
                percentage=float(progress),
                overall_percentage=round(UPLOAD_PHASE_SHARE + progress * (100 - UPLOAD_PHASE_SHARE) / 100, 2),
                job_id=session.job_id,
                error=error or session.error_message,
            )

    def _job_progress(self, db, session: UploadSession) -> tuple[int, str, str | None]:
        job_id = session.job_id
        cached = self.jobs.cached_progress(job_id)
        if cached is not None:
            return cached["progress"], cached["status"], cached["error"]
        job = self.jobs.get(db, id=job_id)
        if job is None:
            outcome = session.job_outcome
            if outcome:
                return outcome["progress"], outcome["status"], outcome["error"]
            logger.warning(f"Job {job_id} of session {session.id} no longer exists and left no outcome")
            return 0, UNKNOWN_JOB_STATUS, "Processing job record is no longer available"
        return job.progress, job.status.value, job.error_message
