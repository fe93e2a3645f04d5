from .database import Base
from sqlalchemy import (
    Column, String, UUID, ForeignKey, DateTime, Enum, Text, Integer, BigInteger,
    Boolean, JSON, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SessionStatus(enum.Enum):
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    HANDED_OFF = "handed_off"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Allowed forward edges of the upload session state machine.
SESSION_TRANSITIONS = {
    SessionStatus.INITIATED: {SessionStatus.UPLOADING, SessionStatus.CANCELLED, SessionStatus.FAILED},
    SessionStatus.UPLOADING: {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: {SessionStatus.HANDED_OFF, SessionStatus.FAILED},
    SessionStatus.HANDED_OFF: set(),
    SessionStatus.CANCELLED: set(),
    SessionStatus.FAILED: set(),
}

TERMINAL_SESSION_STATES = {SessionStatus.HANDED_OFF, SessionStatus.CANCELLED, SessionStatus.FAILED}
ACCEPTING_SESSION_STATES = {SessionStatus.INITIATED, SessionStatus.UPLOADING}


class JobStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = {JobStatus.COMPLETED, JobStatus.FAILED}


class Quality(str, enum.Enum):
    Q360P = "360p"
    Q720P = "720p"
    Q1080P = "1080p"
    Q4K = "4K"


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = Column(UUID, primary_key=True, index=True)
    file_name = Column(String(255), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String, nullable=False)
    chunk_size = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    status = Column(Enum(SessionStatus), nullable=False, default=SessionStatus.INITIATED)
    upload_metadata = Column(JSON, nullable=False, default=dict)
    final_hash = Column(String(32), nullable=True)
    asset_key = Column(String, nullable=True)
    job_id = Column(UUID, nullable=True)
    # final status, progress and error of the job, kept once its record is deleted
    job_outcome = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_activity_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    chunks = relationship("UploadChunk", back_populates="session", cascade="all, delete-orphan")


class UploadChunk(Base):
    __tablename__ = "upload_chunks"
    __table_args__ = (UniqueConstraint("session_id", "chunk_index", name="uq_session_chunk"),)

    id = Column(UUID, primary_key=True, index=True)
    session_id = Column(UUID, ForeignKey("upload_sessions.id"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    size = Column(Integer, nullable=False)
    md5 = Column(String(32), nullable=False)
    storage_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    session = relationship("UploadSession", back_populates="chunks")


class ProcessingJob(Base):
    __tablename__ = "processing_jobs"

    id = Column(UUID, primary_key=True, index=True)
    session_id = Column(UUID, nullable=True, index=True)
    source_key = Column(String, nullable=False)
    target = Column(JSON, nullable=False, default=dict)
    options = Column(JSON, nullable=False, default=dict)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING)
    progress = Column(Integer, nullable=False, default=0)
    output_urls = Column(JSON, nullable=False, default=dict)
    thumbnail_urls = Column(JSON, nullable=False, default=list)
    hls_url = Column(String, nullable=True)
    dash_url = Column(String, nullable=True)
    video_metadata = Column(JSON, nullable=True)
    failed_qualities = Column(JSON, nullable=False, default=dict)
    warnings = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
