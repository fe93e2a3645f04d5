from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Generic, TypeVar, Literal
from uuid import UUID
from api_ingest.models import Quality, SessionStatus, JobStatus


MD5_PATTERN = r"^[a-f0-9]{32}$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


############################################################

class ProcessingOptions(CamelModel):
    qualities: list[Quality] = Field(
        default_factory=lambda: [Quality.Q360P, Quality.Q720P, Quality.Q1080P],
        min_length=1,
        max_length=4,
    )
    generate_thumbnails: bool = True
    thumbnail_count: int = Field(3, ge=1, le=10)
    generate_hls: bool = Field(True, alias="generateHLS")
    generate_dash: bool = Field(False, alias="generateDASH")
    video_codec: Literal["h264", "h265"] = "h264"
    audio_codec: Literal["aac", "opus"] = "aac"

    @field_validator("qualities")
    @classmethod
    def qualities_unique(cls, value: list[Quality]) -> list[Quality]:
        if len(set(value)) != len(value):
            raise ValueError("Qualities must not repeat")
        return value


class UploadMetadata(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    target_entity_ids: dict[str, str] = Field(default_factory=dict)
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    tags: list[str] = Field(default_factory=list, max_length=10)
    processing_options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class InitiateUploadRequest(CamelModel):
    file_name: str = Field(..., min_length=1, max_length=255, pattern=r'^[^<>:"/\\|?*]+$')
    file_size: int
    file_type: str = Field(..., min_length=1)
    chunk_size: Optional[int] = None
    metadata: UploadMetadata = Field(default_factory=UploadMetadata)


class BatchInitiateRequest(CamelModel):
    files: list[InitiateUploadRequest]


class SessionCreateSchema(BaseModel):
    id: UUID
    file_name: str
    file_size: int
    mime_type: str
    chunk_size: int
    total_chunks: int
    status: SessionStatus = SessionStatus.INITIATED
    upload_metadata: dict


class InitiateUploadResponse(CamelModel):
    session_id: UUID
    total_chunks: int
    chunk_size: int
    status: SessionStatus


class ChunkUploadResponse(CamelModel):
    chunk_index: int
    received_chunks: int
    total_chunks: int
    percentage: float
    duplicate: bool = False


class CompleteUploadRequest(CamelModel):
    total_chunks: int = Field(..., ge=1)
    final_hash: Optional[str] = Field(None, pattern=MD5_PATTERN)


class CompleteUploadResponse(CamelModel):
    session_id: UUID
    job_id: UUID
    asset_key: str
    size: int


class UploadStatusResponse(CamelModel):
    session_id: UUID
    file_name: str
    status: SessionStatus
    received_chunks: int
    total_chunks: int
    percentage: float
    missing_indices: list[int]
    uploaded_bytes: int
    job_id: Optional[UUID] = None
    error: Optional[str] = None


class ResumeUploadResponse(CamelModel):
    session_id: UUID
    missing_indices: list[int]
    next_chunk_index: int
    chunk_size: int
    total_chunks: int


class CancelUploadResponse(CamelModel):
    session_id: UUID
    status: SessionStatus


class MergedStatusResponse(CamelModel):
    session_id: UUID
    phase: Literal["upload", "processing"]
    status: str
    percentage: float
    overall_percentage: float
    job_id: Optional[UUID] = None
    error: Optional[str] = None


############################################################

class VideoMetadataSchema(CamelModel):
    duration: float
    width: int
    height: int
    fps: float
    bitrate: int
    codec: str
    audio_codec: str
    file_size: int
    aspect_ratio: str


class JobCreateSchema(BaseModel):
    id: UUID
    session_id: Optional[UUID] = None
    source_key: str
    target: dict = Field(default_factory=dict)
    options: dict
    status: JobStatus = JobStatus.PENDING


class SubmitJobRequest(CamelModel):
    source_key: str = Field(..., min_length=1)
    target_entity_ids: dict[str, str] = Field(default_factory=dict)
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class JobSchema(CamelModel):
    id: UUID
    session_id: Optional[UUID] = None
    status: JobStatus
    progress: int
    output_urls: dict[str, str]
    thumbnail_urls: list[str]
    hls_url: Optional[str] = None
    dash_url: Optional[str] = None
    metadata: Optional[VideoMetadataSchema] = None
    failed_qualities: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobSchema":
        return cls(
            id=job.id,
            session_id=job.session_id,
            status=job.status,
            progress=job.progress,
            output_urls=job.output_urls or {},
            thumbnail_urls=job.thumbnail_urls or [],
            hls_url=job.hls_url,
            dash_url=job.dash_url,
            metadata=job.video_metadata,
            failed_qualities=job.failed_qualities or {},
            warnings=job.warnings or [],
            error=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobProgressResponse(CamelModel):
    job_id: UUID
    progress: int
    status: JobStatus
    error: Optional[str] = None


class JobDeleteResponse(CamelModel):
    job_id: UUID


class QueueStatsResponse(CamelModel):
    # None where the queue backend cannot tell
    pending: Optional[int] = None
    inflight: Optional[int] = None
    active: int = 0
    active_job_ids: list[str] = Field(default_factory=list)
    jobs_by_status: dict[str, int] = Field(default_factory=dict)


############################################################

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """Standard API response wrapper"""
    success: bool
    message: str
    data: Optional[T] = None
    error: Optional[str] = None
