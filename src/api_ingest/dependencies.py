from dataclasses import dataclass
from logging import getLogger

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from api_ingest.config.base_config import BaseConfig
from api_ingest.database import build_session_factory, create_db_engine
from api_ingest.services.assembly_service import AssemblyService
from api_ingest.services.job_service import JobService
from api_ingest.services.processing_service import ProcessingService
from api_ingest.services.session_service import session_service
from api_ingest.services.status_service import StatusReporter
from api_ingest.services.sweeper import Sweeper
from api_ingest.services.upload_service import UploadSessionManager
from api_ingest.storage.chunk_store import ChunkStore
from api_ingest.storage.minio_client import MinioStorage
from api_ingest.storage.object_storage import LocalFileStorage, ObjectStorage
from common.job_queue import JobQueue, LocalJobQueue
from common.kafka_queue import KafkaJobQueue
from common.redis_client import RedisClient
from worker.pipeline import TranscodingPipeline
from worker.pool import WorkerPool
from worker.utils import FFmpegTranscoder

logger = getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: BaseConfig
    engine: Engine
    session_factory: sessionmaker
    storage: ObjectStorage
    queue: JobQueue
    job_service: JobService
    processing_service: ProcessingService
    upload_manager: UploadSessionManager
    status_reporter: StatusReporter
    sweeper: Sweeper
    pipeline: TranscodingPipeline
    worker_pool: WorkerPool


def build_storage(settings: BaseConfig) -> ObjectStorage:
    if settings.STORAGE_BACKEND == "minio":
        return MinioStorage(
            endpoint=settings.MINIO_ENDPOINT,
            external_endpoint=settings.MINIO_EXTERNAL_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            bucket_name=settings.MINIO_BUCKET,
            public_base_url=settings.PUBLIC_BASE_URL,
        )
    return LocalFileStorage(settings.LOCAL_STORAGE_ROOT, public_base_url=settings.PUBLIC_BASE_URL)


def build_queue(settings: BaseConfig) -> JobQueue:
    if settings.QUEUE_BACKEND == "kafka":
        return KafkaJobQueue(
            bootstrap_servers=settings.KAFKA_BROKER,
            topic=settings.KAFKA_TOPIC,
            group_id=settings.KAFKA_GROUP_ID,
            visibility_timeout=settings.QUEUE_VISIBILITY_TIMEOUT,
        )
    return LocalJobQueue(visibility_timeout=settings.QUEUE_VISIBILITY_TIMEOUT)


def build_container(
    settings: BaseConfig,
    *,
    storage: ObjectStorage | None = None,
    queue: JobQueue | None = None,
    redis: RedisClient | None = None,
    transcoder=None,
    clock=None,
) -> ServiceContainer:
    """Wire every component from settings; any piece can be swapped by passing it in."""
    engine = create_db_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    storage = storage or build_storage(settings)
    queue = queue or build_queue(settings)
    if redis is None and settings.REDIS_URL:
        redis = RedisClient.from_url(settings.REDIS_URL, ttl_seconds=settings.JOB_PROGRESS_TTL)
    transcoder = transcoder or FFmpegTranscoder(settings.FFMPEG_BINARY, settings.FFPROBE_BINARY)
    clock_kwargs = {"clock": clock} if clock is not None else {}

    job_service = JobService(progress_cache=redis)
    chunk_store = ChunkStore(storage)
    processing_service = ProcessingService(
        session_factory=session_factory,
        job_service=job_service,
        job_queue=queue,
        storage=storage,
        **clock_kwargs,
    )
    upload_manager = UploadSessionManager(
        session_factory=session_factory,
        session_service=session_service,
        processing_service=processing_service,
        chunk_store=chunk_store,
        assembler=AssemblyService(chunk_store, storage, work_dir=settings.WORK_DIR),
        settings=settings,
        **clock_kwargs,
    )
    pipeline = TranscodingPipeline(
        session_factory=session_factory,
        job_service=job_service,
        storage=storage,
        transcoder=transcoder,
        work_dir=settings.WORK_DIR,
        encode_concurrency=settings.ENCODE_CONCURRENCY,
        **clock_kwargs,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        storage=storage,
        queue=queue,
        job_service=job_service,
        processing_service=processing_service,
        upload_manager=upload_manager,
        status_reporter=StatusReporter(
            session_factory=session_factory,
            session_service=session_service,
            job_service=job_service,
        ),
        sweeper=Sweeper(
            upload_manager,
            processing_service,
            interval=settings.SWEEP_INTERVAL,
            job_retention=settings.JOB_RETENTION,
        ),
        pipeline=pipeline,
        worker_pool=WorkerPool(
            queue,
            pipeline,
            session_factory=session_factory,
            job_service=job_service,
            max_concurrent_jobs=settings.MAX_CONCURRENT_JOBS,
            job_timeout=settings.JOB_TIMEOUT,
            **clock_kwargs,
        ),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_upload_manager(request: Request) -> UploadSessionManager:
    return get_container(request).upload_manager


def get_processing_service(request: Request) -> ProcessingService:
    return get_container(request).processing_service


def get_status_reporter(request: Request) -> StatusReporter:
    return get_container(request).status_reporter
