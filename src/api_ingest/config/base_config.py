from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


MIB = 1024 * 1024
GIB = 1024 * MIB


class BaseConfig(BaseSettings):

    DATABASE_URL: str = "sqlite:///./video_ingest.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Object storage
    STORAGE_BACKEND: str = Field("local", pattern="^(local|minio)$")
    LOCAL_STORAGE_ROOT: str = "./storage"
    MINIO_ENDPOINT: str = "http://localhost:9000"
    MINIO_EXTERNAL_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_BUCKET: str = "videos"
    PUBLIC_BASE_URL: str = ""

    # Job queue
    QUEUE_BACKEND: str = Field("local", pattern="^(local|kafka)$")
    KAFKA_BROKER: str = "localhost:9092"
    KAFKA_TOPIC: str = "video-processing"
    KAFKA_GROUP_ID: str = "transcoding-workers"
    QUEUE_VISIBILITY_TIMEOUT: float = 900

    # Upload limits
    MAX_FILE_SIZE: int = 10 * GIB
    MIN_CHUNK_SIZE: int = 1 * MIB
    MAX_CHUNK_SIZE: int = 100 * MIB
    DEFAULT_CHUNK_SIZE: int = 5 * MIB
    ALLOWED_MIME_PREFIX: str = "video/"
    REQUIRE_CHUNK_HASH: bool = False

    # Lifetimes (seconds)
    SESSION_INACTIVITY_TIMEOUT: float = 3600
    SESSION_RETENTION: float = 24 * 3600
    JOB_PROGRESS_TTL: int = 24 * 3600
    JOB_RETENTION: float = 7 * 24 * 3600
    SWEEP_INTERVAL: float = 300

    # Processing
    MAX_CONCURRENT_JOBS: int = 3
    ENCODE_CONCURRENCY: int = 2
    JOB_TIMEOUT: float = 3600
    WORK_DIR: str = "/tmp/video_ingest"
    RUN_EMBEDDED_WORKER: bool = True
    FFMPEG_BINARY: str = "ffmpeg"
    FFPROBE_BINARY: str = "ffprobe"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = BaseConfig()
