"""Test configuration and fixtures for the video ingest service."""

import hashlib
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from api_ingest.config.base_config import BaseConfig
from api_ingest.database import init_db
from api_ingest.dependencies import build_container
from api_ingest.exceptions.exceptions import TranscodingError, UnsupportedMedia
from api_ingest.main import create_app
from api_ingest.schema import VideoMetadataSchema
from api_ingest.storage.object_storage import LocalFileStorage
from common.job_queue import LocalJobQueue
from common.redis_client import RedisClient


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeRedisPipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def hset(self, key, mapping):
        self.ops.append(("hset", key, mapping))
        return self

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))
        return self

    def execute(self):
        for op, key, arg in self.ops:
            if op == "hset":
                self.redis.hset(key, mapping=arg)
            else:
                self.redis.expire(key, arg)
        self.ops = []


class FakeRedis:
    """Dict-backed stand-in for the few redis.Redis calls the progress cache makes."""

    def __init__(self):
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.ttls: dict[str, int] = {}

    def pipeline(self):
        return FakeRedisPipeline(self)

    def hset(self, key, mapping):
        stored = self.hashes.setdefault(key, {})
        for field, value in mapping.items():
            stored[field.encode()] = str(value).encode()

    def expire(self, key, ttl):
        self.ttls[key] = ttl

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def delete(self, key):
        self.hashes.pop(key, None)
        self.ttls.pop(key, None)


class FakeTranscoder:
    """Writes placeholder outputs instead of running ffmpeg."""

    def __init__(self, duration: float = 40.0, fail_qualities=(), has_video: bool = True):
        self.duration = duration
        self.fail_qualities = set(fail_qualities)
        self.has_video = has_video
        self.encoded: list[str] = []
        self.frames: list[float] = []
        self.encode_started = None

    async def probe(self, path: Path) -> VideoMetadataSchema:
        if not self.has_video:
            raise UnsupportedMedia("No video stream found in source")
        return VideoMetadataSchema(
            duration=self.duration,
            width=1920,
            height=1080,
            fps=30.0,
            bitrate=4_000_000,
            codec="h264",
            audio_codec="aac",
            file_size=path.stat().st_size,
            aspect_ratio="16:9",
        )

    async def extract_frame(self, source, timestamp, output_path: Path):
        self.frames.append(timestamp)
        output_path.write_bytes(b"jpeg")

    async def encode(self, source, output_path: Path, profile, video_codec="h264", audio_codec="aac"):
        if self.encode_started is not None:
            self.encode_started.set()
        quality = profile.quality.value
        if quality in self.fail_qualities:
            raise TranscodingError(f"ffmpeg exited with code 1 while encoding {quality}")
        self.encoded.append(quality)
        output_path.write_bytes(f"rendition {quality}".encode())

    async def segment_hls(self, rendition: Path, output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / "segment_000.ts").write_bytes(b"ts")
        playlist = output_dir / "playlist.m3u8"
        playlist.write_text("#EXTM3U\n#EXTINF:10.0,\nsegment_000.ts\n#EXT-X-ENDLIST\n")
        return playlist

    async def package_dash(self, renditions, output_dir: Path) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        manifest = output_dir / "manifest.mpd"
        manifest.write_text("<MPD/>")
        return manifest


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def make_video_bytes(size: int) -> bytes:
    pattern = bytes(range(256))
    return (pattern * (size // 256 + 1))[:size]


def split_chunks(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return BaseConfig(
        DATABASE_URL=f"sqlite:///{tmp_path / 'ingest.db'}",
        REDIS_URL="",
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_ROOT=str(tmp_path / "storage"),
        PUBLIC_BASE_URL="http://cdn.test",
        QUEUE_BACKEND="local",
        MIN_CHUNK_SIZE=1024,
        DEFAULT_CHUNK_SIZE=4096,
        SESSION_INACTIVITY_TIMEOUT=3600,
        SESSION_RETENTION=24 * 3600,
        JOB_RETENTION=7 * 24 * 3600,
        SWEEP_INTERVAL=3600,
        WORK_DIR=str(tmp_path / "work"),
        RUN_EMBEDDED_WORKER=False,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def storage(settings):
    return LocalFileStorage(settings.LOCAL_STORAGE_ROOT, public_base_url=settings.PUBLIC_BASE_URL)


def _build(settings, storage, fake_redis, transcoder, clock):
    container = build_container(
        settings,
        storage=storage,
        queue=LocalJobQueue(visibility_timeout=settings.QUEUE_VISIBILITY_TIMEOUT),
        redis=RedisClient(fake_redis),
        transcoder=transcoder,
        clock=clock,
    )
    init_db(container.engine)
    return container


@pytest.fixture
async def container(settings, storage, fake_redis, transcoder, clock):
    container = _build(settings, storage, fake_redis, transcoder, clock)
    await container.queue.start()
    yield container
    await container.queue.stop()
    container.engine.dispose()


@pytest.fixture
def api_container(settings, storage, fake_redis, transcoder, clock):
    container = _build(settings, storage, fake_redis, transcoder, clock)
    yield container
    container.engine.dispose()


@pytest.fixture
def client(api_container):
    with TestClient(create_app(api_container)) as test_client:
        yield test_client
