import json
import logging

import redis

logger = logging.getLogger(__name__)


class RedisClient:
    """Short-lived progress mirror of processing jobs, read by pollers."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 86400):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 86400) -> "RedisClient":
        return cls(redis.Redis.from_url(url), ttl_seconds=ttl_seconds)

    @staticmethod
    def _key(job_id) -> str:
        return f"job:{job_id}"

    def store_job_progress(self, job_id, status: str, progress: int, error: str | None = None) -> None:
        try:
            key = self._key(job_id)
            pipe = self.client.pipeline()
            pipe.hset(key, mapping={
                "status": status,
                "progress": progress,
                "error": json.dumps(error),
            })
            pipe.expire(key, self.ttl_seconds)
            pipe.execute()
        except redis.RedisError as e:
            # the database row stays authoritative
            logger.warning(f"Could not mirror progress of job {job_id} to Redis: {e}")

    def get_job_progress(self, job_id) -> dict | None:
        try:
            data = self.client.hgetall(self._key(job_id))
        except redis.RedisError as e:
            logger.warning(f"Could not read progress of job {job_id} from Redis: {e}")
            return None
        if not data:
            return None
        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        return {
            "status": decoded["status"],
            "progress": int(decoded["progress"]),
            "error": json.loads(decoded.get("error", "null")),
        }

    def forget_job(self, job_id) -> None:
        try:
            self.client.delete(self._key(job_id))
        except redis.RedisError as e:
            logger.warning(f"Could not drop progress of job {job_id} from Redis: {e}")
