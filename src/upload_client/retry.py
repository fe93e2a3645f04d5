"""Retry policy for chunk uploads."""

import random
from dataclasses import dataclass

# client errors that are worth repeating: request timeout and rate limiting
RETRYABLE_CLIENT_STATUSES = {408, 429}


class UploadClientError(Exception):
    """Raised when the ingest API rejects a request."""

    def __init__(self, message: str, status_code: int | None = None, body: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}


class UploadGaveUp(UploadClientError):
    """Raised when a chunk could not be delivered within the retry budget."""

    def __init__(self, chunk_index: int, attempts: int, last_error: str, status_code: int | None = None):
        super().__init__(
            f"Chunk {chunk_index} failed after {attempts} attempt(s): {last_error}",
            status_code=status_code,
        )
        self.chunk_index = chunk_index
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """Exponential backoff between attempts of a single chunk."""

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = False

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def delay(self, attempt: int) -> float:
        """
        Seconds to wait after the given failed attempt.

        Args:
            attempt: Attempt number (1-based)
        """
        if attempt <= 0:
            return 0.0
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            # spread simultaneous retries of parallel chunks
            delay += random.uniform(-0.1, 0.1) * delay
        return max(delay, 0.0)

    def should_retry(self, attempt: int, status_code: int | None = None) -> bool:
        if attempt > self.max_retries:
            return False
        if status_code is None:
            return True
        return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES
