import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from api_ingest.exceptions.exceptions import QueueUnavailable
from common.message_types import ProcessingJobMessage

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    message: ProcessingJobMessage
    receipt: Any
    delivery_count: int = 1


class JobQueue(ABC):
    """
    Work queue between upload completion and transcoding.

    Delivery is at-least-once: a delivery that is not acknowledged becomes
    visible again, so consumers must tolerate seeing the same job twice.
    """

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def enqueue(self, message: ProcessingJobMessage) -> None:
        """Durably accept a job, raising QueueUnavailable when that is not possible."""

    @abstractmethod
    async def dequeue(self, timeout: float) -> Delivery | None: ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None: ...

    @abstractmethod
    async def nack(self, delivery: Delivery) -> None:
        """Give a delivery back so it is redelivered."""

    @property
    def heartbeat_interval(self) -> float | None:
        """How often a running job must call `extend`, or None when it need not."""
        return None

    async def extend(self, delivery: Delivery) -> None:
        """Keep a delivery that is still being worked on from becoming visible again."""

    def counts(self) -> dict[str, int]:
        """Backlog figures the backend can report, such as `pending` and `inflight`."""
        return {}


class LocalJobQueue(JobQueue):
    """In-process queue with a visibility timeout, for single-node setups and tests."""

    def __init__(self, visibility_timeout: float = 900, clock: Callable[[], float] = time.monotonic):
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._ready: deque[tuple[ProcessingJobMessage, int]] = deque()
        self._inflight: dict[str, tuple[ProcessingJobMessage, float, int]] = {}
        self._condition = asyncio.Condition()
        self._running = False

    @property
    def pending_count(self) -> int:
        return len(self._ready)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    @property
    def heartbeat_interval(self) -> float:
        return self.visibility_timeout / 3

    def counts(self):
        return {"pending": self.pending_count, "inflight": self.inflight_count}

    async def start(self):
        self._running = True

    async def stop(self):
        self._running = False
        async with self._condition:
            self._condition.notify_all()

    async def enqueue(self, message):
        if not self._running:
            raise QueueUnavailable("Local job queue is not running")
        async with self._condition:
            self._ready.append((message, 0))
            self._condition.notify()
        logger.info(f"Enqueued job {message.job_id}")

    async def dequeue(self, timeout):
        deadline = self._clock() + timeout
        async with self._condition:
            while True:
                self._requeue_expired()
                if self._ready:
                    message, count = self._ready.popleft()
                    receipt = str(uuid4())
                    self._inflight[receipt] = (message, self._clock() + self.visibility_timeout, count + 1)
                    return Delivery(message=message, receipt=receipt, delivery_count=count + 1)
                if not self._running:
                    return None
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                wait_for = min([remaining] + [d - self._clock() for _, d, _ in self._inflight.values()])
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=max(wait_for, 0.001))
                except asyncio.TimeoutError:
                    pass

    async def ack(self, delivery):
        self._inflight.pop(delivery.receipt, None)

    async def extend(self, delivery):
        entry = self._inflight.get(delivery.receipt)
        if entry is not None:
            message, _, count = entry
            self._inflight[delivery.receipt] = (message, self._clock() + self.visibility_timeout, count)

    async def nack(self, delivery):
        entry = self._inflight.pop(delivery.receipt, None)
        if entry is None:
            return
        message, _, count = entry
        async with self._condition:
            self._ready.append((message, count))
            self._condition.notify()

    def _requeue_expired(self) -> None:
        now = self._clock()
        for receipt, (message, visible_at, count) in list(self._inflight.items()):
            if visible_at <= now:
                del self._inflight[receipt]
                self._ready.append((message, count))
                logger.warning(f"Job {message.job_id} was not acknowledged in time, redelivering")
