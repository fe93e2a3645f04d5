import bisect
import logging
from dataclasses import replace

from aiokafka import TopicPartition
from aiokafka.errors import KafkaError

from api_ingest.events.producer import JobProducer
from api_ingest.exceptions.exceptions import QueueUnavailable
from common.job_queue import Delivery, JobQueue
from common.message_types import ProcessingJobMessage
from worker.consumer import JobConsumer

logger = logging.getLogger(__name__)


class OffsetTracker:
    """
    Tracks offsets handed out per partition so that a commit never passes an
    offset whose job is still running. Jobs finish out of order when several
    run at once; only the contiguous finished prefix is committed.
    """

    def __init__(self):
        self._outstanding: dict[TopicPartition, list[int]] = {}
        self._finished: dict[TopicPartition, set[int]] = {}

    def track(self, partition: TopicPartition, offset: int) -> None:
        bisect.insort(self._outstanding.setdefault(partition, []), offset)

    def finish(self, partition: TopicPartition, offset: int) -> int | None:
        """Mark an offset done and return the next offset to commit, if it advanced."""
        outstanding = self._outstanding.get(partition, [])
        finished = self._finished.setdefault(partition, set())
        finished.add(offset)
        commit_to = None
        while outstanding and outstanding[0] in finished:
            done = outstanding.pop(0)
            finished.discard(done)
            commit_to = done + 1
        return commit_to

    @property
    def running_count(self) -> int:
        """Offsets handed out whose job has not finished yet."""
        outstanding = sum(len(offsets) for offsets in self._outstanding.values())
        return outstanding - sum(len(offsets) for offsets in self._finished.values())


class KafkaJobQueue(JobQueue):
    def __init__(self, bootstrap_servers: str, topic: str, group_id: str, visibility_timeout: float = 900):
        self.producer = JobProducer(
            bootstrap_servers=bootstrap_servers,
            topic=topic,
            acks="all",
        )
        self.consumer = JobConsumer(
            bootstrap_servers=bootstrap_servers,
            topic=topic,
            group_id=group_id,
            max_poll_interval_ms=int(visibility_timeout * 1000),
        )
        self.tracker = OffsetTracker()
        self._consuming = False

    async def start(self):
        try:
            await self.producer.start()
        except KafkaError as e:
            raise QueueUnavailable(f"Kafka producer could not start: {e}") from e

    async def start_consuming(self):
        if not self._consuming:
            await self.consumer.start()
            self._consuming = True

    async def stop(self):
        if self._consuming:
            await self.consumer.stop()
            self._consuming = False
        await self.producer.stop()

    def counts(self):
        # the topic backlog lives in the broker
        return {"inflight": self.tracker.running_count}

    async def enqueue(self, message):
        try:
            await self.producer.publish_job(message)
        except (KafkaError, RuntimeError) as e:
            logger.error(f"Could not enqueue job {message.job_id}: {e}")
            raise QueueUnavailable(f"Job {message.job_id} could not be enqueued") from e
        logger.info(f"Enqueued job {message.job_id} (attempt {message.attempt})")

    async def dequeue(self, timeout):
        await self.start_consuming()
        records = await self.consumer.fetch(timeout, max_records=1)
        if not records:
            return None
        record = records[0]
        partition = TopicPartition(record.topic, record.partition)
        self.tracker.track(partition, record.offset)
        message = ProcessingJobMessage.decode(record.value)
        return Delivery(message=message, receipt=(partition, record.offset), delivery_count=message.attempt)

    async def ack(self, delivery):
        partition, offset = delivery.receipt
        commit_to = self.tracker.finish(partition, offset)
        if commit_to is not None:
            await self.consumer.commit(partition, commit_to)

    async def nack(self, delivery):
        # Kafka cannot hide a single record again; publish a new attempt instead
        await self.enqueue(replace(delivery.message, attempt=delivery.message.attempt + 1))
        await self.ack(delivery)
