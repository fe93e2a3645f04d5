import aiokafka
from aiokafka import TopicPartition
import logging

logger = logging.getLogger(__name__)

# ms
SESSION_TIMEOUT = 120000
HEARTBEAT_INTERVAL = 30000


class JobConsumer:
    """
    Reads processing job records one at a time. Offsets are committed
    explicitly by the queue once the job they carry is terminal.
    """

    def __init__(self, bootstrap_servers: str, topic: str, group_id: str, max_poll_interval_ms: int = 600000):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.max_poll_interval_ms = max_poll_interval_ms
        self.consumer: aiokafka.AIOKafkaConsumer | None = None

    async def start(self):
        self.consumer = aiokafka.AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            max_poll_interval_ms=self.max_poll_interval_ms,
            session_timeout_ms=SESSION_TIMEOUT,
            heartbeat_interval_ms=HEARTBEAT_INTERVAL,
        )
        await self.consumer.start()
        logger.info(f"JobConsumer joined group {self.group_id} on topic: {self.topic}")

    async def fetch(self, timeout: float, max_records: int = 1) -> list:
        batches = await self.consumer.getmany(timeout_ms=int(timeout * 1000), max_records=max_records)
        return [record for records in batches.values() for record in records]

    async def commit(self, partition: TopicPartition, next_offset: int):
        await self.consumer.commit({partition: next_offset})
        logger.debug(f"Committed {partition.topic}[{partition.partition}] up to {next_offset}")

    async def stop(self):
        if self.consumer is not None:
            await self.consumer.stop()
            self.consumer = None
            logger.info("JobConsumer stopped")
