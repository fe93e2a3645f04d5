from aiokafka import AIOKafkaProducer
import logging

from common.message_types import ProcessingJobMessage

logger = logging.getLogger(__name__)


class JobProducer:
    """Publishes processing job messages to the jobs topic."""

    def __init__(self, bootstrap_servers: str, topic: str, acks="all"):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.acks = acks
        self.producer: AIOKafkaProducer | None = None

    @property
    def started(self) -> bool:
        return self.producer is not None

    async def start(self):
        if self.started:
            return
        # created here so the producer binds to the running event loop
        producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks=self.acks)
        await producer.start()
        self.producer = producer
        logger.info(f"JobProducer connected to {self.bootstrap_servers}, topic: {self.topic}")

    async def stop(self):
        if self.started:
            await self.producer.stop()
            self.producer = None
            logger.info("JobProducer stopped")

    async def publish_job(self, message: ProcessingJobMessage):
        if not self.started:
            raise RuntimeError("Producer not started. Call .start() before publish_job().")
        # keyed by job id so every attempt of a job lands on the same partition
        return await self.producer.send_and_wait(
            self.topic,
            value=message.encode(),
            key=message.job_id.encode(),
        )
