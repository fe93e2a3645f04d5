"""Tests for the job queue backends."""

import pytest
from aiokafka import TopicPartition

from api_ingest.exceptions.exceptions import QueueUnavailable
from common.job_queue import LocalJobQueue
from common.kafka_queue import OffsetTracker
from common.message_types import ProcessingJobMessage


class TickClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def message(job_id: str = "job-1") -> ProcessingJobMessage:
    return ProcessingJobMessage(job_id=job_id, source_key=f"uploads/{job_id}/source.mp4")


@pytest.fixture
async def queue():
    clock = TickClock()
    queue = LocalJobQueue(visibility_timeout=30, clock=clock)
    queue.clock = clock
    await queue.start()
    yield queue
    await queue.stop()


@pytest.mark.asyncio
async def test_enqueue_requires_running_queue():
    queue = LocalJobQueue()
    with pytest.raises(QueueUnavailable):
        await queue.enqueue(message())


@pytest.mark.asyncio
async def test_fifo_delivery_and_ack(queue):
    await queue.enqueue(message("a"))
    await queue.enqueue(message("b"))

    first = await queue.dequeue(timeout=0)
    second = await queue.dequeue(timeout=0)

    assert [first.message.job_id, second.message.job_id] == ["a", "b"]
    await queue.ack(first)
    await queue.ack(second)
    assert queue.inflight_count == 0
    assert await queue.dequeue(timeout=0) is None


@pytest.mark.asyncio
async def test_unacknowledged_delivery_becomes_visible_again(queue):
    await queue.enqueue(message())
    first = await queue.dequeue(timeout=0)
    assert await queue.dequeue(timeout=0) is None

    queue.clock.now += 31
    again = await queue.dequeue(timeout=0)

    assert again.message.job_id == first.message.job_id
    assert again.delivery_count == 2
    # the stale receipt no longer acknowledges anything
    await queue.ack(first)
    assert queue.inflight_count == 1


@pytest.mark.asyncio
async def test_extend_keeps_running_delivery_hidden(queue):
    await queue.enqueue(message())
    delivery = await queue.dequeue(timeout=0)
    assert queue.heartbeat_interval == 10

    for _ in range(3):
        queue.clock.now += 20
        await queue.extend(delivery)
        assert await queue.dequeue(timeout=0) is None

    await queue.ack(delivery)
    assert queue.inflight_count == 0


@pytest.mark.asyncio
async def test_nack_redelivers_immediately(queue):
    await queue.enqueue(message())
    delivery = await queue.dequeue(timeout=0)

    await queue.nack(delivery)
    again = await queue.dequeue(timeout=0)

    assert again.delivery_count == 2
    assert queue.pending_count == 0


def test_message_encoding_keeps_fields():
    original = ProcessingJobMessage(job_id="j", source_key="uploads/j/source.mov", attempt=2)
    decoded = ProcessingJobMessage.decode(original.encode())
    assert decoded == original


def test_offset_tracker_commits_contiguous_prefix_only():
    tracker = OffsetTracker()
    partition = TopicPartition("video-processing", 0)
    for offset in (5, 6, 7):
        tracker.track(partition, offset)

    assert tracker.finish(partition, 6) is None
    assert tracker.finish(partition, 5) == 7
    assert tracker.finish(partition, 7) == 8


def test_offset_tracker_partitions_are_independent():
    tracker = OffsetTracker()
    p0 = TopicPartition("video-processing", 0)
    p1 = TopicPartition("video-processing", 1)
    tracker.track(p0, 10)
    tracker.track(p1, 3)

    assert tracker.finish(p1, 3) == 4
    assert tracker.finish(p0, 10) == 11
