"""
Backpressure Buffers - Bounded staging between the dispatch loop and batch consumers

Architecture:
    BatchQueue (interface)
        ├── FifoBackpressureBuffer        (one queue, strict FIFO, ordering mode)
        └── PartitionedBackpressureBuffer (N queues keyed by record id, unordered)

Backpressure:
    enqueue() suspends while the target queue is full, so a fast Source is
    slowed down to the consumers' pace instead of growing memory.

Batching:
    dequeue_batch() waits up to poll_interval for the first record, then
    takes whatever else is immediately available up to max_size.
"""

import asyncio
import zlib

from dispatch_engine.core.config.constants import Stage
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.exceptions import ConfigurationError, QueueClosedError
from dispatch_engine.core.interfaces.message_queue import BatchQueue
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.core.models import Record
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)


class _Partition:
    """One bounded asyncio queue plus its batching logic."""

    def __init__(self, capacity: int):
        self.queue: asyncio.Queue[Record] = asyncio.Queue(maxsize=capacity)

    async def take_batch(self, max_size: int, poll_interval: float) -> list[Record]:
        try:
            first = await asyncio.wait_for(self.queue.get(), timeout=poll_interval)
        except asyncio.TimeoutError:
            return []

        batch = [first]
        while len(batch) < max_size:
            try:
                batch.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    def drain(self) -> list[Record]:
        records = []
        while True:
            try:
                records.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return records


class _BufferBase(BatchQueue):
    name = "buffer"

    def __init__(self, partitions: list[_Partition], metrics: MetricsCollector | None = None):
        self._partitions = partitions
        self._closed = False
        self._metrics = metrics or get_metrics_collector()

    @property
    def partitions(self) -> int:
        return len(self._partitions)

    @property
    def closed(self) -> bool:
        return self._closed

    def _partition_for(self, record: Record) -> _Partition:
        raise NotImplementedError

    async def enqueue(self, record: Record) -> None:
        """
        Add a record, suspending while its partition is full.

        STAGE-B.1: Enqueue with backpressure
        """
        if self._closed:
            raise QueueClosedError("Buffer is closed", record_id=record.record_id)

        partition = self._partition_for(record)
        if partition.queue.full():
            logger.debug(
                "Buffer full, applying backpressure",
                stage=Stage.BUFFER,
                buffer=self.name,
                record_id=record.record_id,
            )
        await partition.queue.put(record)
        self._metrics.record_buffer_depth(self.name, self.depth())

    async def dequeue_batch(
        self,
        max_size: int,
        poll_interval: float,
        partition: int = 0,
    ) -> list[Record]:
        """
        Take up to ``max_size`` records from one partition.

        STAGE-B.2: Batch dequeue
        """
        if max_size <= 0:
            raise ConfigurationError("max_size must be greater than zero", details={"max_size": max_size})

        target = self._partitions[partition]
        if self._closed and target.queue.empty():
            return []

        batch = await target.take_batch(max_size, poll_interval)
        if batch:
            self._metrics.record_buffer_depth(self.name, self.depth())
        return batch

    def close(self) -> None:
        """
        Mark end of input.

        STAGE-B.3: Close
        """
        self._closed = True
        logger.info("Buffer closed", stage=Stage.BUFFER, buffer=self.name, depth=self.depth())

    def drain(self) -> list[Record]:
        """Remove every buffered record (used on cancellation)."""
        records: list[Record] = []
        for partition in self._partitions:
            records.extend(partition.drain())
        self._metrics.record_buffer_depth(self.name, 0)
        return records

    def is_exhausted(self, partition: int = 0) -> bool:
        return self._closed and self._partitions[partition].queue.empty()

    def depth(self) -> int:
        return sum(partition.queue.qsize() for partition in self._partitions)


class FifoBackpressureBuffer(_BufferBase):
    """
    Single bounded queue with strict first-in-first-out delivery.

    Used when ordering is required: one consumer drains it, so delivery
    order equals enqueue order across the whole buffer.
    """

    name = "fifo"

    def __init__(self, capacity: int, metrics: MetricsCollector | None = None):
        if capacity <= 0:
            raise ConfigurationError("Buffer capacity must be greater than zero", details={"capacity": capacity})
        super().__init__([_Partition(capacity)], metrics)
        self.capacity = capacity

    def _partition_for(self, record: Record) -> _Partition:
        return self._partitions[0]


class PartitionedBackpressureBuffer(_BufferBase):
    """
    Records spread over independent bounded queues by a stable hash of their id.

    No ordering guarantee across partitions; one consumer per partition
    lets batches run in parallel.
    """

    name = "partitioned"

    def __init__(self, capacity: int, partitions: int, metrics: MetricsCollector | None = None):
        if capacity <= 0 or partitions <= 0:
            raise ConfigurationError(
                "Buffer capacity and partitions must be greater than zero",
                details={"capacity": capacity, "partitions": partitions},
            )
        per_partition = max(1, capacity // partitions)
        super().__init__([_Partition(per_partition) for _ in range(partitions)], metrics)
        self.capacity = per_partition * partitions

    def _partition_for(self, record: Record) -> _Partition:
        index = zlib.crc32(record.record_id.encode("utf-8")) % len(self._partitions)
        return self._partitions[index]


def create_buffer(config: DispatchConfig, metrics: MetricsCollector | None = None) -> BatchQueue:
    """
    Build the buffer for decoupling mode.

    Ordering mode always gets a single FIFO queue; otherwise records are
    spread over ``config.buffer_partitions`` queues.
    """
    if config.ordering_required or config.buffer_partitions <= 1:
        return FifoBackpressureBuffer(config.buffer_capacity, metrics=metrics)
    return PartitionedBackpressureBuffer(config.buffer_capacity, config.buffer_partitions, metrics=metrics)
