from abc import ABC, abstractmethod

from dispatch_engine.core.models import Record


class BatchQueue(ABC):
    """
    Abstract base class for bounded staging queues feeding batch consumers.
    """

    @property
    @abstractmethod
    def partitions(self) -> int:
        """Number of independently consumable partitions."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    @abstractmethod
    async def enqueue(self, record: Record) -> None:
        """
        Add a record, suspending while the target partition is full.

        Raises:
            QueueClosedError: If close() was already called
        """
        pass

    @abstractmethod
    async def dequeue_batch(
        self,
        max_size: int,
        poll_interval: float,
        partition: int = 0,
    ) -> list[Record]:
        """
        Take up to ``max_size`` records from one partition.

        Waits at most ``poll_interval`` seconds for the first record and
        returns an empty list on timeout.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Mark end of input. Consumers stop once the queue is drained."""
        pass

    @abstractmethod
    def drain(self) -> list[Record]:
        """Remove and return every buffered record."""
        pass

    @abstractmethod
    def is_exhausted(self, partition: int = 0) -> bool:
        """True once the queue is closed and the partition is empty."""
        pass

    @abstractmethod
    def depth(self) -> int:
        pass
