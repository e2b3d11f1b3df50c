"""
Batch Consumer

Drains one partition of a backpressure buffer in batches and hands each
batch to the executor.

Loop:
    1. dequeue_batch(batch_size, poll_interval)
    2. Empty batch -> check exhaustion, poll again
    3. executor.execute_batch() -> report each outcome as it arrives
    4. Stop once the buffer is closed and the partition is empty

Ordering:
    With ``ordered=True`` batches are processed one at a time and a batch's
    retries finish before the next batch is taken. Otherwise up to
    ``max_concurrent_batches`` batches run at once.
"""

import asyncio
from contextlib import aclosing

from dispatch_engine.core.config.constants import FailureClass, Stage, TerminalStatus
from dispatch_engine.core.interfaces.message_queue import BatchQueue
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.core.models import RecordOutcome, RetryState
from dispatch_engine.engine.aggregator import OutcomeAggregator
from dispatch_engine.engine.executor import InvocationExecutor

logger = get_logger(__name__)


class BatchConsumer:
    """
    Consumer for one buffer partition.

    Every record taken from the buffer gets exactly one outcome report,
    including when the consumer is cancelled mid-batch.
    """

    def __init__(
        self,
        buffer: BatchQueue,
        executor: InvocationExecutor,
        aggregator: OutcomeAggregator,
        batch_size: int,
        poll_interval: float,
        ordered: bool = False,
        partition: int = 0,
        max_concurrent_batches: int = 1,
    ):
        self._buffer = buffer
        self._executor = executor
        self._aggregator = aggregator
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._ordered = ordered
        self._partition = partition
        self._batch_slots = asyncio.Semaphore(1 if ordered else max(1, max_concurrent_batches))
        self._batches: set[asyncio.Task] = set()
        self._in_hand: dict[str, RetryState] = {}
        self.batches_processed = 0

    @property
    def name(self) -> str:
        return f"consumer-{self._partition}"

    async def run(self) -> None:
        """
        Consume until the partition is exhausted.

        STAGE-BC.1: Consumer loop
        """
        logger.info(
            "Batch consumer started",
            stage=Stage.BATCH,
            consumer=self.name,
            batch_size=self._batch_size,
            ordered=self._ordered,
        )
        try:
            while not self._buffer.is_exhausted(self._partition):
                await self._batch_slots.acquire()
                try:
                    records = await self._buffer.dequeue_batch(
                        self._batch_size, self._poll_interval, self._partition
                    )
                except BaseException:
                    self._batch_slots.release()
                    raise

                if not records:
                    self._batch_slots.release()
                    continue

                states = [RetryState(record) for record in records]
                for state in states:
                    self._in_hand[state.record.record_id] = state

                if self._ordered:
                    try:
                        await self._deliver(states)
                    finally:
                        self._batch_slots.release()
                else:
                    task = asyncio.create_task(self._deliver_and_release(states))
                    self._batches.add(task)
                    task.add_done_callback(self._batches.discard)

            if self._batches:
                await asyncio.gather(*self._batches)
        except asyncio.CancelledError:
            logger.info("Batch consumer cancelled", stage=Stage.CANCELLATION, consumer=self.name)
            await self._cancel_batches()
            for state in list(self._in_hand.values()):
                self._aggregator.report(RecordOutcome.cancelled(state))
            self._in_hand.clear()
            raise

        logger.info(
            "Batch consumer finished",
            stage=Stage.BATCH,
            consumer=self.name,
            batches=self.batches_processed,
        )

    async def _cancel_batches(self) -> None:
        pending = list(self._batches)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _deliver_and_release(self, states: list[RetryState]) -> None:
        try:
            await self._deliver(states)
        finally:
            self._batch_slots.release()

    async def _deliver(self, states: list[RetryState]) -> None:
        """
        Execute one batch and report every record's outcome.

        STAGE-BC.2: Batch delivery

        Records still unreported when the batch is cancelled stay in hand;
        run() reports them as CANCELLED after unwinding.
        """
        logger.debug(
            "Delivering batch",
            stage=Stage.BATCH,
            consumer=self.name,
            size=len(states),
        )

        try:
            async with aclosing(self._executor.execute_batch(states, ordered=self._ordered)) as outcomes:
                async for outcome in outcomes:
                    self._in_hand.pop(outcome.record_id, None)
                    self._aggregator.report(outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Batch delivery failed",
                stage=Stage.BATCH,
                consumer=self.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            for state in states:
                if self._in_hand.pop(state.record.record_id, None) is None:
                    continue
                state.last_failure = FailureClass.FATAL
                state.last_error = f"{type(e).__name__}: {e}"
                self._aggregator.report(RecordOutcome.from_state(state, TerminalStatus.FAILED_FATAL))
            return

        self.batches_processed += 1
