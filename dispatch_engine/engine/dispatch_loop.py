"""
Dispatch Loop

Drains a Source and turns every record into exactly one terminal outcome.

Direct mode:
    Source -> [in-flight ceiling] -> one task per record -> executor -> aggregator

Decoupling mode:
    Source -> buffer.enqueue (backpressure) -> BatchConsumer per partition
           -> executor.execute_batch -> aggregator

Cancellation:
    Setting the cancellation event stops pulling from the Source, cancels
    every record task and consumer, and reports every record that was
    pulled but not finished as CANCELLED.
"""

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from contextlib import aclosing

from dispatch_engine.core.config.constants import FailureClass, Stage, TerminalStatus
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.interfaces.message_queue import BatchQueue
from dispatch_engine.core.logging.logger import clear_record_id, get_logger
from dispatch_engine.core.models import MalformedRecord, Record, RecordOutcome, RetryState
from dispatch_engine.engine.aggregator import OutcomeAggregator
from dispatch_engine.engine.batch_consumer import BatchConsumer
from dispatch_engine.engine.executor import InvocationExecutor
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

SourceItem = Record | MalformedRecord
Source = Iterable[SourceItem] | AsyncIterable[SourceItem]


async def iterate_source(source: Source) -> AsyncIterator[SourceItem]:
    """Uniform async iteration over sync and async sources."""
    if isinstance(source, AsyncIterable):
        async for item in source:
            yield item
    else:
        for item in source:
            yield item


class DispatchLoop:
    """
    One run over one Source.

    A DispatchLoop is single-use: build a new one (and a new aggregator)
    for every run so that no state leaks between runs.
    """

    def __init__(
        self,
        source: Source,
        executor: InvocationExecutor,
        aggregator: OutcomeAggregator,
        config: DispatchConfig,
        cancel_event: asyncio.Event | None = None,
        buffer: BatchQueue | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._source = source
        self._executor = executor
        self._aggregator = aggregator
        self._config = config
        self._cancel_event = cancel_event or asyncio.Event()
        self._buffer = buffer
        self._metrics = metrics or get_metrics_collector()

        self._ceiling = asyncio.Semaphore(config.effective_in_flight_ceiling)
        self._tasks: set[asyncio.Task] = set()
        self._active: dict[str, RetryState] = {}
        self._pulled_ids: set[str] = set()
        self._pending_enqueue: Record | None = None
        self._consumers: list[asyncio.Task] = []

        self.pulled = 0
        self.duplicates_skipped = 0

    @property
    def decoupled(self) -> bool:
        return self._buffer is not None

    async def run(self) -> None:
        """
        Dispatch every record from the Source.

        STAGE-3: Dispatch

        Returns once the Source is exhausted and every record is terminal,
        or once the cancellation event is set and every pulled record has
        been reported.
        """
        logger.info(
            "Dispatch loop started",
            stage=Stage.DISPATCH,
            mode="decoupled" if self.decoupled else "direct",
            in_flight_ceiling=self._config.effective_in_flight_ceiling,
            ordering_required=self._config.ordering_required,
        )

        feeder = asyncio.create_task(self._feed_buffer() if self.decoupled else self._feed_direct())
        stop = asyncio.create_task(self._cancel_event.wait())
        try:
            await asyncio.wait({feeder, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not feeder.done():
                await self._abort(feeder)

        if feeder.cancelled():
            return
        feeder.result()

        logger.info(
            "Dispatch loop finished",
            stage=Stage.DISPATCH,
            pulled=self.pulled,
            duplicates_skipped=self.duplicates_skipped,
        )

    # =========================================================================
    # Source intake
    # =========================================================================

    async def _pull(self) -> AsyncIterator[Record]:
        """
        Yield well-formed, first-seen records from the Source.

        STAGE-2: Source read

        Malformed entries are reported as fatal here. A Source that raises
        ends intake; records already pulled still complete.
        """
        async with aclosing(iterate_source(self._source)) as items:
            while True:
                try:
                    item = await anext(items)
                except StopAsyncIteration:
                    return
                except Exception as e:
                    logger.error(
                        "Source failed, stopping intake",
                        stage=Stage.SOURCE_READ,
                        pulled=self.pulled,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    self._aggregator.set_source_error(f"{type(e).__name__}: {e}")
                    return

                self.pulled += 1

                if item.record_id in self._pulled_ids:
                    # Same idempotency key already pulled in this run
                    self.duplicates_skipped += 1
                    self._aggregator.record_duplicate()
                    logger.warning("Duplicate record id skipped", stage=Stage.SOURCE_READ, record_id=item.record_id)
                    continue
                self._pulled_ids.add(item.record_id)

                if isinstance(item, MalformedRecord):
                    logger.warning(
                        "Malformed source entry",
                        stage=Stage.SOURCE_READ,
                        record_id=item.record_id,
                        reason=item.reason,
                    )
                    self._report_once(RecordOutcome.rejected(item))
                    continue

                yield item

    # =========================================================================
    # Direct mode
    # =========================================================================

    async def _feed_direct(self) -> None:
        async with aclosing(self._pull()) as records:
            while True:
                # A free slot comes before the next pull
                await self._ceiling.acquire()
                record = await anext(records, None)
                if record is None:
                    self._ceiling.release()
                    break

                state = RetryState(record)
                self._active[record.record_id] = state
                task = asyncio.create_task(self._process(state))
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

        while self._tasks:
            await asyncio.wait(set(self._tasks))

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._ceiling.release()

    async def _process(self, state: RetryState) -> None:
        """
        Run one record to its terminal outcome and report it.

        STAGE-3.1: Record task
        """
        record_id = state.record.record_id
        self._metrics.increment_in_flight()
        try:
            outcome = await self._executor.execute(state.record, state)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Record task failed unexpectedly",
                stage=Stage.DISPATCH,
                record_id=record_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            state.last_failure = FailureClass.FATAL
            state.last_error = f"{type(e).__name__}: {e}"
            outcome = RecordOutcome.from_state(state, TerminalStatus.FAILED_FATAL)
        finally:
            self._metrics.decrement_in_flight()
            clear_record_id()

        self._aggregator.report(outcome)
        self._active.pop(record_id, None)

    # =========================================================================
    # Decoupling mode
    # =========================================================================

    def _build_consumers(self) -> list[BatchConsumer]:
        config = self._config
        partitions = self._buffer.partitions
        max_concurrent_batches = max(
            1, config.effective_in_flight_ceiling // max(1, config.batch_size * partitions)
        )
        return [
            BatchConsumer(
                buffer=self._buffer,
                executor=self._executor,
                aggregator=self._aggregator,
                batch_size=config.batch_size,
                poll_interval=config.poll_interval_seconds,
                ordered=config.ordering_required,
                partition=partition,
                max_concurrent_batches=max_concurrent_batches,
            )
            for partition in range(partitions)
        ]

    async def _feed_buffer(self) -> None:
        self._consumers = [asyncio.create_task(consumer.run()) for consumer in self._build_consumers()]

        async with aclosing(self._pull()) as records:
            async for record in records:
                self._pending_enqueue = record
                await self._buffer.enqueue(record)
                self._pending_enqueue = None

        self._buffer.close()
        await asyncio.gather(*self._consumers)

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def _abort(self, feeder: asyncio.Task) -> None:
        """
        Unwind every task and report unfinished records as CANCELLED.

        STAGE-C: Cancellation
        """
        logger.warning(
            "Dispatch cancelled, unwinding in-flight records",
            stage=Stage.CANCELLATION,
            in_flight=len(self._tasks),
            buffered=self._buffer.depth() if self._buffer else 0,
        )
        self._aggregator.mark_cancelled_run()

        feeder.cancel()
        tasks = [feeder, *self._tasks, *self._consumers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        unfinished = list(self._active.values())
        if self._pending_enqueue is not None:
            unfinished.append(RetryState(self._pending_enqueue))
        if self._buffer is not None:
            unfinished.extend(RetryState(record) for record in self._buffer.drain())

        for state in unfinished:
            self._report_once(RecordOutcome.cancelled(state))
        self._active.clear()

    def _report_once(self, outcome: RecordOutcome) -> None:
        if not self._aggregator.has_outcome(outcome.record_id):
            self._aggregator.report(outcome)
