"""
Dispatch Engine

Public entry point that wires limiter, retry policy, executor, buffer and
aggregator together for a run.

Usage:
    engine = DispatchEngine(transport, DispatchConfig.from_settings())
    summary = await engine.run(records, deadline=300)
    print(summary.to_dict())

Lifecycle of run():
    STAGE-0   Validate configuration (ConfigurationError before any record)
    STAGE-3   Dispatch loop over the Source
    STAGE-C   Optional cancellation via cancel() or deadline
    STAGE-5   Finalize and return the OutcomeSummary
"""

import asyncio
import random
import time

from dispatch_engine.core.config.constants import Stage
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.interfaces.transport import Transport
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.core.resilience.admission_limiter import AdmissionLimiter, create_admission_limiter
from dispatch_engine.core.resilience.retry_policy import RetryPolicy
from dispatch_engine.engine.aggregator import OutcomeAggregator, OutcomeSummary
from dispatch_engine.engine.dispatch_loop import DispatchLoop, Source
from dispatch_engine.engine.executor import InvocationExecutor
from dispatch_engine.infrastructure.message_queue.backpressure_buffer import create_buffer
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)


class DispatchEngine:
    """
    Bounded-concurrency, fault-tolerant record dispatcher.

    The limiter and retry policy are shared by all runs of one engine;
    every run gets its own dispatch loop, buffer and aggregator, so
    replaying a record set starts from a clean slate.
    """

    def __init__(
        self,
        transport: Transport,
        config: DispatchConfig | None = None,
        limiter: AdmissionLimiter | None = None,
        metrics: MetricsCollector | None = None,
        rng: random.Random | None = None,
        redis_client=None,
    ):
        self.config = config or DispatchConfig.from_settings()
        self.config.validate()

        self._transport = transport
        self._metrics = metrics or get_metrics_collector()
        self.limiter = limiter or create_admission_limiter(
            self.config, redis_client=redis_client, metrics=self._metrics
        )
        self.policy = RetryPolicy(self.config, rng=rng)
        self.executor = InvocationExecutor(transport, self.limiter, self.policy, metrics=self._metrics)

        self._cancel_event: asyncio.Event | None = None
        self._running = False

        logger.info(
            "Dispatch engine initialized",
            stage=Stage.STARTUP,
            concurrency_cap=self.config.concurrency_cap,
            rate_bucket_capacity=self.config.rate_bucket_capacity,
            max_retries=self.config.max_retries,
            decoupling_enabled=self.config.decoupling_enabled,
            ordering_required=self.config.ordering_required,
            admission_backend=self.config.admission_backend.value,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, source: Source, deadline: float | None = None) -> OutcomeSummary:
        """
        Dispatch every record from ``source`` and return the summary.

        Args:
            source: Iterable or async iterable of Record / MalformedRecord
            deadline: Seconds after which the run is cancelled (None = no limit)

        Returns:
            OutcomeSummary: Per-record failures are data here, never exceptions

        Raises:
            ConfigurationError: If the configuration is invalid
            RuntimeError: If the engine is already running
        """
        if self._running:
            raise RuntimeError("DispatchEngine.run() is already in progress")
        self.config.validate()

        self._running = True
        self._cancel_event = asyncio.Event()
        aggregator = OutcomeAggregator(keep_outcomes=self.config.keep_record_outcomes, metrics=self._metrics)
        buffer = create_buffer(self.config, metrics=self._metrics) if self.config.decoupling_enabled else None
        loop = DispatchLoop(
            source,
            self.executor,
            aggregator,
            self.config,
            cancel_event=self._cancel_event,
            buffer=buffer,
            metrics=self._metrics,
        )

        timer = None
        if deadline is not None:
            timer = asyncio.get_running_loop().call_later(deadline, self._expire, deadline)

        started = time.perf_counter()
        try:
            await loop.run()
        finally:
            if timer is not None:
                timer.cancel()
            self._running = False

        summary = aggregator.finalize()
        logger.info(
            "Dispatch run completed",
            stage=Stage.SHUTDOWN,
            duration_seconds=round(time.perf_counter() - started, 3),
            total=summary.total,
            succeeded=summary.succeeded,
            failed=summary.failed,
            cancelled=summary.cancelled,
            cancelled_run=summary.cancelled_run,
        )
        return summary

    def cancel(self) -> None:
        """
        Abort the current run.

        STAGE-C: Cancellation

        run() returns a partial summary with unfinished records CANCELLED.
        """
        if self._cancel_event is None or not self._running:
            return
        logger.warning("Dispatch cancellation requested", stage=Stage.CANCELLATION)
        self._cancel_event.set()

    def _expire(self, deadline: float) -> None:
        logger.warning("Dispatch deadline reached", stage=Stage.CANCELLATION, deadline_seconds=deadline)
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def get_stats(self) -> dict:
        return {
            "running": self._running,
            "limiter": await self.limiter.get_stats(),
        }

    async def close(self) -> None:
        """Release limiter resources (Redis connections)."""
        close = getattr(self.limiter, "close", None)
        if close is not None:
            await close()
