"""
Invocation Executor

Performs remote calls for records and applies the retry policy.

Flow for one record:
    1. Acquire an admission token
    2. Invoke the transport
    3. Release the token (always)
    4. Classify: success / THROTTLED / TRANSIENT / FATAL
    5. Success or FATAL -> terminal outcome
       THROTTLED / TRANSIENT -> RetryPolicy -> sleep(delay) -> step 1, or give up

Batch flow (decoupling mode):
    A transport with invoke_batch gets one admission and one call for the
    whole batch. Any other transport gets one admission per record, called
    in batch order. Every record is classified on its own. Terminal records
    are yielded at once; retryable ones continue their own retry sequence.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from typing import Any

from dispatch_engine.core.config.constants import AttemptOutcome, FailureClass, Stage, TerminalStatus
from dispatch_engine.core.exceptions import InvocationError
from dispatch_engine.core.interfaces.transport import Transport
from dispatch_engine.core.logging.logger import get_logger, set_record_id
from dispatch_engine.core.models import InvocationAttempt, Record, RecordOutcome, RetryState
from dispatch_engine.core.resilience.admission_limiter import AdmissionLimiter
from dispatch_engine.core.resilience.retry_policy import GiveUp, Retry, RetryPolicy
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

TRANSIENT_EXCEPTIONS = (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError)


def classify_failure(exc: BaseException) -> FailureClass:
    """
    Map an exception raised by a transport to a failure class.

    Typed InvocationErrors carry their own class; timeouts and socket
    errors are transient; anything else is treated as permanent.
    """
    if isinstance(exc, InvocationError):
        return exc.failure_class
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return FailureClass.TRANSIENT
    return FailureClass.FATAL


class InvocationExecutor:
    """
    Executes records against the transport under admission control.

    The executor holds no per-record state: everything about a record's
    progress lives in the RetryState its task passes in.
    """

    def __init__(
        self,
        transport: Transport,
        limiter: AdmissionLimiter,
        policy: RetryPolicy,
        metrics: MetricsCollector | None = None,
    ):
        self._transport = transport
        self._limiter = limiter
        self._policy = policy
        self._metrics = metrics or get_metrics_collector()

    @property
    def supports_batch(self) -> bool:
        return callable(getattr(self._transport, "invoke_batch", None))

    # =========================================================================
    # Single record
    # =========================================================================

    async def execute(self, record: Record, state: RetryState | None = None) -> RecordOutcome:
        """
        Run a record to its terminal outcome.

        STAGE-4: Invocation

        Args:
            record: Record to deliver
            state: Attempt bookkeeping owned by the caller (created if None)

        Returns:
            RecordOutcome: SUCCEEDED, FAILED_FATAL or FAILED_RETRY_EXHAUSTED

        Raises:
            asyncio.CancelledError: If the task is cancelled; the token is
                released and ``state`` shows the attempts made so far
        """
        state = state or RetryState(record)
        set_record_id(record.record_id)
        return await self._run_attempts(state)

    async def _run_attempts(self, state: RetryState) -> RecordOutcome:
        while True:
            async with self._limiter.admit():
                state.attempts += 1
                attempt = await self._invoke_once(state.record, state.attempts)

            settled = self._settle(state, attempt)
            if isinstance(settled, RecordOutcome):
                return settled

            # Token is already released; the delay holds no capacity
            await asyncio.sleep(settled.delay)

    async def _resume(self, state: RetryState, delay: float) -> RecordOutcome:
        set_record_id(state.record.record_id)
        await asyncio.sleep(delay)
        return await self._run_attempts(state)

    async def _invoke_once(self, record: Record, attempt_number: int) -> InvocationAttempt:
        started_at = time.time()
        t0 = time.perf_counter()
        try:
            response = await self._transport.invoke(record.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return InvocationAttempt.failed(
                attempt_number=attempt_number,
                started_at=started_at,
                latency=time.perf_counter() - t0,
                failure_class=classify_failure(e),
                error=f"{type(e).__name__}: {e}",
            )
        return InvocationAttempt.succeeded(
            attempt_number=attempt_number,
            started_at=started_at,
            latency=time.perf_counter() - t0,
            response=response,
        )

    def _settle(self, state: RetryState, attempt: InvocationAttempt) -> RecordOutcome | Retry:
        """
        Record an attempt and turn it into a terminal outcome or a retry.

        STAGE-R: Retry decision
        """
        state.record_attempt(attempt)
        self._metrics.record_attempt(
            attempt.outcome.value,
            attempt.failure_class.value if attempt.failure_class else None,
            attempt.latency,
        )
        record_id = state.record.record_id

        if attempt.outcome is AttemptOutcome.SUCCESS:
            logger.debug(
                "Invocation succeeded",
                stage=Stage.INVOCATION,
                record_id=record_id,
                attempt=attempt.attempt_number,
                latency_seconds=round(attempt.latency, 4),
            )
            return RecordOutcome.from_state(state, TerminalStatus.SUCCEEDED, response=attempt.response)

        decision = self._policy.decide(attempt.attempt_number, attempt.failure_class)

        if isinstance(decision, GiveUp):
            status = (
                TerminalStatus.FAILED_FATAL
                if attempt.failure_class is FailureClass.FATAL
                else TerminalStatus.FAILED_RETRY_EXHAUSTED
            )
            logger.warning(
                "Invocation failed, giving up",
                stage=Stage.RETRY,
                record_id=record_id,
                attempt=attempt.attempt_number,
                failure_class=attempt.failure_class.value,
                reason=decision.reason,
                error=attempt.error,
            )
            return RecordOutcome.from_state(state, status)

        self._metrics.record_retry_scheduled(attempt.failure_class.value)
        logger.info(
            "Invocation failed, retrying with backoff",
            stage=Stage.RETRY,
            record_id=record_id,
            attempt=attempt.attempt_number,
            failure_class=attempt.failure_class.value,
            delay_seconds=round(decision.delay, 4),
            error=attempt.error,
        )
        return decision

    # =========================================================================
    # Batch
    # =========================================================================

    async def execute_batch(
        self,
        states: Sequence[RetryState],
        ordered: bool = False,
    ) -> AsyncIterator[RecordOutcome]:
        """
        Deliver a batch and yield each record's terminal outcome.

        STAGE-BC: Batch invocation

        A failed record never holds back the outcomes of its batch-mates.
        With ``ordered=True`` retries run one after another in batch order;
        otherwise they run concurrently and are yielded as they finish.

        Args:
            states: One RetryState per record, in delivery order
            ordered: Preserve delivery order for retried records

        Yields:
            RecordOutcome for every record in the batch
        """
        if not states:
            return

        retries: list[tuple[RetryState, Retry]] = []
        async with aclosing(self._first_attempts(states)) as first_attempts:
            async for state, attempt in first_attempts:
                settled = self._settle(state, attempt)
                if isinstance(settled, RecordOutcome):
                    yield settled
                else:
                    retries.append((state, settled))

        if not retries:
            return

        if ordered:
            for state, decision in retries:
                yield await self._resume(state, decision.delay)
            return

        tasks = [asyncio.create_task(self._resume(state, decision.delay)) for state, decision in retries]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _first_attempts(
        self, states: Sequence[RetryState]
    ) -> AsyncIterator[tuple[RetryState, InvocationAttempt]]:
        """Make each record's first attempt of this batch, one admission per remote call."""
        if self.supports_batch:
            async with self._limiter.admit():
                for state in states:
                    state.attempts += 1
                attempts = await self._invoke_batch(states)
            for pair in zip(states, attempts):
                yield pair
            return

        # Sequential fallback in batch order
        self._metrics.record_batch_invocation("sequential")
        for state in states:
            async with self._limiter.admit():
                state.attempts += 1
                attempt = await self._invoke_once(state.record, state.attempts)
            yield state, attempt

    async def _invoke_batch(self, states: Sequence[RetryState]) -> list[InvocationAttempt]:
        records = [state.record for state in states]
        attempt_number = states[0].attempts

        self._metrics.record_batch_invocation("batch")
        started_at = time.time()
        t0 = time.perf_counter()
        try:
            results: list[Any] = await self._transport.invoke_batch([record.payload for record in records])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency = time.perf_counter() - t0
            failure_class = classify_failure(e)
            return [
                InvocationAttempt.failed(attempt_number, started_at, latency, failure_class, f"{type(e).__name__}: {e}")
                for _ in records
            ]

        latency = time.perf_counter() - t0
        if len(results) != len(records):
            logger.error(
                "Batch response size mismatch",
                stage=Stage.BATCH,
                expected=len(records),
                received=len(results),
            )
            error = f"batch returned {len(results)} results for {len(records)} records"
            return [
                InvocationAttempt.failed(attempt_number, started_at, latency, FailureClass.TRANSIENT, error)
                for _ in records
            ]

        attempts = []
        for result in results:
            if isinstance(result, BaseException):
                attempts.append(
                    InvocationAttempt.failed(
                        attempt_number,
                        started_at,
                        latency,
                        classify_failure(result),
                        f"{type(result).__name__}: {result}",
                    )
                )
            else:
                attempts.append(InvocationAttempt.succeeded(attempt_number, started_at, latency, response=result))
        return attempts
