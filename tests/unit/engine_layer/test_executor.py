"""
Unit Tests for InvocationExecutor

Tests failure classification, retry sequencing, token release during
backoff and batch semantics.
"""

import asyncio

import pytest

from dispatch_engine.core.config.constants import FailureClass, TerminalStatus
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.exceptions import FatalError, ThrottledError, TransientError
from dispatch_engine.core.models import RetryState
from dispatch_engine.core.resilience.admission_limiter import LocalAdmissionLimiter
from dispatch_engine.core.resilience.retry_policy import RetryPolicy
from dispatch_engine.engine.executor import InvocationExecutor, classify_failure
from tests.test_fixtures import BlockingTransport, RecordFactory, ScriptedBatchTransport, ScriptedTransport


def build_executor(transport, config, metrics):
    limiter = LocalAdmissionLimiter(config, metrics=metrics)
    return InvocationExecutor(transport, limiter, RetryPolicy(config), metrics=metrics), limiter


async def collect(agen):
    return [outcome async for outcome in agen]


@pytest.mark.unit
class TestClassifyFailure:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (ThrottledError("slow down"), FailureClass.THROTTLED),
            (TransientError("blip"), FailureClass.TRANSIENT),
            (FatalError("bad payload"), FailureClass.FATAL),
            (TimeoutError(), FailureClass.TRANSIENT),
            (asyncio.TimeoutError(), FailureClass.TRANSIENT),
            (ConnectionResetError(), FailureClass.TRANSIENT),
            (ValueError("unexpected"), FailureClass.FATAL),
        ],
    )
    def test_classification(self, exc, expected):
        assert classify_failure(exc) is expected


@pytest.mark.unit
class TestExecuteSingleRecord:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = ScriptedTransport(default={"status": "stored"})
        executor, limiter = build_executor(transport, fast_config, mock_metrics)

        outcome = await executor.execute(record)

        assert outcome.status is TerminalStatus.SUCCEEDED
        assert outcome.attempts == 1
        assert outcome.response == {"status": "stored"}
        assert len(outcome.latencies) == 1
        assert limiter.in_use == 0

    @pytest.mark.asyncio
    async def test_always_transient_exhausts_after_max_retries(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = ScriptedTransport(scripts={record.payload: [TransientError("timeout")] * 10})
        executor, limiter = build_executor(transport, fast_config.with_overrides(max_retries=3), mock_metrics)

        outcome = await executor.execute(record)

        assert outcome.status is TerminalStatus.FAILED_RETRY_EXHAUSTED
        assert outcome.attempts == 3
        assert outcome.transient == 3
        assert outcome.failure_class is FailureClass.TRANSIENT
        assert transport.call_counts[record.payload] == 3
        assert mock_metrics.record_attempt.call_count == 3
        assert mock_metrics.record_retry_scheduled.call_count == 2
        assert limiter.in_use == 0

    @pytest.mark.asyncio
    async def test_fatal_fails_without_retry(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = ScriptedTransport(scripts={record.payload: [FatalError("schema violation")]})
        executor, _ = build_executor(transport, fast_config, mock_metrics)

        outcome = await executor.execute(record)

        assert outcome.status is TerminalStatus.FAILED_FATAL
        assert outcome.attempts == 1
        assert "schema violation" in outcome.error
        mock_metrics.record_retry_scheduled.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_exception_is_fatal(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = ScriptedTransport(scripts={record.payload: [KeyError("missing")]})
        executor, _ = build_executor(transport, fast_config, mock_metrics)

        outcome = await executor.execute(record)

        assert outcome.status is TerminalStatus.FAILED_FATAL
        assert outcome.error.startswith("KeyError")

    @pytest.mark.asyncio
    async def test_throttled_then_success(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = ScriptedTransport(scripts={record.payload: [ThrottledError("429"), ThrottledError("429"), "ok"]})
        executor, _ = build_executor(transport, fast_config, mock_metrics)

        outcome = await executor.execute(record)

        assert outcome.status is TerminalStatus.SUCCEEDED
        assert outcome.attempts == 3
        assert outcome.throttled == 2
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_zero_max_retries_means_one_attempt(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = ScriptedTransport(scripts={record.payload: [ThrottledError("429"), "ok"]})
        executor, _ = build_executor(transport, fast_config.with_overrides(max_retries=0), mock_metrics)

        outcome = await executor.execute(record)

        assert outcome.status is TerminalStatus.FAILED_RETRY_EXHAUSTED
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_token_released_during_backoff(self, fast_config, mock_metrics):
        slow, fast = RecordFactory.batch(2)
        transport = ScriptedTransport(scripts={slow.payload: [TransientError("blip")]})
        config = fast_config.with_overrides(concurrency_cap=1, base_retry_delay_ms=25)
        executor, _ = build_executor(transport, config, mock_metrics)

        first, second = await asyncio.gather(executor.execute(slow), executor.execute(fast))

        # The second record runs while the first is backing off
        assert transport.calls == [slow.payload, fast.payload, slow.payload]
        assert first.attempts == 2
        assert second.attempts == 1

    @pytest.mark.asyncio
    async def test_cancellation_releases_token_and_keeps_state(self, fast_config, mock_metrics):
        record = RecordFactory.record(0)
        transport = BlockingTransport()
        executor, limiter = build_executor(transport, fast_config, mock_metrics)
        state = RetryState(record)

        task = asyncio.create_task(executor.execute(record, state))
        await asyncio.wait_for(transport.started.wait(), timeout=1.0)
        assert limiter.in_use == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.in_use == 0
        assert state.attempts == 1


@pytest.mark.unit
class TestExecuteBatch:
    @pytest.mark.asyncio
    async def test_partial_batch_failure_is_independent(self, fast_config, mock_metrics):
        ok, flaky, bad = RecordFactory.batch(3)
        transport = ScriptedBatchTransport(
            scripts={flaky.payload: [TransientError("blip")], bad.payload: [FatalError("invalid")]}
        )
        executor, limiter = build_executor(transport, fast_config, mock_metrics)
        states = [RetryState(r) for r in (ok, flaky, bad)]

        outcomes = await collect(executor.execute_batch(states))
        by_id = {o.record_id: o for o in outcomes}

        # Terminal batch-mates are reported before the retried record
        assert [o.record_id for o in outcomes[:2]] == [ok.record_id, bad.record_id]
        assert by_id[ok.record_id].status is TerminalStatus.SUCCEEDED
        assert by_id[bad.record_id].status is TerminalStatus.FAILED_FATAL
        assert by_id[flaky.record_id].status is TerminalStatus.SUCCEEDED
        assert by_id[flaky.record_id].attempts == 2
        assert len(transport.batches) == 1
        assert limiter.in_use == 0
        mock_metrics.record_batch_invocation.assert_called_once_with("batch")

    @pytest.mark.asyncio
    async def test_whole_batch_failure_retries_each_record(self, fast_config, mock_metrics):
        records = RecordFactory.batch(3)
        transport = ScriptedBatchTransport(batch_error=ThrottledError("429"))
        executor, _ = build_executor(transport, fast_config, mock_metrics)

        outcomes = await collect(executor.execute_batch([RetryState(r) for r in records]))

        assert len(outcomes) == 3
        assert all(o.status is TerminalStatus.SUCCEEDED for o in outcomes)
        assert all(o.attempts == 2 and o.throttled == 1 for o in outcomes)

    @pytest.mark.asyncio
    async def test_ordered_retries_follow_batch_order(self, fast_config, mock_metrics):
        records = RecordFactory.batch(4)
        transport = ScriptedBatchTransport(
            scripts={records[1].payload: [TransientError("x")], records[3].payload: [TransientError("y")]}
        )
        executor, _ = build_executor(transport, fast_config, mock_metrics)

        outcomes = await collect(executor.execute_batch([RetryState(r) for r in records], ordered=True))

        assert [o.record_id for o in outcomes] == [r.record_id for r in records[0::2] + records[1::2]]
        assert transport.calls[-2:] == [records[1].payload, records[3].payload]

    @pytest.mark.asyncio
    async def test_transport_without_batch_support_runs_sequentially(self, fast_config, mock_metrics):
        records = RecordFactory.batch(3)
        transport = ScriptedTransport()
        executor, limiter = build_executor(transport, fast_config, mock_metrics)

        assert executor.supports_batch is False
        outcomes = await collect(executor.execute_batch([RetryState(r) for r in records]))

        assert [o.record_id for o in outcomes] == [r.record_id for r in records]
        assert transport.calls == [r.payload for r in records]
        assert transport.peak_in_flight == 1
        assert limiter.peak_in_use == 1
        mock_metrics.record_batch_invocation.assert_called_once_with("sequential")

    @pytest.mark.asyncio
    async def test_sequential_fallback_takes_one_token_per_call(self, fake_clock, mock_metrics):
        config = DispatchConfig(
            concurrency_cap=1,
            rate_bucket_capacity=1,
            refill_tokens=1,
            refill_interval_seconds=3600.0,
            jitter=False,
        )
        limiter = LocalAdmissionLimiter(config, clock=fake_clock, metrics=mock_metrics)
        transport = ScriptedTransport()
        executor = InvocationExecutor(transport, limiter, RetryPolicy(config), metrics=mock_metrics)
        records = RecordFactory.batch(10)
        outcomes = []

        async def drain():
            async for outcome in executor.execute_batch([RetryState(r) for r in records], ordered=True):
                outcomes.append(outcome)

        # One bucket token and a frozen clock: only the first record goes out
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(drain(), timeout=0.05)

        assert transport.calls == [records[0].payload]
        assert [o.record_id for o in outcomes] == [records[0].record_id]
        assert limiter.in_use == 0

    @pytest.mark.asyncio
    async def test_batch_transport_takes_one_token_per_batch(self, fake_clock, mock_metrics):
        config = DispatchConfig(concurrency_cap=1, rate_bucket_capacity=1, refill_tokens=1, refill_interval_seconds=3600.0)
        limiter = LocalAdmissionLimiter(config, clock=fake_clock, metrics=mock_metrics)
        transport = ScriptedBatchTransport()
        executor = InvocationExecutor(transport, limiter, RetryPolicy(config), metrics=mock_metrics)
        records = RecordFactory.batch(5)

        outcomes = await asyncio.wait_for(
            collect(executor.execute_batch([RetryState(r) for r in records])), timeout=1.0
        )

        assert len(outcomes) == 5
        assert len(transport.batches) == 1
        assert limiter.available_tokens() == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_short_batch_response_is_transient(self, fast_config, mock_metrics):
        class ShortBatchTransport(ScriptedBatchTransport):
            async def invoke_batch(self, payloads):
                results = await super().invoke_batch(payloads)
                return results[:-1]

        records = RecordFactory.batch(2)
        transport = ShortBatchTransport()
        executor, _ = build_executor(transport, fast_config.with_overrides(max_retries=1), mock_metrics)

        outcomes = await collect(executor.execute_batch([RetryState(r) for r in records]))

        assert all(o.status is TerminalStatus.FAILED_RETRY_EXHAUSTED for o in outcomes)
        assert all(o.failure_class is FailureClass.TRANSIENT for o in outcomes)

    @pytest.mark.asyncio
    async def test_empty_batch_yields_nothing(self, fast_config, mock_metrics):
        executor, limiter = build_executor(ScriptedBatchTransport(), fast_config, mock_metrics)

        assert await collect(executor.execute_batch([])) == []
        assert limiter.peak_in_use == 0
