"""
Outcome Aggregator

Accumulates one terminal outcome per record into an OutcomeSummary.

Record tasks report from the event loop, while callers may read stats from
other threads (metrics exporters, signal handlers), so mutation is guarded
by a threading.Lock. No report path awaits while holding it.
"""

import bisect
import threading
from dataclasses import dataclass, field
from typing import Any

from dispatch_engine.core.config.constants import LATENCY_BUCKETS, Stage, TerminalStatus
from dispatch_engine.core.exceptions import AggregatorClosedError, DuplicateOutcomeError
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.core.models import RecordOutcome
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)


@dataclass
class OutcomeSummary:
    """
    Aggregate result of a dispatch run.

    ``failed`` counts both fatal and retry-exhausted records; malformed
    source entries are included in ``failed_fatal`` and also counted in
    ``malformed``. ``retried`` counts records that needed more than one
    attempt. ``duplicates_skipped`` counts source entries whose id was
    already pulled in the run; they get no outcome and are not in ``total``.
    """

    total: int = 0
    succeeded: int = 0
    failed_fatal: int = 0
    failed_retry_exhausted: int = 0
    cancelled: int = 0
    malformed: int = 0
    retried: int = 0
    total_attempts: int = 0
    throttled_attempts: int = 0
    transient_attempts: int = 0
    latency_sum: float = 0.0
    latency_count: int = 0
    latency_histogram: dict[str, int] = field(
        default_factory=lambda: {_bucket_label(b): 0 for b in (*LATENCY_BUCKETS, float("inf"))}
    )
    outcomes: dict[str, RecordOutcome] = field(default_factory=dict)
    cancelled_run: bool = False
    source_error: str | None = None
    duplicates_skipped: int = 0

    @property
    def failed(self) -> int:
        return self.failed_fatal + self.failed_retry_exhausted

    @property
    def accounted(self) -> int:
        return self.succeeded + self.failed + self.cancelled

    @property
    def mean_latency(self) -> float | None:
        if not self.latency_count:
            return None
        return self.latency_sum / self.latency_count

    def status_of(self, record_id: str) -> TerminalStatus | None:
        outcome = self.outcomes.get(record_id)
        return outcome.status if outcome else None

    def to_dict(self, include_outcomes: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_fatal": self.failed_fatal,
            "failed_retry_exhausted": self.failed_retry_exhausted,
            "cancelled": self.cancelled,
            "malformed": self.malformed,
            "retried": self.retried,
            "total_attempts": self.total_attempts,
            "throttled_attempts": self.throttled_attempts,
            "transient_attempts": self.transient_attempts,
            "mean_latency_seconds": self.mean_latency,
            "latency_histogram": dict(self.latency_histogram),
            "cancelled_run": self.cancelled_run,
            "source_error": self.source_error,
            "duplicates_skipped": self.duplicates_skipped,
        }
        if include_outcomes:
            data["outcomes"] = [outcome.to_dict() for outcome in self.outcomes.values()]
        return data


def _bucket_label(upper_bound: float) -> str:
    return "+Inf" if upper_bound == float("inf") else f"le_{upper_bound:g}"


class OutcomeAggregator:
    """
    Thread-safe accumulator of terminal outcomes.

    STAGE-5: Aggregation

    Usage:
        aggregator = OutcomeAggregator()
        aggregator.report(outcome)          # exactly once per record
        summary = aggregator.finalize()     # once, after the run
    """

    def __init__(self, keep_outcomes: bool = True, metrics: MetricsCollector | None = None):
        self._keep_outcomes = keep_outcomes
        self._metrics = metrics or get_metrics_collector()
        self._lock = threading.Lock()
        self._summary = OutcomeSummary()
        self._seen: set[str] = set()
        self._finalized = False

    def report(self, outcome: RecordOutcome) -> None:
        """
        Record a terminal outcome.

        STAGE-5.1: Outcome report

        Raises:
            DuplicateOutcomeError: If the record already has an outcome
            AggregatorClosedError: If finalize() was already called
        """
        with self._lock:
            if self._finalized:
                raise AggregatorClosedError(
                    "Outcome reported after finalize()", record_id=outcome.record_id
                )
            if outcome.record_id in self._seen:
                raise DuplicateOutcomeError(
                    "Record already has a terminal outcome",
                    record_id=outcome.record_id,
                    details={"status": outcome.status.value},
                )
            self._seen.add(outcome.record_id)
            self._apply(outcome)

        self._metrics.record_terminal(outcome.status.value)
        logger.debug(
            "Terminal outcome recorded",
            stage=Stage.AGGREGATION,
            record_id=outcome.record_id,
            status=outcome.status.value,
            attempts=outcome.attempts,
        )

    def _apply(self, outcome: RecordOutcome) -> None:
        summary = self._summary
        summary.total += 1

        if outcome.status is TerminalStatus.SUCCEEDED:
            summary.succeeded += 1
        elif outcome.status is TerminalStatus.FAILED_FATAL:
            summary.failed_fatal += 1
        elif outcome.status is TerminalStatus.FAILED_RETRY_EXHAUSTED:
            summary.failed_retry_exhausted += 1
        elif outcome.status is TerminalStatus.CANCELLED:
            summary.cancelled += 1

        if outcome.malformed:
            summary.malformed += 1
        if outcome.attempts > 1:
            summary.retried += 1

        summary.total_attempts += outcome.attempts
        summary.throttled_attempts += outcome.throttled
        summary.transient_attempts += outcome.transient

        for latency in outcome.latencies:
            summary.latency_sum += latency
            summary.latency_count += 1
            index = bisect.bisect_left(LATENCY_BUCKETS, latency)
            bound = LATENCY_BUCKETS[index] if index < len(LATENCY_BUCKETS) else float("inf")
            summary.latency_histogram[_bucket_label(bound)] += 1

        if self._keep_outcomes:
            summary.outcomes[outcome.record_id] = outcome

    def has_outcome(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._seen

    def mark_cancelled_run(self) -> None:
        with self._lock:
            self._summary.cancelled_run = True

    def set_source_error(self, error: str) -> None:
        with self._lock:
            self._summary.source_error = error

    def record_duplicate(self) -> None:
        with self._lock:
            self._summary.duplicates_skipped += 1

    def snapshot(self) -> dict[str, Any]:
        """Counts so far, safe to call while the run is in progress."""
        with self._lock:
            return self._summary.to_dict()

    def finalize(self) -> OutcomeSummary:
        """
        Close the aggregator and return the summary.

        STAGE-5.2: Finalize

        Taking the lock makes every earlier report visible to the caller.
        """
        with self._lock:
            self._finalized = True
            summary = self._summary

        logger.info(
            "Outcome summary finalized",
            stage=Stage.AGGREGATION,
            total=summary.total,
            succeeded=summary.succeeded,
            failed=summary.failed,
            cancelled=summary.cancelled,
            retried=summary.retried,
            duplicates_skipped=summary.duplicates_skipped,
        )
        return summary
