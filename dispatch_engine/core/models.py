"""
Record and Outcome Models

Units of work and their per-record bookkeeping.

Lifecycle:
    Record (from Source) -> RetryState (one per record task)
        -> InvocationAttempt (one per attempt, discarded after the decision)
        -> RecordOutcome (terminal, handed to the OutcomeAggregator)
"""

import time
from dataclasses import dataclass, field
from typing import Any

from dispatch_engine.core.config.constants import (
    AttemptOutcome,
    FailureClass,
    TerminalStatus,
)


@dataclass(frozen=True)
class Record:
    """
    Immutable unit of work.

    Attributes:
        record_id: Unique identifier (idempotency / dedup key)
        payload: Opaque payload bytes handed to the transport
        sequence: Position in the source, for ordering-sensitive consumers
    """

    record_id: str
    payload: bytes
    sequence: int = 0


@dataclass(frozen=True)
class MalformedRecord:
    """
    Source entry that could not be parsed.

    Reported as a fatal terminal outcome without any invocation attempt.
    """

    record_id: str
    sequence: int
    reason: str


@dataclass
class InvocationAttempt:
    """
    One remote call for one record.

    Attributes:
        attempt_number: 1-based attempt index
        started_at: Wall-clock start (epoch seconds)
        outcome: Success, retryable failure or fatal failure
        failure_class: Classification when the attempt failed
        latency: Call duration in seconds
        error: Error text when the attempt failed
    """

    attempt_number: int
    started_at: float = field(default_factory=time.time)
    outcome: AttemptOutcome | None = None
    failure_class: FailureClass | None = None
    latency: float = 0.0
    error: str | None = None
    response: Any = None

    @classmethod
    def succeeded(cls, attempt_number: int, started_at: float, latency: float, response: Any = None) -> "InvocationAttempt":
        return cls(
            attempt_number=attempt_number,
            started_at=started_at,
            outcome=AttemptOutcome.SUCCESS,
            latency=latency,
            response=response,
        )

    @classmethod
    def failed(
        cls,
        attempt_number: int,
        started_at: float,
        latency: float,
        failure_class: FailureClass,
        error: str,
    ) -> "InvocationAttempt":
        outcome = (
            AttemptOutcome.RETRYABLE_FAILURE if failure_class.retryable else AttemptOutcome.FATAL_FAILURE
        )
        return cls(
            attempt_number=attempt_number,
            started_at=started_at,
            outcome=outcome,
            failure_class=failure_class,
            latency=latency,
            error=error,
        )


@dataclass
class RetryState:
    """
    Per-record attempt bookkeeping, owned by the record's task.

    Kept outside the executor so that a cancelled task can still report how
    far the record got.
    """

    record: Record
    attempts: int = 0
    latencies: list[float] = field(default_factory=list)
    throttled: int = 0
    transient: int = 0
    last_failure: FailureClass | None = None
    last_error: str | None = None

    def record_attempt(self, attempt: InvocationAttempt) -> None:
        self.latencies.append(attempt.latency)
        if attempt.failure_class is FailureClass.THROTTLED:
            self.throttled += 1
        elif attempt.failure_class is FailureClass.TRANSIENT:
            self.transient += 1
        if attempt.failure_class is not None:
            self.last_failure = attempt.failure_class
            self.last_error = attempt.error


@dataclass(frozen=True)
class RecordOutcome:
    """Terminal classification of one record."""

    record_id: str
    status: TerminalStatus
    attempts: int = 0
    latencies: tuple[float, ...] = ()
    throttled: int = 0
    transient: int = 0
    failure_class: FailureClass | None = None
    error: str | None = None
    response: Any = None
    malformed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is TerminalStatus.SUCCEEDED

    @classmethod
    def from_state(
        cls,
        state: RetryState,
        status: TerminalStatus,
        response: Any = None,
    ) -> "RecordOutcome":
        return cls(
            record_id=state.record.record_id,
            status=status,
            attempts=state.attempts,
            latencies=tuple(state.latencies),
            throttled=state.throttled,
            transient=state.transient,
            failure_class=None if status is TerminalStatus.SUCCEEDED else state.last_failure,
            error=None if status is TerminalStatus.SUCCEEDED else state.last_error,
            response=response,
        )

    @classmethod
    def cancelled(cls, state: RetryState) -> "RecordOutcome":
        return cls(
            record_id=state.record.record_id,
            status=TerminalStatus.CANCELLED,
            attempts=state.attempts,
            latencies=tuple(state.latencies),
            throttled=state.throttled,
            transient=state.transient,
            failure_class=state.last_failure,
            error=state.last_error,
        )

    @classmethod
    def rejected(cls, malformed: MalformedRecord) -> "RecordOutcome":
        return cls(
            record_id=malformed.record_id,
            status=TerminalStatus.FAILED_FATAL,
            failure_class=FailureClass.FATAL,
            error=malformed.reason,
            malformed=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "error": self.error,
            "malformed": self.malformed,
        }
