"""
Dispatch Configuration

Immutable runtime configuration handed to every engine component. Built from
Settings (environment) or directly in code and tests.
"""

from dataclasses import dataclass, replace

from dispatch_engine.core.config.constants import (
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_BUFFER_CAPACITY,
    DEFAULT_BUFFER_PARTITIONS,
    DEFAULT_CONCURRENCY_CAP,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RATE_BUCKET_CAPACITY,
    DEFAULT_REFILL_INTERVAL_SECONDS,
    DEFAULT_REFILL_TOKENS,
    IN_FLIGHT_CEILING_FACTOR,
    AdmissionBackend,
)
from dispatch_engine.core.config.settings import Settings, get_settings
from dispatch_engine.core.exceptions.base import ConfigurationError


@dataclass(frozen=True)
class DispatchConfig:
    """
    Engine configuration parameters.

    Attributes:
        concurrency_cap: Maximum concurrently held admission tokens
        rate_bucket_capacity: Token bucket capacity (burst size)
        refill_tokens: Tokens minted per refill interval
        refill_interval_seconds: Length of the refill interval
        in_flight_ceiling: Records in flight or awaiting admission (0 = 2x cap)
        max_retries: Attempt number at which the retry policy gives up
        base_retry_delay_ms: Base delay for exponential backoff
        max_retry_delay_ms: Backoff cap (0 = uncapped)
        jitter: Scale delays by uniform [0.5, 1.0]
        decoupling_enabled: Route records through the backpressure buffer
        batch_size: Max records per batch (decoupling mode)
        poll_interval_ms: Batch polling interval (decoupling mode)
        buffer_capacity: Buffered records before enqueue blocks
        buffer_partitions: Partitions when ordering is not required
        ordering_required: Strict FIFO delivery across the buffer
        admission_backend: Where admission counters live
        keep_record_outcomes: Keep per-record outcomes in the summary
    """

    concurrency_cap: int = DEFAULT_CONCURRENCY_CAP
    rate_bucket_capacity: int = DEFAULT_RATE_BUCKET_CAPACITY
    refill_tokens: float = DEFAULT_REFILL_TOKENS
    refill_interval_seconds: float = DEFAULT_REFILL_INTERVAL_SECONDS
    in_flight_ceiling: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    base_retry_delay_ms: int = DEFAULT_BASE_RETRY_DELAY_MS
    max_retry_delay_ms: int = 0
    jitter: bool = True
    decoupling_enabled: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    buffer_capacity: int = DEFAULT_BUFFER_CAPACITY
    buffer_partitions: int = DEFAULT_BUFFER_PARTITIONS
    ordering_required: bool = False
    admission_backend: AdmissionBackend = AdmissionBackend.LOCAL
    keep_record_outcomes: bool = True

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DispatchConfig":
        """Build configuration from environment-backed settings."""
        settings = settings or get_settings()
        return cls(
            concurrency_cap=settings.CONCURRENCY_CAP,
            rate_bucket_capacity=settings.RATE_BUCKET_CAPACITY,
            refill_tokens=settings.REFILL_TOKENS,
            refill_interval_seconds=settings.REFILL_INTERVAL_SECONDS,
            in_flight_ceiling=settings.IN_FLIGHT_CEILING,
            max_retries=settings.MAX_RETRIES,
            base_retry_delay_ms=settings.BASE_RETRY_DELAY_MS,
            max_retry_delay_ms=settings.MAX_RETRY_DELAY_MS,
            jitter=settings.RETRY_JITTER,
            decoupling_enabled=settings.DECOUPLING_ENABLED,
            batch_size=settings.BATCH_SIZE,
            poll_interval_ms=settings.POLL_INTERVAL_MS,
            buffer_capacity=settings.BUFFER_CAPACITY,
            buffer_partitions=settings.BUFFER_PARTITIONS,
            ordering_required=settings.ORDERING_REQUIRED,
            admission_backend=settings.ADMISSION_BACKEND,
            keep_record_outcomes=settings.KEEP_RECORD_OUTCOMES,
        )

    def with_overrides(self, **changes) -> "DispatchConfig":
        return replace(self, **changes)

    @property
    def refill_rate_per_second(self) -> float:
        if self.refill_interval_seconds <= 0:
            return 0.0
        return self.refill_tokens / self.refill_interval_seconds

    @property
    def effective_in_flight_ceiling(self) -> int:
        return self.in_flight_ceiling or self.concurrency_cap * IN_FLIGHT_CEILING_FACTOR

    @property
    def base_retry_delay_seconds(self) -> float:
        return self.base_retry_delay_ms / 1000.0

    @property
    def max_retry_delay_seconds(self) -> float | None:
        return self.max_retry_delay_ms / 1000.0 if self.max_retry_delay_ms else None

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    def validate_admission(self) -> None:
        """
        Check the limiter parameters.

        Raises:
            ConfigurationError: Zero cap, zero bucket or non-positive refill rate
        """
        if self.concurrency_cap <= 0:
            raise ConfigurationError(
                "concurrency_cap must be greater than zero",
                details={"concurrency_cap": self.concurrency_cap},
            )
        if self.rate_bucket_capacity <= 0:
            raise ConfigurationError(
                "rate_bucket_capacity must be greater than zero",
                details={"rate_bucket_capacity": self.rate_bucket_capacity},
            )
        if self.refill_rate_per_second <= 0:
            raise ConfigurationError(
                "refill rate must be positive",
                details={
                    "refill_tokens": self.refill_tokens,
                    "refill_interval_seconds": self.refill_interval_seconds,
                },
            )

    def validate(self) -> None:
        """
        Check the whole configuration before a run starts.

        Raises:
            ConfigurationError: If any parameter is out of range
        """
        self.validate_admission()

        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative", details={"max_retries": self.max_retries})
        if self.base_retry_delay_ms < 0 or self.max_retry_delay_ms < 0:
            raise ConfigurationError(
                "retry delays must not be negative",
                details={
                    "base_retry_delay_ms": self.base_retry_delay_ms,
                    "max_retry_delay_ms": self.max_retry_delay_ms,
                },
            )
        if self.effective_in_flight_ceiling < self.concurrency_cap:
            raise ConfigurationError(
                "in_flight_ceiling must be at least concurrency_cap",
                details={
                    "in_flight_ceiling": self.effective_in_flight_ceiling,
                    "concurrency_cap": self.concurrency_cap,
                },
            )

        if self.decoupling_enabled:
            if self.batch_size <= 0:
                raise ConfigurationError("batch_size must be greater than zero", details={"batch_size": self.batch_size})
            if self.buffer_capacity <= 0:
                raise ConfigurationError(
                    "buffer_capacity must be greater than zero",
                    details={"buffer_capacity": self.buffer_capacity},
                )
            if not self.ordering_required and self.buffer_partitions <= 0:
                raise ConfigurationError(
                    "buffer_partitions must be greater than zero",
                    details={"buffer_partitions": self.buffer_partitions},
                )
