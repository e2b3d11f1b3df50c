"""
Admission Limiter for Remote Invocations.

This module enforces the two externally imposed limits on the endpoint:
- Concurrency cap: at most N invocations in flight at once
- Burst control: a token bucket refilled continuously at a fixed rate

STAGE-AL: Admission
-------------------
AL.1: Token acquisition (slot, then bucket token)
AL.2: Bucket refill
AL.3: Token release
AL.4: Health monitoring

Every invocation attempt holds exactly one AdmissionToken. Tokens are
released through ``admit()`` so that release happens regardless of the
attempt's outcome, including cancellation.
"""

import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dispatch_engine.core.config.constants import AdmissionBackend, Stage
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

# Utilization thresholds for PoolState
DEGRADED_THRESHOLD = 0.7
CRITICAL_THRESHOLD = 0.9

_token_ids = itertools.count(1)


def next_token_id() -> int:
    return next(_token_ids)


class PoolState(str, Enum):
    """Concurrency slot utilization states."""

    HEALTHY = "healthy"          # < 70% of cap
    DEGRADED = "degraded"        # 70-90% of cap
    CRITICAL = "critical"        # 90-100% of cap
    EXHAUSTED = "exhausted"      # At cap


def pool_state_for(in_use: int, cap: int) -> PoolState:
    if cap <= 0 or in_use >= cap:
        return PoolState.EXHAUSTED
    if in_use >= cap * CRITICAL_THRESHOLD:
        return PoolState.CRITICAL
    if in_use >= cap * DEGRADED_THRESHOLD:
        return PoolState.DEGRADED
    return PoolState.HEALTHY


@dataclass
class AdmissionToken:
    """
    One concurrency slot plus one consumed bucket token.

    Attributes:
        token_id: Process-unique token number
        backend: Backing that issued the token (released to the same one)
        acquired_at: Monotonic acquisition time
        waited: Seconds spent in acquire()
        holder: Shared holder id (redis backing only)
    """

    token_id: int
    backend: AdmissionBackend
    acquired_at: float = field(default_factory=time.monotonic)
    waited: float = 0.0
    released: bool = False
    holder: str | None = None


class AdmissionLimiter(ABC):
    """
    Abstract admission limiter.

    The dispatch loop and executor only talk to this interface; where the
    counters live (process memory, Redis) is an implementation detail.
    """

    @abstractmethod
    async def acquire(self) -> AdmissionToken:
        """
        Suspend until a concurrency slot and a bucket token are available.

        Raises:
            ConfigurationError: If the cap or the bucket is configured as zero
        """
        ...

    @abstractmethod
    async def release(self, token: AdmissionToken) -> None:
        """Return the token's concurrency slot. Ignored for released tokens."""
        ...

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        ...

    @asynccontextmanager
    async def admit(self) -> AsyncIterator[AdmissionToken]:
        """
        Acquire a token for the duration of the block.

        Example:
            async with limiter.admit():
                await transport.invoke(payload)
                # token released on exit, even on exceptions
        """
        token = await self.acquire()
        try:
            yield token
        finally:
            await self.release(token)


class LocalAdmissionLimiter(AdmissionLimiter):
    """
    In-process admission limiter for single-node runs.

    STAGE-AL.0: Initialization

    Concurrency slots are an asyncio.Semaphore; the bucket is refilled
    lazily from the injected clock on every acquisition. A slot is taken
    first so that waiters for the bucket are bounded by the cap. There is
    no await between checking and taking a bucket token, which makes the
    take atomic on the event loop.

    Args:
        config: Dispatch configuration
        clock: Monotonic clock used for refills
        metrics: Optional metrics collector
        slots: Semaphore shared with another backing, so that tokens held
            by either count against one cap
        initial_tokens: Starting bucket level (defaults to full)
    """

    def __init__(
        self,
        config: DispatchConfig,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
        slots: asyncio.Semaphore | None = None,
        initial_tokens: float | None = None,
    ):
        self._config = config
        self._clock = clock
        self._metrics = metrics or get_metrics_collector()

        self.concurrency_cap = config.concurrency_cap
        self.capacity = float(config.rate_bucket_capacity)
        self.refill_rate = config.refill_rate_per_second

        self._slots = slots if slots is not None else asyncio.Semaphore(max(self.concurrency_cap, 0))
        self._tokens = self.capacity if initial_tokens is None else min(self.capacity, initial_tokens)
        self._last_refill = clock()

        self._in_use = 0
        self._peak_in_use = 0
        self._issued = 0
        self._released = 0

        logger.info(
            "Admission limiter initialized",
            stage="AL.0",
            backend=AdmissionBackend.LOCAL.value,
            concurrency_cap=self.concurrency_cap,
            bucket_capacity=self.capacity,
            refill_rate_per_second=self.refill_rate,
        )

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak_in_use(self) -> int:
        return self._peak_in_use

    def _refill(self) -> None:
        """
        Mint tokens for the time elapsed since the last refill.

        STAGE-AL.2: Bucket refill
        """
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def _try_take_token(self) -> float:
        """Take one bucket token, or return seconds until the next one is minted."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return 0.0
        return (1 - self._tokens) / self.refill_rate

    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    def get_wait_time(self) -> float:
        """Seconds until a bucket token is available (0 if available now)."""
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.refill_rate

    async def acquire(self) -> AdmissionToken:
        """
        Acquire a concurrency slot and one bucket token.

        STAGE-AL.1: Token acquisition
        """
        self._config.validate_admission()

        started = time.monotonic()
        await self._slots.acquire()
        try:
            while True:
                wait = self._try_take_token()
                if wait == 0.0:
                    break
                logger.debug(
                    "Rate bucket empty, waiting for refill",
                    stage="AL.1.1",
                    wait_seconds=round(wait, 4),
                )
                await asyncio.sleep(wait)
        except BaseException:
            # Cancelled while waiting for the bucket
            self._slots.release()
            raise

        self._in_use += 1
        self._issued += 1
        self._peak_in_use = max(self._peak_in_use, self._in_use)

        waited = time.monotonic() - started
        self._metrics.record_admission_wait(waited)
        self._metrics.set_tokens_in_use(AdmissionBackend.LOCAL.value, self._in_use)

        return AdmissionToken(
            token_id=next_token_id(),
            backend=AdmissionBackend.LOCAL,
            waited=waited,
        )

    async def release(self, token: AdmissionToken) -> None:
        """
        Return the token's concurrency slot.

        STAGE-AL.3: Token release

        Has no suspension point, so it completes even inside a cancelled task.
        """
        if token.released:
            logger.warning("Admission token released twice", stage="AL.3.1", token_id=token.token_id)
            return

        token.released = True
        self._in_use -= 1
        self._released += 1
        self._slots.release()
        self._metrics.set_tokens_in_use(AdmissionBackend.LOCAL.value, self._in_use)

    async def get_stats(self) -> dict[str, Any]:
        """
        Get limiter statistics.

        STAGE-AL.4: Health monitoring
        """
        return {
            "backend": AdmissionBackend.LOCAL.value,
            "in_use": self._in_use,
            "peak_in_use": self._peak_in_use,
            "concurrency_cap": self.concurrency_cap,
            "available_tokens": round(self.available_tokens(), 3),
            "bucket_capacity": self.capacity,
            "issued": self._issued,
            "released": self._released,
            "state": pool_state_for(self._in_use, self.concurrency_cap).value,
        }


def create_admission_limiter(
    config: DispatchConfig,
    redis_client=None,
    metrics: MetricsCollector | None = None,
) -> AdmissionLimiter:
    """
    Build the limiter selected by ``config.admission_backend``.

    Args:
        config: Dispatch configuration
        redis_client: Optional redis.asyncio client (redis backend only)
        metrics: Optional metrics collector

    Returns:
        AdmissionLimiter: Local or Redis-backed limiter
    """
    if config.admission_backend is AdmissionBackend.REDIS:
        # Lazy import to avoid loading redis.asyncio for local runs
        from dispatch_engine.core.resilience.redis_admission_limiter import RedisAdmissionLimiter

        return RedisAdmissionLimiter(config, redis_client=redis_client, metrics=metrics)

    logger.debug("Using local admission limiter", stage=Stage.ADMISSION)
    return LocalAdmissionLimiter(config, metrics=metrics)
