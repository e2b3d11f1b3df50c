"""
Retry Policy

Stateless retry decisions with exponential backoff.

Algorithm:
    - delay = base_delay * 2^attempt_number
    - optionally capped at max_retry_delay
    - optionally jittered: delay * uniform(0.5, 1.0)
    - GiveUp once attempt_number >= max_retries, or at once for FATAL

Example (base_delay=100ms, no jitter):
    attempt 1: 200ms
    attempt 2: 400ms
    attempt 3: 800ms

The executor releases the admission token before sleeping for the delay and
reacquires one for the next attempt, so retries compete for capacity like
fresh records.
"""

import random
from dataclasses import dataclass

from dispatch_engine.core.config.constants import JITTER_HIGH, JITTER_LOW, FailureClass
from dispatch_engine.core.config.dispatch_config import DispatchConfig


@dataclass(frozen=True)
class Retry:
    """Retry after ``delay`` seconds."""

    delay: float


@dataclass(frozen=True)
class GiveUp:
    """Stop retrying; the record is terminal."""

    reason: str


RetryDecision = Retry | GiveUp


def compute_delay(
    attempt_number: int,
    config: DispatchConfig,
    rng: random.Random | None = None,
) -> float:
    """
    Backoff delay in seconds before the attempt after ``attempt_number``.

    Args:
        attempt_number: 1-based number of the attempt that just failed
        config: Dispatch configuration
        rng: Random source for jitter (module random when None)
    """
    delay = config.base_retry_delay_seconds * (2 ** attempt_number)

    cap = config.max_retry_delay_seconds
    if cap is not None:
        delay = min(delay, cap)

    if config.jitter:
        delay *= (rng or random).uniform(JITTER_LOW, JITTER_HIGH)

    return delay


def decide(
    attempt_number: int,
    classification: FailureClass,
    config: DispatchConfig,
    rng: random.Random | None = None,
) -> RetryDecision:
    """
    Decide whether a failed attempt is retried.

    Args:
        attempt_number: 1-based number of the attempt that just failed
        classification: Failure class of that attempt
        config: Dispatch configuration
        rng: Random source for jitter

    Returns:
        Retry(delay) or GiveUp(reason)
    """
    if classification is FailureClass.FATAL:
        return GiveUp("fatal failure")

    if attempt_number >= config.max_retries:
        return GiveUp(f"retries exhausted after {attempt_number} attempts")

    return Retry(compute_delay(attempt_number, config, rng))


class RetryPolicy:
    """
    Binds ``decide`` to one configuration and random source.

    Holds no per-record state; the same instance serves every record task.
    """

    def __init__(self, config: DispatchConfig, rng: random.Random | None = None):
        self._config = config
        self._rng = rng or random.Random()

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    def decide(self, attempt_number: int, classification: FailureClass) -> RetryDecision:
        return decide(attempt_number, classification, self._config, self._rng)

    def calculate_backoff_delay(self, attempt_number: int) -> float:
        return compute_delay(attempt_number, self._config, self._rng)
