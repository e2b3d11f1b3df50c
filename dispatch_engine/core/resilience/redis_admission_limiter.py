"""
Redis-backed Admission Limiter.

Endpoint limits are usually account-wide rather than per process. This
limiter keeps the token bucket and the set of slot holders in Redis so that
every engine instance draws from the same budget.

MECHANISM OF ACTION:
-------------------
1.  **Atomic admission**: a Lua script purges holders whose lease has
    expired, checks the remaining holders against the cap, refills the
    bucket from the Redis server clock, takes one token and records the
    new holder with its lease expiry in one step. It returns ``[1, 0]``
    when granted, ``[0, wait_ms]`` when the bucket is empty and ``[0, -1]``
    when every slot is held.
2.  **Leases**: holders live in a sorted set scored by expiry time. A
    process that dies while holding a slot loses it once the lease runs
    out, so slots cannot leak permanently.
3.  **Release**: a second script removes the holder. The Redis call is
    shielded so that a cancelled caller still frees the slot.
4.  **Resilience**: Redis calls are retried with tenacity exponential jitter.
    If Redis stays unavailable the limiter falls back to an in-process
    LocalAdmissionLimiter. Both backings share one process-level slot
    semaphore, so tokens still held from Redis count against the cap, and
    the fallback bucket starts empty. Each token records its backend so it
    is released where it was issued.
"""

import asyncio
import time
import uuid
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from dispatch_engine.core.config.constants import (
    ADMISSION_KEY_PREFIX,
    ADMISSION_LEASE_SECONDS,
    AdmissionBackend,
)
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.config.settings import get_settings
from dispatch_engine.core.exceptions import AdmissionBackendError
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.core.resilience.admission_limiter import (
    AdmissionLimiter,
    AdmissionToken,
    LocalAdmissionLimiter,
    next_token_id,
    pool_state_for,
)
from dispatch_engine.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

# Poll interval while every concurrency slot is held elsewhere
SLOT_POLL_SECONDS = 0.01

REDIS_MAX_ATTEMPTS = 3
REDIS_RETRY_MULTIPLIER = 0.05
REDIS_RETRY_MAX = 0.5

ACQUIRE_SCRIPT = """
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local cap = tonumber(ARGV[3])
local lease = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now)
local in_use = redis.call('ZCARD', KEYS[2])
if in_use >= cap then
    return {0, -1}
end

local tokens = tonumber(redis.call('HGET', KEYS[1], 'tokens') or ARGV[1])
local ts = tonumber(redis.call('HGET', KEYS[1], 'ts') or now)
tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)

if tokens < 1 then
    redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
    return {0, math.ceil((1 - tokens) / rate * 1000)}
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens - 1), 'ts', tostring(now))
redis.call('ZADD', KEYS[2], now + lease, ARGV[4])
return {1, 0}
"""

RELEASE_SCRIPT = """
return redis.call('ZREM', KEYS[1], ARGV[1])
"""

redis_retry = retry(
    stop=stop_after_attempt(REDIS_MAX_ATTEMPTS),
    wait=wait_exponential_jitter(multiplier=REDIS_RETRY_MULTIPLIER, max=REDIS_RETRY_MAX),
    retry=retry_if_exception_type(RedisError),
    reraise=True,
)


class RedisAdmissionLimiter(AdmissionLimiter):
    """
    Admission limiter whose counters live in Redis.

    STAGE-AL.0: Initialization (distributed)
    """

    def __init__(
        self,
        config: DispatchConfig,
        redis_client=None,
        key_prefix: str | None = None,
        metrics: MetricsCollector | None = None,
        lease_seconds: float | None = None,
    ):
        self._config = config
        self._metrics = metrics or get_metrics_collector()

        if redis_client is None:
            settings = get_settings()
            redis_client = redis.Redis.from_url(
                settings.redis.REDIS_URL,
                socket_timeout=settings.redis.REDIS_SOCKET_TIMEOUT,
            )
            key_prefix = key_prefix or settings.redis.ADMISSION_KEY_PREFIX
            lease_seconds = lease_seconds or settings.redis.ADMISSION_LEASE_SECONDS
        self._redis = redis_client

        prefix = key_prefix or ADMISSION_KEY_PREFIX
        self._key_bucket = f"{prefix}:bucket"
        self._key_holders = f"{prefix}:holders"
        self._lease_seconds = lease_seconds or ADMISSION_LEASE_SECONDS
        self._instance_id = uuid.uuid4().hex

        # Process-level cap shared by both backings
        self._slots = asyncio.Semaphore(max(config.concurrency_cap, 0))
        self._fallback = LocalAdmissionLimiter(
            config,
            metrics=self._metrics,
            slots=self._slots,
            initial_tokens=0.0,
        )
        self._local_in_use = 0

        logger.info(
            "Admission limiter initialized",
            stage="AL.0",
            backend=AdmissionBackend.REDIS.value,
            concurrency_cap=config.concurrency_cap,
            bucket_capacity=config.rate_bucket_capacity,
            refill_rate_per_second=config.refill_rate_per_second,
            lease_seconds=self._lease_seconds,
            key_prefix=prefix,
        )

    @property
    def in_use(self) -> int:
        """Tokens held by this process (both backings)."""
        return self._local_in_use + self._fallback.in_use

    @redis_retry
    async def _eval_acquire(self, holder: str) -> tuple[int, int]:
        granted, wait_ms = await self._redis.eval(
            ACQUIRE_SCRIPT,
            2,
            self._key_bucket,
            self._key_holders,
            self._config.rate_bucket_capacity,
            self._config.refill_rate_per_second,
            self._config.concurrency_cap,
            holder,
            self._lease_seconds,
        )
        return int(granted), int(wait_ms)

    @redis_retry
    async def _eval_release(self, holder: str) -> int:
        return int(await self._redis.eval(RELEASE_SCRIPT, 1, self._key_holders, holder))

    async def _wait_for_grant(self, holder: str) -> bool:
        """Poll Redis until granted. False means Redis is unavailable."""
        while True:
            try:
                granted, wait_ms = await self._eval_acquire(holder)
            except RedisError as e:
                logger.warning(
                    f"Redis admission failed, using local fallback: {str(e)}",
                    stage="AL.1.FALLBACK",
                    error_type=type(e).__name__,
                )
                self._metrics.record_admission_fallback()
                return False

            if granted:
                return True

            wait = SLOT_POLL_SECONDS if wait_ms < 0 else wait_ms / 1000.0
            await asyncio.sleep(wait)

    async def acquire(self) -> AdmissionToken:
        """
        Acquire a token from the shared budget.

        STAGE-AL.1: Token acquisition (distributed)
        """
        self._config.validate_admission()

        started = time.monotonic()
        token_id = next_token_id()
        holder = f"{self._instance_id}:{token_id}"

        await self._slots.acquire()
        try:
            granted = await self._wait_for_grant(holder)
        except BaseException:
            self._slots.release()
            raise

        if not granted:
            # The fallback takes its slot from the same semaphore
            self._slots.release()
            return await self._fallback.acquire()

        self._local_in_use += 1
        waited = time.monotonic() - started
        self._metrics.record_admission_wait(waited)
        self._metrics.set_tokens_in_use(AdmissionBackend.REDIS.value, self._local_in_use)

        return AdmissionToken(
            token_id=token_id,
            backend=AdmissionBackend.REDIS,
            waited=waited,
            holder=holder,
        )

    async def release(self, token: AdmissionToken) -> None:
        """
        Return the token to the backing that issued it.

        STAGE-AL.3: Token release (distributed)

        Raises:
            AdmissionBackendError: If Redis cannot be updated after retries
        """
        if token.backend is AdmissionBackend.LOCAL:
            await self._fallback.release(token)
            return

        if token.released:
            logger.warning("Admission token released twice", stage="AL.3.1", token_id=token.token_id)
            return

        token.released = True
        self._local_in_use -= 1
        self._slots.release()
        self._metrics.set_tokens_in_use(AdmissionBackend.REDIS.value, self._local_in_use)
        try:
            # Completes even if the releasing task is cancelled meanwhile
            await asyncio.shield(self._eval_release(token.holder))
        except RedisError as e:
            logger.error(
                f"Failed to release shared admission slot: {str(e)}",
                stage="AL.3.ERROR",
                token_id=token.token_id,
            )
            raise AdmissionBackendError.from_exception(e, key=self._key_holders) from e

    async def get_stats(self) -> dict[str, Any]:
        """
        Get shared limiter statistics.

        STAGE-AL.4: Health monitoring
        """
        stats: dict[str, Any] = {
            "backend": AdmissionBackend.REDIS.value,
            "local_in_use": self._local_in_use,
            "concurrency_cap": self._config.concurrency_cap,
            "bucket_capacity": self._config.rate_bucket_capacity,
            "lease_seconds": self._lease_seconds,
            "fallback": await self._fallback.get_stats(),
        }
        try:
            shared_in_use = int(await self._redis.zcard(self._key_holders))
            stats["shared_in_use"] = shared_in_use
            stats["state"] = pool_state_for(shared_in_use, self._config.concurrency_cap).value
        except RedisError as e:
            logger.error(f"Error reading shared admission stats: {str(e)}", stage="AL.4.ERROR")
            stats["error"] = str(e)
        return stats

    async def close(self) -> None:
        await self._redis.aclose()
