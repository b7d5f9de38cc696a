"""
Rotation and failover across several upstream API keys.

The pool spreads calls to the generative image API over every configured
key and keeps a key that just hit a rate limit or was rejected out of
normal selection for a cooldown window.

Shared state
------------
Both pieces of mutable state live in the backing store so that every
service instance sees the same rotation and the same quarantine:

- ``api_key_counter``: a counter advanced with ``INCR`` on every
  selection; ``(counter - 1) % key_count`` is the round-robin start index.
- ``failed_api_keys``: a sorted set whose members are key fingerprints and
  whose scores are each key's own cooldown expiry (epoch seconds).  A key
  is quarantined while its score lies in the future.  Keeping the expiry
  per member means marking one key failed never extends or shortens the
  cooldown of another.

Raw keys are never written to the store; members are truncated SHA-256
fingerprints, and log events carry a masked prefix only.

Degraded mode
-------------
Without a backing store (or when it raises), selection falls back to a
uniformly random key, ``mark_failed`` does nothing and statistics report
no failures.
"""

import collections.abc
import dataclasses
import hashlib
import random
import time

import redis.asyncio
import redis.exceptions
import structlog

logger = structlog.get_logger()

ROUND_ROBIN_COUNTER_KEY = "api_key_counter"
FAILED_KEYS_SET_KEY = "failed_api_keys"

DEFAULT_FAILURE_COOLDOWN_SECONDS = 60

_FINGERPRINT_LENGTH = 16
_MASKED_PREFIX_LENGTH = 10


def parse_api_keys(multi_value: str | None, single_value: str | None) -> tuple[str, ...]:
    """
    Parse the configured credentials.

    The comma-delimited ``multi_value`` wins when it yields at least one
    key; otherwise ``single_value`` is used.  Whitespace around each key is
    stripped and empty entries are dropped.
    """
    if multi_value:
        parsed_keys = tuple(key.strip() for key in multi_value.split(",") if key.strip())
        if parsed_keys:
            return parsed_keys

    if single_value and single_value.strip():
        return (single_value.strip(),)

    return ()


def mask_api_key(api_key: str) -> str:
    """Return a log-safe representation of ``api_key``."""
    return f"{api_key[:_MASKED_PREFIX_LENGTH]}..."


def _fingerprint(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:_FINGERPRINT_LENGTH]


@dataclasses.dataclass(frozen=True)
class ApiKeyPoolStatistics:
    total_keys: int
    failed_keys: int
    counter: int


class ApiKeyPool:
    """
    Round-robin key selection with per-key cooldown quarantine.

    Args:
        api_keys: The configured keys, in rotation order.  Immutable for the
            lifetime of the pool.
        redis_client: An ``redis.asyncio.Redis`` client created with
            ``decode_responses=True``, or ``None`` for degraded mode.
        failure_cooldown_seconds: How long ``mark_failed`` keeps a key out
            of normal selection.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        api_keys: collections.abc.Sequence[str],
        redis_client: redis.asyncio.Redis | None,
        failure_cooldown_seconds: int = DEFAULT_FAILURE_COOLDOWN_SECONDS,
        clock: collections.abc.Callable[[], float] = time.time,
    ) -> None:
        self._api_keys = tuple(api_keys)
        self._redis = redis_client
        self._failure_cooldown_seconds = failure_cooldown_seconds
        self._clock = clock

    def list_keys(self) -> tuple[str, ...]:
        return self._api_keys

    @property
    def key_count(self) -> int:
        return len(self._api_keys)

    async def _quarantined_fingerprints(self) -> set[str]:
        """Return fingerprints whose cooldown has not elapsed, pruning the rest."""
        now = self._clock()
        async with self._redis.pipeline(transaction=False) as pipeline:
            pipeline.zremrangebyscore(FAILED_KEYS_SET_KEY, "-inf", now)
            pipeline.zrangebyscore(FAILED_KEYS_SET_KEY, f"({now}", "+inf")
            _, active_fingerprints = await pipeline.execute()
        return set(active_fingerprints)

    async def next_key(self) -> str | None:
        """
        Select a key for a new upstream call.

        Advances the shared counter and probes forward from the round-robin
        index for the first key not under cooldown.  When every key is
        quarantined, the round-robin choice is returned anyway since its
        cooldown may be about to lapse.

        Returns:
            A key, or ``None`` when no keys are configured.
        """
        if not self._api_keys:
            logger.error("api_keys_not_configured")
            return None

        if self._redis is None:
            return random.choice(self._api_keys)

        try:
            counter = await self._redis.incr(ROUND_ROBIN_COUNTER_KEY)
            quarantined_fingerprints = await self._quarantined_fingerprints()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "api_key_pool_store_unavailable",
                operation="next_key",
                error=str(store_error),
            )
            return random.choice(self._api_keys)

        start_index = (counter - 1) % len(self._api_keys)
        for offset in range(len(self._api_keys)):
            candidate_key = self._api_keys[(start_index + offset) % len(self._api_keys)]
            if _fingerprint(candidate_key) not in quarantined_fingerprints:
                return candidate_key

        logger.warning("all_api_keys_quarantined", key_count=len(self._api_keys))
        return self._api_keys[start_index]

    async def alternative_key(self, exclude_key: str) -> str | None:
        """
        Select a replacement for ``exclude_key``, preferring keys not under
        cooldown.

        Returns:
            A key different from ``exclude_key``, or ``None`` when the pool
            holds at most one key.
        """
        if len(self._api_keys) <= 1:
            return None

        remaining_keys = [api_key for api_key in self._api_keys if api_key != exclude_key]
        if not remaining_keys:
            return None

        if self._redis is None:
            return random.choice(remaining_keys)

        try:
            quarantined_fingerprints = await self._quarantined_fingerprints()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "api_key_pool_store_unavailable",
                operation="alternative_key",
                error=str(store_error),
            )
            return random.choice(remaining_keys)

        for candidate_key in remaining_keys:
            if _fingerprint(candidate_key) not in quarantined_fingerprints:
                return candidate_key

        return remaining_keys[0]

    async def mark_failed(self, api_key: str) -> None:
        """Quarantine ``api_key`` for the configured cooldown."""
        if self._redis is None:
            return

        cooldown_expires_at = self._clock() + self._failure_cooldown_seconds
        try:
            await self._redis.zadd(FAILED_KEYS_SET_KEY, {_fingerprint(api_key): cooldown_expires_at})
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "api_key_pool_store_unavailable",
                operation="mark_failed",
                error=str(store_error),
            )
            return

        logger.warning(
            "api_key_quarantined",
            api_key=mask_api_key(api_key),
            cooldown_seconds=self._failure_cooldown_seconds,
        )

    async def statistics(self) -> ApiKeyPoolStatistics:
        if self._redis is None:
            return ApiKeyPoolStatistics(total_keys=len(self._api_keys), failed_keys=0, counter=0)

        try:
            quarantined_fingerprints = await self._quarantined_fingerprints()
            counter = await self._redis.get(ROUND_ROBIN_COUNTER_KEY)
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "api_key_pool_store_unavailable",
                operation="statistics",
                error=str(store_error),
            )
            return ApiKeyPoolStatistics(total_keys=len(self._api_keys), failed_keys=0, counter=0)

        configured_fingerprints = {_fingerprint(api_key) for api_key in self._api_keys}
        return ApiKeyPoolStatistics(
            total_keys=len(self._api_keys),
            failed_keys=len(quarantined_fingerprints & configured_fingerprints),
            counter=int(counter or 0),
        )
