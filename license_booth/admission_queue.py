"""
Distributed admission queue in front of the generative image API.

Every service instance shares one queue through the Redis backing store, so
the concurrency ceiling holds across the whole deployment rather than per
process.  The queue keeps two structures:

- a sorted set of **waiting** queue IDs, scored by enqueue time in
  milliseconds, which yields each client's rank for wait estimation;
- a plain set of **in-flight** queue IDs, bounded by the concurrency
  ceiling.

A queue ID is in at most one of the two at any time.  Two string keys hold
per-entry bookkeeping: ``queue_item:<id>`` (expires with the waiting TTL)
and ``processing_time:<id>`` (the admission marker, expiring after the
maximum processing time).  An in-flight ID without a marker is a zombie and
is removed by ``reap_zombies``.

Atomic admission
----------------
``try_admit`` runs a single Lua script that checks the in-flight count
against the ceiling and, only when there is room, moves the ID from the
waiting set into the in-flight set and writes the admission marker.
Without the script, two instances could both read ``ceiling - 1`` and
both admit.  If the script itself errors, a check-then-write fallback is
used; it has a narrow race window and is only a last resort.

Degraded mode
-------------
When no Redis client is configured, or Redis raises, the queue reports the
``disabled`` status and admits every caller.  Availability wins over
fairness: the booth keeps working without its backing store.

Usage in the transform orchestrator::

    async with admission_queue.admission_slot(queue_id):
        outcome = await call_the_upstream_api()
"""

import collections.abc
import contextlib
import dataclasses
import enum
import json
import math
import random
import string
import time

import redis.asyncio
import redis.exceptions
import structlog

import license_booth.exceptions

logger = structlog.get_logger()

WAITING_SET_KEY = "transform_queue"
IN_FLIGHT_SET_KEY = "transform_processing"
QUEUE_ITEM_KEY_PREFIX = "queue_item:"
ADMISSION_MARKER_KEY_PREFIX = "processing_time:"

DEFAULT_MAXIMUM_CONCURRENCY = 100
DEFAULT_QUEUE_ITEM_TTL_SECONDS = 300
DEFAULT_MAXIMUM_PROCESSING_SECONDS = 120
DEFAULT_ESTIMATED_SECONDS_PER_ITEM = 10

_QUEUE_ID_ALPHABET = string.digits + string.ascii_lowercase

# KEYS: in-flight set, waiting set, admission marker
# ARGV: ceiling, queue id, admission time (ms), marker ttl (s)
_ATOMIC_ADMISSION_SCRIPT = """
local in_flight_key = KEYS[1]
local waiting_key = KEYS[2]
local marker_key = KEYS[3]
local ceiling = tonumber(ARGV[1])
local queue_id = ARGV[2]

if redis.call('SCARD', in_flight_key) >= ceiling then
  return 0
end

redis.call('ZREM', waiting_key, queue_id)
redis.call('SADD', in_flight_key, queue_id)
redis.call('SET', marker_key, ARGV[3], 'EX', tonumber(ARGV[4]))
return 1
"""


class QueueEntryStatus(enum.StrEnum):
    """Lifecycle of a stored queue entry."""

    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AdmissionStatus(enum.StrEnum):
    """Status reported to a polling client."""

    WAITING = "waiting"
    PROCESSING = "processing"
    READY = "ready"
    DISABLED = "disabled"


@dataclasses.dataclass(frozen=True)
class QueueStatus:
    """
    Snapshot of one queue ID's standing.

    ``position`` is 1-indexed for display and 0 when the ID is not waiting.
    ``estimated_wait_time`` is in seconds and only meaningful while waiting.
    """

    position: int
    total_in_queue: int
    estimated_wait_time: int
    status: AdmissionStatus
    current_processing: int


@dataclasses.dataclass(frozen=True)
class QueueStatistics:
    queue_size: int
    processing: int


DISABLED_QUEUE_STATUS = QueueStatus(
    position=0,
    total_in_queue=0,
    estimated_wait_time=0,
    status=AdmissionStatus.DISABLED,
    current_processing=0,
)


def generate_queue_id() -> str:
    """Return a fresh queue ID of the form ``q_<milliseconds>_<7 random base36 chars>``."""
    random_suffix = "".join(random.choices(_QUEUE_ID_ALPHABET, k=7))
    return f"q_{int(time.time() * 1000)}_{random_suffix}"


def _queue_item_key(queue_id: str) -> str:
    return f"{QUEUE_ITEM_KEY_PREFIX}{queue_id}"


def _admission_marker_key(queue_id: str) -> str:
    return f"{ADMISSION_MARKER_KEY_PREFIX}{queue_id}"


class AdmissionQueue:
    """
    Fair admission control shared by all service instances through Redis.

    The queue holds no in-process state beyond its configuration: every
    operation reads and writes the backing store, so two instances never
    disagree about who is waiting or in flight.

    Args:
        redis_client: An ``redis.asyncio.Redis`` client created with
            ``decode_responses=True``, or ``None`` to run in bypass mode.
        maximum_concurrency: The admission ceiling.
        queue_item_ttl_seconds: Lifetime of a waiting entry.
        maximum_processing_seconds: Lifetime of the admission marker.
        estimated_seconds_per_item: Display-only per-item wait estimate.
        clock: Returns the current time in epoch seconds.  Injected by
            tests that need to age entries.
    """

    def __init__(
        self,
        redis_client: redis.asyncio.Redis | None,
        maximum_concurrency: int = DEFAULT_MAXIMUM_CONCURRENCY,
        queue_item_ttl_seconds: int = DEFAULT_QUEUE_ITEM_TTL_SECONDS,
        maximum_processing_seconds: int = DEFAULT_MAXIMUM_PROCESSING_SECONDS,
        estimated_seconds_per_item: int = DEFAULT_ESTIMATED_SECONDS_PER_ITEM,
        clock: collections.abc.Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._maximum_concurrency = maximum_concurrency
        self._queue_item_ttl_seconds = queue_item_ttl_seconds
        self._maximum_processing_seconds = maximum_processing_seconds
        self._estimated_seconds_per_item = estimated_seconds_per_item
        self._clock = clock
        self._admission_script = (
            redis_client.register_script(_ATOMIC_ADMISSION_SCRIPT) if redis_client is not None else None
        )

    @property
    def is_enabled(self) -> bool:
        """Return ``True`` when a backing store is configured."""
        return self._redis is not None

    @property
    def maximum_concurrency(self) -> int:
        return self._maximum_concurrency

    def _now_milliseconds(self) -> int:
        return int(self._clock() * 1000)

    async def _prune_expired_waiting_entries(self) -> None:
        """Drop waiting entries older than the item TTL."""
        oldest_permitted_score = self._now_milliseconds() - self._queue_item_ttl_seconds * 1000
        removed_count = await self._redis.zremrangebyscore(
            WAITING_SET_KEY,
            "-inf",
            f"({oldest_permitted_score}",
        )
        if removed_count:
            logger.info("queue_expired_entries_pruned", removed=removed_count)

    async def join(self, queue_id: str) -> QueueStatus:
        """
        Add ``queue_id`` to the waiting set and return its status.

        Joining again with the same ID moves it to the back of the queue,
        because its score becomes the current time.  An ID that is already
        in flight is left where it is and reports ``processing``.
        """
        if self._redis is None:
            return DISABLED_QUEUE_STATUS

        now_milliseconds = self._now_milliseconds()
        queue_item = {
            "id": queue_id,
            "timestamp": now_milliseconds,
            "status": QueueEntryStatus.WAITING.value,
        }

        try:
            if await self._redis.sismember(IN_FLIGHT_SET_KEY, queue_id):
                logger.info("queue_join_while_in_flight", queue_id=queue_id)
                return await self.status(queue_id)

            async with self._redis.pipeline(transaction=False) as pipeline:
                pipeline.zadd(WAITING_SET_KEY, {queue_id: now_milliseconds})
                pipeline.set(
                    _queue_item_key(queue_id),
                    json.dumps(queue_item),
                    ex=self._queue_item_ttl_seconds,
                )
                await pipeline.execute()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="join",
                error=str(store_error),
            )
            return DISABLED_QUEUE_STATUS

        logger.info("queue_joined", queue_id=queue_id)
        return await self.status(queue_id)

    async def status(self, queue_id: str) -> QueueStatus:
        """
        Compute the standing of ``queue_id``.

        - In the in-flight set → ``processing``.
        - In neither set → ``ready``.  The ID was either admitted and
          released already or its waiting entry expired; both look the same.
        - Waiting with a 0-indexed rank below the ceiling while the
          in-flight count is below the ceiling → ``ready``.
        - Otherwise → ``waiting`` with an estimate of
          ``max(0, rank - ceiling + in_flight) * seconds_per_item``.
        """
        if self._redis is None:
            return DISABLED_QUEUE_STATUS

        try:
            await self._prune_expired_waiting_entries()
            async with self._redis.pipeline(transaction=False) as pipeline:
                pipeline.zrank(WAITING_SET_KEY, queue_id)
                pipeline.zcard(WAITING_SET_KEY)
                pipeline.scard(IN_FLIGHT_SET_KEY)
                pipeline.sismember(IN_FLIGHT_SET_KEY, queue_id)
                rank, total_in_queue, current_processing, is_in_flight = await pipeline.execute()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="status",
                error=str(store_error),
            )
            return DISABLED_QUEUE_STATUS

        total_in_queue = int(total_in_queue or 0)
        current_processing = int(current_processing or 0)

        if is_in_flight:
            return QueueStatus(
                position=0,
                total_in_queue=total_in_queue,
                estimated_wait_time=0,
                status=AdmissionStatus.PROCESSING,
                current_processing=current_processing,
            )

        if rank is None:
            return QueueStatus(
                position=0,
                total_in_queue=total_in_queue,
                estimated_wait_time=0,
                status=AdmissionStatus.READY,
                current_processing=current_processing,
            )

        rank = int(rank)
        effective_position = max(0, rank - self._maximum_concurrency + current_processing)
        can_be_admitted = rank < self._maximum_concurrency and current_processing < self._maximum_concurrency

        return QueueStatus(
            position=rank + 1,
            total_in_queue=total_in_queue,
            estimated_wait_time=math.ceil(effective_position * self._estimated_seconds_per_item),
            status=AdmissionStatus.READY if can_be_admitted else AdmissionStatus.WAITING,
            current_processing=current_processing,
        )

    async def try_admit(self, queue_id: str) -> bool:
        """
        Move ``queue_id`` from waiting to in-flight if under the ceiling.

        Returns ``True`` when admitted (or when the queue is bypassed) and
        ``False`` without touching any state when the ceiling is reached.
        """
        if self._redis is None:
            return True

        admitted_at = str(self._now_milliseconds())

        try:
            admission_result = await self._admission_script(
                keys=[IN_FLIGHT_SET_KEY, WAITING_SET_KEY, _admission_marker_key(queue_id)],
                args=[self._maximum_concurrency, queue_id, admitted_at, self._maximum_processing_seconds],
            )
            admitted = int(admission_result) == 1
        except redis.exceptions.RedisError as script_error:
            logger.warning(
                "atomic_admission_failed",
                queue_id=queue_id,
                error=str(script_error),
            )
            try:
                admitted = await self._try_admit_non_atomically(queue_id, admitted_at)
            except redis.exceptions.RedisError as store_error:
                logger.error(
                    "admission_queue_store_unavailable",
                    operation="try_admit",
                    error=str(store_error),
                )
                return True

        if admitted:
            logger.info("queue_entry_admitted", queue_id=queue_id)
        else:
            logger.info(
                "queue_entry_admission_refused",
                queue_id=queue_id,
                maximum_concurrency=self._maximum_concurrency,
            )
        return admitted

    async def _try_admit_non_atomically(self, queue_id: str, admitted_at: str) -> bool:
        # Check-then-write: two instances may both pass the check.
        current_processing = int(await self._redis.scard(IN_FLIGHT_SET_KEY) or 0)
        if current_processing >= self._maximum_concurrency:
            return False
        async with self._redis.pipeline(transaction=False) as pipeline:
            pipeline.zrem(WAITING_SET_KEY, queue_id)
            pipeline.sadd(IN_FLIGHT_SET_KEY, queue_id)
            pipeline.set(
                _admission_marker_key(queue_id),
                admitted_at,
                ex=self._maximum_processing_seconds,
            )
            await pipeline.execute()
        return True

    async def release(self, queue_id: str) -> None:
        """Remove ``queue_id`` from the in-flight set and delete its bookkeeping keys."""
        if self._redis is None:
            return

        try:
            async with self._redis.pipeline(transaction=False) as pipeline:
                pipeline.srem(IN_FLIGHT_SET_KEY, queue_id)
                pipeline.delete(_queue_item_key(queue_id), _admission_marker_key(queue_id))
                await pipeline.execute()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="release",
                queue_id=queue_id,
                error=str(store_error),
            )
            return

        logger.info("queue_entry_released", queue_id=queue_id)

    async def leave(self, queue_id: str) -> None:
        """Remove ``queue_id`` from both sets; used when a client abandons the flow."""
        if self._redis is None:
            return

        try:
            async with self._redis.pipeline(transaction=False) as pipeline:
                pipeline.zrem(WAITING_SET_KEY, queue_id)
                pipeline.srem(IN_FLIGHT_SET_KEY, queue_id)
                pipeline.delete(_queue_item_key(queue_id), _admission_marker_key(queue_id))
                await pipeline.execute()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="leave",
                queue_id=queue_id,
                error=str(store_error),
            )
            return

        logger.info("queue_left", queue_id=queue_id)

    async def reap_zombies(self) -> int:
        """
        Remove in-flight entries that have no admission marker.

        The marker expires after the maximum processing time, so an entry
        whose owning request crashed before ``release`` is reclaimed by the
        first reaping pass after that window.  Entries with a live marker
        are left alone.

        Returns:
            The number of entries removed.
        """
        if self._redis is None:
            return 0

        removed_count = 0
        try:
            in_flight_queue_ids = sorted(await self._redis.smembers(IN_FLIGHT_SET_KEY))
            if not in_flight_queue_ids:
                return 0

            async with self._redis.pipeline(transaction=False) as pipeline:
                for queue_id in in_flight_queue_ids:
                    pipeline.exists(_admission_marker_key(queue_id))
                marker_presence = await pipeline.execute()

            for queue_id, marker_exists in zip(in_flight_queue_ids, marker_presence):
                if marker_exists:
                    continue
                await self._redis.srem(IN_FLIGHT_SET_KEY, queue_id)
                removed_count += 1
                logger.warning("zombie_queue_entry_removed", queue_id=queue_id)
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="reap_zombies",
                error=str(store_error),
            )

        return removed_count

    async def reset(self) -> None:
        """Clear the waiting and in-flight sets entirely."""
        if self._redis is None:
            return

        try:
            await self._redis.delete(WAITING_SET_KEY, IN_FLIGHT_SET_KEY)
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="reset",
                error=str(store_error),
            )
            return

        logger.warning("admission_queue_reset")

    async def statistics(self) -> QueueStatistics:
        """Return the current waiting and in-flight counts."""
        if self._redis is None:
            return QueueStatistics(queue_size=0, processing=0)

        try:
            async with self._redis.pipeline(transaction=False) as pipeline:
                pipeline.zcard(WAITING_SET_KEY)
                pipeline.scard(IN_FLIGHT_SET_KEY)
                queue_size, processing = await pipeline.execute()
        except redis.exceptions.RedisError as store_error:
            logger.error(
                "admission_queue_store_unavailable",
                operation="statistics",
                error=str(store_error),
            )
            return QueueStatistics(queue_size=0, processing=0)

        return QueueStatistics(queue_size=int(queue_size or 0), processing=int(processing or 0))

    @contextlib.asynccontextmanager
    async def admission_slot(
        self,
        queue_id: str,
    ) -> collections.abc.AsyncIterator[None]:
        """
        Hold an in-flight slot for ``queue_id`` for the duration of the block.

        Raises:
            license_booth.exceptions.QueueFullError:
                When the ceiling is reached.  Nothing is acquired, so
                nothing is released.
        """
        if not await self.try_admit(queue_id):
            raise license_booth.exceptions.QueueFullError()

        try:
            yield
        finally:
            await self.release(queue_id)
