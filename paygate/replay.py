"""Replay protection for payment references.

A reference moves through ``pending`` (reserved before the chain lookup) to
``accepted`` (settled, never reverts). A failed verification releases the
pending reservation so the payer can retry once the transaction propagates.
All state changes go through the store's atomic insert-if-absent, so at most
one request can hold a given reference at a time. Each reservation carries a
random holder token and is only released if the stored value still matches
it, so a request whose reservation expired cannot free someone else's.
"""

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from paygate.schemas import PaymentReference

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"

KEY_PREFIX = "paygate:replay:"

# KEYS[1] = key, ARGV[1] = expected value
DELETE_IF_EQUALS_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class ReplayRecord:
    state: str
    recorded_at: float
    holder: str = ""

    def encode(self) -> str:
        return f"{self.state}:{self.recorded_at}:{self.holder}"

    @classmethod
    def decode(cls, value: str) -> "ReplayRecord":
        state, _, rest = value.partition(":")
        ts, _, holder = rest.partition(":")
        return cls(state=state, recorded_at=float(ts or 0), holder=holder)


class ReplayStore(Protocol):
    async def has(self, key: str) -> bool:
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def insert_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        ...

    async def put(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    async def delete_if_equals(self, key: str, value: str) -> bool:
        ...

    async def count(self) -> int:
        ...


class InMemoryReplayStore:
    """Process-local store. Expired entries are dropped lazily."""

    prune_interval = 60.0

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._last_prune = clock()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._entries[key]
            return None
        return value

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self.prune_interval:
            return
        self._last_prune = now
        expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired replay records")

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, self._clock())

    async def insert_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            if self._live(key, now) is not None:
                return False
            self._entries[key] = (value, now + ttl_seconds)
            return True

    async def put(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live(key, self._clock()) != value:
                return False
            del self._entries[key]
            return True

    async def count(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for _, exp in self._entries.values() if exp > now)


class RedisReplayStore:
    """Shared store for multi-instance deployments, backed by ``SET NX EX``."""

    def __init__(self, redis_url: str, client: Any = None):
        self._redis_url = redis_url
        self._redis = client

    async def _get_redis(self) -> Any:
        if self._redis is None:
            import redis.asyncio as aioredis  # noqa: PLC0415

            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def has(self, key: str) -> bool:
        r = await self._get_redis()
        return bool(await r.exists(KEY_PREFIX + key))

    async def get(self, key: str) -> Optional[str]:
        r = await self._get_redis()
        return await r.get(KEY_PREFIX + key)

    async def insert_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        r = await self._get_redis()
        ok = await r.set(KEY_PREFIX + key, value, nx=True, ex=max(1, math.ceil(ttl_seconds)))
        return bool(ok)

    async def put(self, key: str, value: str, ttl_seconds: float) -> None:
        r = await self._get_redis()
        await r.set(KEY_PREFIX + key, value, ex=max(1, math.ceil(ttl_seconds)))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        r = await self._get_redis()
        return bool(await r.eval(DELETE_IF_EQUALS_SCRIPT, 1, KEY_PREFIX + key, value))

    async def count(self) -> int:
        r = await self._get_redis()
        total = 0
        async for _ in r.scan_iter(match=KEY_PREFIX + "*"):
            total += 1
        return total

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()


class ReplayGuard:
    def __init__(
        self,
        store: ReplayStore,
        retention_seconds: float = 30 * 86400,
        pending_ttl_seconds: float = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.retention_seconds = retention_seconds
        self.pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock

    async def reserve(self, ref: PaymentReference) -> Optional[ReplayRecord]:
        """Claim a reference before verifying it.

        Returns the pending record to hand back to :meth:`release`, or None if
        the reference is already pending or accepted.
        """
        record = ReplayRecord(PENDING, self._clock(), uuid.uuid4().hex)
        if await self.store.insert_if_absent(
            ref.replay_key, record.encode(), self.pending_ttl_seconds
        ):
            return record
        return None

    async def finalize(self, ref: PaymentReference) -> ReplayRecord:
        record = ReplayRecord(ACCEPTED, self._clock())
        await self.store.put(ref.replay_key, record.encode(), self.retention_seconds)
        return record

    async def release(self, ref: PaymentReference, reservation: ReplayRecord) -> bool:
        """Drop ``reservation`` if it is still the stored record. Accepted records stay."""
        released = await self.store.delete_if_equals(ref.replay_key, reservation.encode())
        if not released:
            logger.info(f"Reservation for {ref.replay_key} no longer held; left in place")
        return released

    async def check_and_record(self, ref: PaymentReference) -> bool:
        """Record a reference as accepted in one atomic step. False if already used."""
        record = ReplayRecord(ACCEPTED, self._clock())
        return await self.store.insert_if_absent(
            ref.replay_key, record.encode(), self.retention_seconds
        )

    async def lookup(self, ref: PaymentReference) -> Optional[ReplayRecord]:
        value = await self.store.get(ref.replay_key)
        return None if value is None else ReplayRecord.decode(value)

    async def is_used(self, ref: PaymentReference) -> bool:
        return await self.store.has(ref.replay_key)
