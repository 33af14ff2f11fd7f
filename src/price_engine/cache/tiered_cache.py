"""Two-tier TTL cache with in-flight request de-duplication.

Memory is the authoritative tier for the lifetime of the process; the
optional persistent KeyValueStore lets prices and rate maps survive restarts.
Persisted entries are JSON documents {"value", "stored_at", "expires_at"}
with Decimals tagged so they round-trip exactly.

All mutation goes through this class so TTL and size-bound invariants hold:
  - an entry past expires_at is never returned, and is purged on read
  - the memory tier never holds more than max_entries after a write
  - at most one computation per key is in flight at any time
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from price_engine.cache.storage import KeyValueStore
from price_engine.exceptions import PersistenceError
from price_engine.logging import get_logger
from price_engine.models import CacheEntry

logger = get_logger(__name__)

T = TypeVar("T")

_DECIMAL_TAG = "__decimal__"


def _encode_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return {_DECIMAL_TAG: str(obj)}
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Cannot persist value of type {type(obj).__name__}")


def _decode_hook(obj: dict) -> Any:
    if len(obj) == 1 and _DECIMAL_TAG in obj:
        return Decimal(obj[_DECIMAL_TAG])
    return obj


def encode_entry(entry: CacheEntry) -> str:
    return json.dumps(
        {
            "value": entry.value,
            "stored_at": entry.stored_at,
            "expires_at": entry.expires_at,
        },
        default=_encode_default,
    )


def decode_entry(raw: str) -> CacheEntry:
    """Parse a persisted entry.

    Raises ValueError on anything that is not a well-formed entry written by
    encode_entry (corrupt JSON, foreign shape, inverted timestamps).
    """
    try:
        data = json.loads(raw, object_hook=_decode_hook)
        entry = CacheEntry(
            value=data["value"],
            stored_at=float(data["stored_at"]),
            expires_at=float(data["expires_at"]),
        )
    except (json.JSONDecodeError, KeyError, TypeError, InvalidOperation) as e:
        raise ValueError(f"Malformed cache entry: {e}") from e
    if entry.expires_at <= entry.stored_at:
        raise ValueError("Malformed cache entry: expires_at <= stored_at")
    return entry


class TieredCache:
    """Generic key -> value cache with per-entry TTL.

    Args:
        store: Optional persistent layer. None keeps the cache memory-only.
        max_entries: Upper bound on in-memory entries.
        key_prefix: Namespace for persisted keys (clear() only touches these).
        clock: Wall-clock time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        max_entries: int = 500,
        key_prefix: str = "cache_",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._max_entries = max_entries
        self._prefix = key_prefix
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}  # type: ignore[type-arg]

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────

    async def get(self, key: str) -> Any | None:
        """Return the live value for key, or None if absent or expired."""
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Return the live CacheEntry for key, promoting persisted hits to memory."""
        now = self._clock()
        entry = self._memory.get(key)

        if entry is None and self._store is not None:
            entry = await self._load_persisted(key)
            if entry is not None and not entry.is_expired(now):
                self._memory[key] = entry
                self._cleanup(now)

        if entry is None:
            return None

        if entry.is_expired(now):
            await self.delete(key)
            return None
        return entry

    # ──────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store value under key for ttl_seconds in every configured tier."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self._clock()
        entry = CacheEntry(value=value, stored_at=now, expires_at=now + ttl_seconds)
        self._memory[key] = entry

        if self._store is not None:
            try:
                await self._store.set_item(self._prefix + key, encode_entry(entry))
            except (PersistenceError, TypeError, ValueError) as e:
                logger.warning("cache_persist_failed", key=key, error=str(e))

        self._cleanup(now)

    async def delete(self, key: str) -> None:
        """Remove key from every tier."""
        self._memory.pop(key, None)
        if self._store is not None:
            try:
                await self._store.remove_item(self._prefix + key)
            except PersistenceError as e:
                logger.warning("cache_remove_failed", key=key, error=str(e))

    async def clear(self) -> None:
        """Drop every entry in memory and persisted under the cache prefix.

        In-flight markers are forgotten too; running computations finish but
        later callers start fresh ones.
        """
        self._memory.clear()
        self._inflight.clear()
        if self._store is None:
            return
        try:
            for persisted_key in await self._store.keys(self._prefix):
                await self._store.remove_item(persisted_key)
        except PersistenceError as e:
            logger.warning("cache_clear_failed", error=str(e))
        logger.info("cache_cleared")

    # ──────────────────────────────────────────────
    # De-duplication
    # ──────────────────────────────────────────────

    async def get_or_compute(
        self,
        key: str,
        ttl_seconds: float,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        """Return the cached value, or compute it once for all concurrent callers.

        The computed value is cached for ttl_seconds. Failures propagate to
        every waiter and nothing is cached.
        """
        cached = await self.get_entry(key)
        if cached is not None:
            return cached.value

        async def compute_and_store() -> T:
            value = await compute()
            await self.set(key, value, ttl_seconds)
            return value

        return await self.dedupe(key, compute_and_store)

    async def dedupe(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Share one in-flight run of factory between concurrent callers of key.

        The in-flight marker is cleared when the run finishes, on success and
        on failure alike. A cancelled waiter does not cancel the shared run.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_inflight(key, factory))
            self._inflight[key] = task
        return await asyncio.shield(task)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight

    async def _run_inflight(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

    # ──────────────────────────────────────────────
    # Maintenance
    # ──────────────────────────────────────────────

    async def evict_expired(self) -> int:
        """Purge expired entries from memory and from the persistent tier.

        Persisted entries are decoded to read their expiry; undecodable ones
        are dropped too. Returns the number of distinct keys removed.
        """
        now = self._clock()
        removed = {k for k, e in self._memory.items() if e.is_expired(now)}
        for key in removed:
            del self._memory[key]

        if self._store is None:
            return len(removed)
        try:
            for persisted_key in await self._store.keys(self._prefix):
                raw = await self._store.get_item(persisted_key)
                if raw is None:
                    continue
                try:
                    expired = decode_entry(raw).is_expired(now)
                except ValueError:
                    expired = True
                if expired:
                    await self._store.remove_item(persisted_key)
                    removed.add(persisted_key[len(self._prefix) :])
        except PersistenceError as e:
            logger.warning("cache_sweep_failed", error=str(e))
        if removed:
            logger.debug("cache_expired_evicted", count=len(removed))
        return len(removed)

    def stats(self) -> dict[str, int]:
        """Return entry counts for diagnostics."""
        now = self._clock()
        expired = sum(1 for e in self._memory.values() if e.is_expired(now))
        return {
            "size": len(self._memory),
            "fresh": len(self._memory) - expired,
            "expired": expired,
            "inflight": len(self._inflight),
        }

    def __len__(self) -> int:
        return len(self._memory)

    def _cleanup(self, now: float) -> None:
        """Purge expired entries, then evict oldest-by-stored_at above max_entries."""
        for key in [k for k, e in self._memory.items() if e.is_expired(now)]:
            del self._memory[key]

        overflow = len(self._memory) - self._max_entries
        if overflow > 0:
            oldest = sorted(self._memory.items(), key=lambda item: item[1].stored_at)
            for key, _ in oldest[:overflow]:
                del self._memory[key]
            logger.debug("cache_evicted", count=overflow, max_entries=self._max_entries)

    async def _load_persisted(self, key: str) -> CacheEntry | None:
        assert self._store is not None
        try:
            raw = await self._store.get_item(self._prefix + key)
        except PersistenceError as e:
            logger.warning("cache_load_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return decode_entry(raw)
        except ValueError as e:
            logger.debug("cache_entry_discarded", key=key, reason=str(e))
            try:
                await self._store.remove_item(self._prefix + key)
            except PersistenceError as remove_error:
                logger.warning("cache_remove_failed", key=key, error=str(remove_error))
            return None
