"""Caching layer -- tiered TTL cache over an optional persistent key-value store."""

from price_engine.cache.storage import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from price_engine.cache.tiered_cache import TieredCache

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SqliteKeyValueStore", "TieredCache"]
