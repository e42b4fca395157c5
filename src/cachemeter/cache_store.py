from typing import Any

import orjson
import structlog

from cachemeter.background import PendingWrites
from cachemeter.clock import Clock, now_ms, ttl_to_ms
from cachemeter.config import Config
from cachemeter.metrics import MetricsUpdater
from cachemeter.models import CacheEntry, CacheStats, KeyStatus
from cachemeter.result import Err, Ok
from cachemeter.storage.base import PersistentStore

logger = structlog.get_logger()

PERSIST_PREFIX = "cache:"


def serialized_size(value: "Any") -> "tuple[bytes | None, int]":
    """
    returns the JSON encoding of value and its byte length. Values
    orjson cannot encode come back as (None, estimated size) so they
    can still be cached in memory.
    """
    try:
        encoded = orjson.dumps(value)
    except TypeError:
        return None, len(str(value).encode("utf-8"))
    return encoded, len(encoded)


class CacheStore:
    """
    CacheStore is the primary in-memory cache. Entries expire lazily:
    nothing sweeps the map in the background, an expired entry is
    only dropped when get() touches it or when remove()/clear() runs.

    Every mutation is mirrored to the PersistentStore as a
    fire-and-forget task. The in-memory map is authoritative; the
    persisted copy is eventually consistent and only read back by
    init().
    """

    def __init__(
        self,
        store: "PersistentStore | None" = None,
        config: "Config | None" = None,
        metrics: "MetricsUpdater | None" = None,
        clock: "Clock" = now_ms,
    ) -> "None":
        self._store = store
        self._config = config or Config()
        self._metrics = metrics
        self._clock = clock
        self._entries: "dict[str, CacheEntry]" = {}
        self._pending = PendingWrites("cache_store")

    @property
    def default_ttl_ms(self) -> "int":
        return int(self._config.default_ttl_seconds * 1000)

    async def init(self) -> "int":
        """
        restores persisted entries that have not expired yet. Keys
        already present in memory win over their persisted copies.
        Returns the number of restored entries.
        """
        if self._store is None:
            return 0

        keys = await self._store.get_all_keys()
        if isinstance(keys, Err):
            logger.warning("cache_restore_unavailable", kind=keys.kind.value, detail=keys.detail)
            self._count_storage_error("restore", keys)
            return 0

        now = self._clock()
        restored = 0
        for persisted_key in keys.value:
            if not persisted_key.startswith(PERSIST_PREFIX):
                continue
            key = persisted_key[len(PERSIST_PREFIX):]

            blob = await self._store.get_item(persisted_key)
            if isinstance(blob, Err):
                self._count_storage_error("restore", blob)
                continue
            if blob.value is None:
                continue

            try:
                entry = CacheEntry.from_json(key, orjson.loads(blob.value))
            except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("cache_restore_corrupt_blob", key=key)
                await self._store.remove_item(persisted_key)
                continue

            if entry.is_expired(now):
                await self._store.remove_item(persisted_key)
                continue

            if key not in self._entries:
                self._entries[key] = entry
                restored += 1

        logger.info("cache_restored", count=restored)
        return restored

    def get(self, key: "str") -> "Any | None":
        """
        returns the cached value, or None when the key is unknown or
        expired. An expired entry is evicted as a side effect.
        """
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("cache_miss", key=key)
            self._count_request("miss")
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._schedule_unpersist(key)
            logger.debug("cache_expired", key=key, age_ms=now - entry.created_at)
            self._count_request("expired")
            return None

        logger.debug("cache_hit", key=key, age_ms=now - entry.created_at)
        self._count_request("hit")
        return entry.value

    def entry_size(self, key: "str") -> "int | None":
        """
        returns the stored size of a live entry without counting a
        lookup. Used to attribute cache-hit egress.
        """
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.size_bytes

    def set(self, key: "str", value: "Any", ttl_seconds: "float | None" = None) -> "None":
        """
        stores value under key, replacing any previous entry. A ttl of
        zero or less means the value expires immediately, so it is not
        stored and any previous entry is dropped.
        """
        if ttl_seconds is None:
            ttl_seconds = self._config.default_ttl_seconds
        ttl_ms = ttl_to_ms(ttl_seconds, self._config.max_ttl_seconds)

        if ttl_ms <= 0:
            logger.debug("cache_set_expired_immediately", key=key, ttl_seconds=ttl_seconds)
            self.remove(key)
            return

        encoded, size = serialized_size(value)
        if encoded is None:
            logger.warning("cache_value_not_serializable", key=key)

        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl_ms,
            size_bytes=size,
            persistable=encoded is not None,
        )
        self._entries[key] = entry
        logger.debug("cache_set", key=key, size_bytes=size, ttl_ms=ttl_ms)

        if entry.persistable:
            self._schedule(self._persist(entry))
        else:
            # an older persisted copy would otherwise be restored later
            self._schedule_unpersist(key)

    def remove(self, key: "str") -> "bool":
        """
        removes key. Returns True when an entry was present.
        """
        existed = self._entries.pop(key, None) is not None
        self._schedule_unpersist(key)
        if existed:
            logger.debug("cache_remove", key=key)
        return existed

    def clear(self) -> "None":
        count = len(self._entries)
        self._entries.clear()
        self._schedule(self._unpersist_all())
        logger.info("cache_cleared", cleared_keys=count)

    def get_status(self, key: "str") -> "KeyStatus | None":
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._status(entry, self._clock())

    def get_all_status(self) -> "dict[str, KeyStatus]":
        """
        returns the status of every resident key. Read-only: expired
        entries are reported, not evicted.
        """
        now = self._clock()
        return {key: self._status(entry, now) for key, entry in self._entries.items()}

    def get_cache_stats(self) -> "CacheStats":
        now = self._clock()
        expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
        return CacheStats(
            total_keys=len(self._entries),
            valid_items=len(self._entries) - expired,
            expired_items=expired,
            total_size_bytes=sum(entry.size_bytes for entry in self._entries.values()),
            default_ttl_ms=self.default_ttl_ms,
        )

    async def flush(self) -> "None":
        """
        waits for pending write-through tasks.
        """
        await self._pending.flush()

    async def dispose(self) -> "None":
        await self.flush()
        self._entries.clear()

    @staticmethod
    def _status(entry: "CacheEntry", now: "int") -> "KeyStatus":
        return KeyStatus(
            expired=entry.is_expired(now),
            age=now - entry.created_at,
            expires_in=entry.expires_at - now,
            data_size=entry.size_bytes,
        )

    def _schedule(self, coro: "Any") -> "None":
        if self._store is None:
            coro.close()
            return
        self._pending.schedule(coro)

    def _schedule_unpersist(self, key: "str") -> "None":
        self._schedule(self._unpersist(key))

    async def _persist(self, entry: "CacheEntry") -> "None":
        assert self._store is not None
        try:
            blob = orjson.dumps(entry.to_json()).decode("utf-8")
        except TypeError:
            logger.warning("cache_persist_not_serializable", key=entry.key)
            return
        result = await self._store.set_item(PERSIST_PREFIX + entry.key, blob)
        if isinstance(result, Err):
            logger.warning(
                "cache_persist_failed",
                key=entry.key,
                kind=result.kind.value,
                detail=result.detail,
            )
            self._count_storage_error("write", result)

    async def _unpersist(self, key: "str") -> "None":
        assert self._store is not None
        result = await self._store.remove_item(PERSIST_PREFIX + key)
        if isinstance(result, Err):
            logger.warning("cache_unpersist_failed", key=key, kind=result.kind.value)
            self._count_storage_error("remove", result)

    async def _unpersist_all(self) -> "None":
        assert self._store is not None
        keys = await self._store.get_all_keys()
        if not isinstance(keys, Ok):
            logger.warning("cache_clear_persisted_failed", kind=keys.kind.value)
            self._count_storage_error("clear", keys)
            return
        for persisted_key in keys.value:
            if not persisted_key.startswith(PERSIST_PREFIX):
                continue
            # keys set again after clear() already have a fresh write queued
            if persisted_key[len(PERSIST_PREFIX):] in self._entries:
                continue
            await self._store.remove_item(persisted_key)

    def _count_request(self, result: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_cache_request(result)

    def _count_storage_error(self, operation: "str", err: "Err") -> "None":
        if self._metrics is not None:
            self._metrics.inc_storage_error(operation, err.kind.value)
