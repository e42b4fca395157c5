import asyncio
from typing import Any, TypeVar

import orjson
import structlog

from cachemeter.clock import Clock, now_ms, ttl_to_ms
from cachemeter.config import Config
from cachemeter.hydration import HydrationSlot
from cachemeter.metrics import MetricsUpdater
from cachemeter.models import Snapshot, SnapshotStats
from cachemeter.result import Err
from cachemeter.storage.base import PersistentStore

logger = structlog.get_logger()

T = TypeVar("T")

SNAPSHOT_PREFIX = "fallback:"
# outside SNAPSHOT_PREFIX so prefix scans never see it
METADATA_KEY = "fallback-meta:index"

_DECODE_ERRORS = (orjson.JSONDecodeError, KeyError, TypeError, ValueError)


class FallbackCache:
    """
    FallbackCache keeps snapshots of screen data in the persistent
    store so the next session can render before the network answers.

    The layer is lossy: unreadable storage and corrupted blobs are
    reported as misses and logged, never raised. A metadata index
    (key -> size, write time) tracks total usage so the oldest
    snapshots can be evicted once the size cap is reached.
    """

    def __init__(
        self,
        store: "PersistentStore",
        config: "Config | None" = None,
        metrics: "MetricsUpdater | None" = None,
        clock: "Clock" = now_ms,
    ) -> "None":
        self._store = store
        self._config = config or Config()
        self._metrics = metrics
        self._clock = clock
        # serializes read-modify-write cycles on the metadata index
        self._meta_lock: "asyncio.Lock" = asyncio.Lock()

    async def get(self, key: "str") -> "Any | None":
        """
        returns the snapshot value for key, or None when it is
        missing, expired or unreadable.
        """
        result = await self._store.get_item(SNAPSHOT_PREFIX + key)
        if isinstance(result, Err):
            logger.warning(
                "fallback_cache_read_failed",
                key=key,
                kind=result.kind.value,
                detail=result.detail,
            )
            self._count_storage_error("read", result)
            return None
        if result.value is None:
            logger.debug("fallback_cache_miss", key=key)
            return None

        try:
            snapshot = Snapshot.from_json(orjson.loads(result.value))
        except _DECODE_ERRORS:
            # typically a partial write from a session that crashed
            logger.warning("fallback_cache_corrupt_blob", key=key)
            await self.remove(key)
            return None

        if snapshot.is_expired(self._clock()):
            logger.debug("fallback_cache_expired", key=key)
            await self.remove(key)
            return None

        logger.debug("fallback_cache_hit", key=key)
        return snapshot.value

    async def set(
        self,
        key: "str",
        value: "Any",
        ttl_seconds: "float | None" = None,
    ) -> "bool":
        """
        stores a snapshot of value. Returns False when nothing was
        written: non-positive ttl, unserializable value, oversized
        blob or storage failure.
        """
        if ttl_seconds is None:
            ttl_seconds = self._config.snapshot_ttl_seconds
        ttl_ms = ttl_to_ms(ttl_seconds, self._config.max_ttl_seconds)
        if ttl_ms <= 0:
            logger.debug("fallback_cache_set_expired_immediately", key=key)
            await self.remove(key)
            return False

        now = self._clock()
        snapshot = Snapshot(value=value, expires_at=now + ttl_ms, created_at=now)
        try:
            blob = orjson.dumps(snapshot.to_json()).decode("utf-8")
        except TypeError:
            logger.warning("fallback_cache_value_not_serializable", key=key)
            return False

        size = len(blob.encode("utf-8"))
        if size > self._config.snapshot_max_item_bytes:
            logger.warning(
                "fallback_cache_item_too_large",
                key=key,
                size_bytes=size,
                limit=self._config.snapshot_max_item_bytes,
            )
            return False

        async with self._meta_lock:
            metadata = await self._read_metadata()
            await self._ensure_space(metadata, key, size)

            result = await self._store.set_item(SNAPSHOT_PREFIX + key, blob)
            if isinstance(result, Err):
                logger.warning(
                    "fallback_cache_write_failed",
                    key=key,
                    kind=result.kind.value,
                    detail=result.detail,
                )
                self._count_storage_error("write", result)
                await self._write_metadata(metadata)
                return False

            metadata[key] = {"size": size, "timestamp": now}
            await self._write_metadata(metadata)

        logger.debug("fallback_cache_set", key=key, size_bytes=size)
        return True

    async def remove(self, key: "str") -> "bool":
        result = await self._store.remove_item(SNAPSHOT_PREFIX + key)
        if isinstance(result, Err):
            logger.warning("fallback_cache_remove_failed", key=key, kind=result.kind.value)
            self._count_storage_error("remove", result)
            return False

        async with self._meta_lock:
            metadata = await self._read_metadata()
            if metadata.pop(key, None) is not None:
                await self._write_metadata(metadata)
        return True

    async def clear(self) -> "int":
        """
        removes every snapshot and the metadata index. Returns the
        number of removed snapshots.
        """
        removed = 0
        async with self._meta_lock:
            keys = await self._store.get_all_keys()
            if isinstance(keys, Err):
                logger.warning("fallback_cache_clear_failed", kind=keys.kind.value)
                self._count_storage_error("clear", keys)
                return 0

            metadata = await self._read_metadata()
            # snapshots that could not be deleted stay tracked
            remaining: "dict[str, dict[str, int]]" = {}
            for persisted_key in keys.value:
                if not persisted_key.startswith(SNAPSHOT_PREFIX):
                    continue
                result = await self._store.remove_item(persisted_key)
                if isinstance(result, Err):
                    self._count_storage_error("clear", result)
                    key = persisted_key[len(SNAPSHOT_PREFIX):]
                    if key in metadata:
                        remaining[key] = metadata[key]
                    continue
                removed += 1

            if remaining:
                await self._write_metadata(remaining)
            else:
                await self._store.remove_item(METADATA_KEY)
        logger.info("fallback_cache_cleared", count=removed)
        return removed

    async def get_stats(self) -> "SnapshotStats":
        metadata = await self._read_metadata()
        if not metadata:
            return SnapshotStats(item_count=0, total_size=0, oldest_item=0, newest_item=0)

        timestamps = [item["timestamp"] for item in metadata.values()]
        return SnapshotStats(
            item_count=len(metadata),
            total_size=sum(item["size"] for item in metadata.values()),
            oldest_item=min(timestamps),
            newest_item=max(timestamps),
        )

    async def cleanup(self) -> "int":
        """
        deletes expired and unreadable snapshots. Runs only when a
        caller asks for it; nothing schedules it. Returns the number
        of deleted snapshots.
        """
        keys = await self._store.get_all_keys()
        if isinstance(keys, Err):
            logger.warning("fallback_cache_cleanup_failed", kind=keys.kind.value)
            return 0

        now = self._clock()
        removed = 0
        for persisted_key in keys.value:
            if not persisted_key.startswith(SNAPSHOT_PREFIX):
                continue
            key = persisted_key[len(SNAPSHOT_PREFIX):]

            blob = await self._store.get_item(persisted_key)
            if isinstance(blob, Err) or blob.value is None:
                continue
            try:
                expired = Snapshot.from_json(orjson.loads(blob.value)).is_expired(now)
            except _DECODE_ERRORS:
                expired = True

            if expired:
                await self.remove(key)
                removed += 1

        logger.info("fallback_cache_cleanup", removed=removed)
        return removed

    async def hydrate(self, key: "str", slot: "HydrationSlot[T]") -> "bool":
        """
        seeds slot from the snapshot for key. A live value already in
        the slot, or applied while the snapshot is read, is kept.
        Returns whether the snapshot was applied.
        """
        if slot.live:
            return False
        value = await self.get(key)
        if value is None:
            return False
        return slot.offer_snapshot(value)

    async def _read_metadata(self) -> "dict[str, dict[str, int]]":
        result = await self._store.get_item(METADATA_KEY)
        if isinstance(result, Err) or result.value is None:
            return {}
        try:
            raw = orjson.loads(result.value)
        except orjson.JSONDecodeError:
            logger.warning("fallback_cache_corrupt_metadata")
            return {}
        if not isinstance(raw, dict):
            return {}

        metadata: "dict[str, dict[str, int]]" = {}
        for key, item in raw.items():
            try:
                metadata[key] = {"size": int(item["size"]), "timestamp": int(item["timestamp"])}
            except (KeyError, TypeError, ValueError):
                continue
        return metadata

    async def _write_metadata(self, metadata: "dict[str, dict[str, int]]") -> "None":
        result = await self._store.set_item(METADATA_KEY, orjson.dumps(metadata).decode("utf-8"))
        if isinstance(result, Err):
            logger.debug("fallback_cache_metadata_write_failed", kind=result.kind.value)

    async def _ensure_space(
        self,
        metadata: "dict[str, dict[str, int]]",
        key: "str",
        required: "int",
    ) -> "None":
        """
        evicts the oldest snapshots until required more bytes fit
        under the total size cap. The entry being replaced does not
        count against the cap.
        """
        limit = self._config.snapshot_max_total_bytes
        used = sum(item["size"] for k, item in metadata.items() if k != key)
        if used + required <= limit:
            return

        oldest_first = sorted(
            (k for k in metadata if k != key),
            key=lambda k: (metadata[k]["timestamp"], k),
        )
        for victim in oldest_first:
            if used + required <= limit:
                break
            await self._store.remove_item(SNAPSHOT_PREFIX + victim)
            used -= metadata.pop(victim)["size"]
            logger.info("fallback_cache_evicted", key=victim)

    def _count_storage_error(self, operation: "str", err: "Err") -> "None":
        if self._metrics is not None:
            self._metrics.inc_storage_error(operation, err.kind.value)
