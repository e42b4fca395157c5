import asyncio

import orjson
import pytest

from cachemeter.config import Config
from cachemeter.fallback_cache import METADATA_KEY, FallbackCache
from cachemeter.hydration import HydrationSlot
from cachemeter.result import Err, Ok, Result, StorageErrorKind
from cachemeter.storage.memory import MemoryStore


class YieldingStore(MemoryStore):
    """
    A memory store that yields to the event loop on every call, so
    concurrent operations interleave the way they do on real storage.
    """

    async def get_item(self, key: "str") -> "Result[str | None]":
        await asyncio.sleep(0)
        return await super().get_item(key)

    async def set_item(self, key: "str", value: "str") -> "Result[None]":
        await asyncio.sleep(0)
        return await super().set_item(key, value)

    async def remove_item(self, key: "str") -> "Result[None]":
        await asyncio.sleep(0)
        return await super().remove_item(key)

    async def get_all_keys(self) -> "Result[list[str]]":
        await asyncio.sleep(0)
        return await super().get_all_keys()


class StuckKeyStore(MemoryStore):
    """
    A memory store that cannot delete one key.
    """

    def __init__(self, stuck: "str") -> "None":
        super().__init__()
        self.stuck = stuck

    async def remove_item(self, key: "str") -> "Result[None]":
        if key == self.stuck:
            return Err(StorageErrorKind.WRITE_FAILURE, "locked")
        return await super().remove_item(key)


class TestFallbackCacheRoundTrip:
    @pytest.mark.asyncio
    async def test_get_returns_stored_value(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, clock=clock)
        value = {"posts": [{"id": 1, "tags": ["a", "b"]}], "cursor": None}

        assert await cache.set("home-feed", value, ttl_seconds=300) is True
        assert await cache.get("home-feed") == value

    @pytest.mark.asyncio
    async def test_expired_snapshot_is_absent_and_deleted(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("home-feed", [1, 2], ttl_seconds=10)
        clock.advance(seconds=11)

        assert await cache.get("home-feed") is None
        assert await store.get_item("fallback:home-feed") == Ok(None)

    @pytest.mark.asyncio
    async def test_missing_key_is_absent(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, clock=clock)
        assert await cache.get("nothing") is None

    @pytest.mark.asyncio
    async def test_unknown_fields_are_ignored(self, store: "MemoryStore", clock: "object") -> "None":
        await store.set_item(
            "fallback:profile",
            orjson.dumps(
                {"value": {"name": "ada"}, "expiresAt": clock.now + 1000, "version": 2}
            ).decode(),
        )
        cache = FallbackCache(store, clock=clock)
        assert await cache.get("profile") == {"name": "ada"}

    @pytest.mark.asyncio
    async def test_default_ttl_from_config(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, config=Config(snapshot_ttl_seconds=5), clock=clock)
        await cache.set("k", "v")
        clock.advance(seconds=6)
        assert await cache.get("k") is None


class TestFallbackCacheFailures:
    @pytest.mark.asyncio
    async def test_corrupt_blob_is_a_miss(self, store: "MemoryStore", clock: "object") -> "None":
        await store.set_item("fallback:home-feed", '{"value": [1, 2, ')
        cache = FallbackCache(store, clock=clock)

        assert await cache.get("home-feed") is None
        assert await store.get_item("fallback:home-feed") == Ok(None)

    @pytest.mark.asyncio
    async def test_non_object_blob_is_a_miss(self, store: "MemoryStore", clock: "object") -> "None":
        await store.set_item("fallback:home-feed", "[1, 2, 3]")
        cache = FallbackCache(store, clock=clock)
        assert await cache.get("home-feed") is None

    @pytest.mark.asyncio
    async def test_unavailable_store(self, failing_store: "object", clock: "object") -> "None":
        cache = FallbackCache(failing_store, clock=clock)
        assert await cache.get("home-feed") is None
        assert await cache.set("home-feed", [1], ttl_seconds=60) is False

    @pytest.mark.asyncio
    async def test_unserializable_value_is_refused(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        assert await cache.set("k", {"handle": object()}, ttl_seconds=60) is False
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_oversized_item_is_refused(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, config=Config(snapshot_max_item_bytes=64), clock=clock)
        assert await cache.set("k", "x" * 100, ttl_seconds=60) is False
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_non_positive_ttl_clears_previous(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("k", "old", ttl_seconds=60)
        assert await cache.set("k", "new", ttl_seconds=0) is False
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_infinite_ttl_is_capped(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, config=Config(max_ttl_seconds=60), clock=clock)
        assert await cache.set("k", "v", ttl_seconds=float("inf")) is True
        assert await cache.get("k") == "v"
        clock.advance(seconds=61)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_nan_ttl_is_refused(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, clock=clock)
        assert await cache.set("k", "v", ttl_seconds=float("nan")) is False
        assert await cache.get("k") is None


class TestFallbackCacheHousekeeping:
    @pytest.mark.asyncio
    async def test_stats_track_writes(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, clock=clock)
        first = clock.now
        await cache.set("a", "x", ttl_seconds=60)
        clock.advance(seconds=1)
        await cache.set("b", "y", ttl_seconds=60)

        stats = await cache.get_stats()
        assert stats.item_count == 2
        assert stats.total_size > 0
        assert stats.oldest_item == first
        assert stats.newest_item == first + 1000

    @pytest.mark.asyncio
    async def test_empty_stats(self, store: "MemoryStore", clock: "object") -> "None":
        stats = await FallbackCache(store, clock=clock).get_stats()
        assert stats.item_count == 0
        assert stats.total_size == 0

    @pytest.mark.asyncio
    async def test_size_cap_evicts_oldest(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, config=Config(snapshot_max_total_bytes=400), clock=clock)
        for key in ("a", "b", "c"):
            assert await cache.set(key, "x" * 100, ttl_seconds=600) is True
            clock.advance(seconds=1)

        assert await cache.get("a") is None
        assert await cache.get("b") == "x" * 100
        assert await cache.get("c") == "x" * 100
        assert (await cache.get_stats()).item_count == 2

    @pytest.mark.asyncio
    async def test_replacing_a_key_does_not_evict_others(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, config=Config(snapshot_max_total_bytes=400), clock=clock)
        await cache.set("a", "x" * 100, ttl_seconds=600)
        clock.advance(seconds=1)
        await cache.set("b", "x" * 100, ttl_seconds=600)
        clock.advance(seconds=1)
        await cache.set("b", "y" * 100, ttl_seconds=600)

        assert await cache.get("a") == "x" * 100
        assert await cache.get("b") == "y" * 100

    @pytest.mark.asyncio
    async def test_clear_removes_snapshots_only(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        await store.set_item("cache:feed", "{}")
        cache = FallbackCache(store, clock=clock)
        await cache.set("a", 1, ttl_seconds=60)
        await cache.set("b", 2, ttl_seconds=60)

        assert await cache.clear() == 2
        keys = await store.get_all_keys()
        assert isinstance(keys, Ok)
        assert keys.value == ["cache:feed"]
        assert await store.get_item(METADATA_KEY) == Ok(None)

    @pytest.mark.asyncio
    async def test_clear_counts_only_deleted_snapshots(self, clock: "object") -> "None":
        store = StuckKeyStore("fallback:b")
        cache = FallbackCache(store, clock=clock)
        await cache.set("a", 1, ttl_seconds=60)
        await cache.set("b", 2, ttl_seconds=60)

        assert await cache.clear() == 1
        stats = await cache.get_stats()
        assert stats.item_count == 1
        assert await cache.get("b") == 2

    @pytest.mark.asyncio
    async def test_clear_and_concurrent_set_keep_index_consistent(
        self, clock: "object"
    ) -> "None":
        store = YieldingStore()
        cache = FallbackCache(store, clock=clock)
        await cache.set("a", 1, ttl_seconds=60)

        await asyncio.gather(cache.set("b", 2, ttl_seconds=60), cache.clear())

        keys = await store.get_all_keys()
        assert isinstance(keys, Ok)
        snapshots = [k for k in keys.value if k.startswith("fallback:")]
        assert (await cache.get_stats()).item_count == len(snapshots)

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_and_corrupt(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("short", 1, ttl_seconds=1)
        await cache.set("long", 2, ttl_seconds=600)
        await store.set_item("fallback:broken", "not json")
        clock.advance(seconds=2)

        assert await cache.cleanup() == 2
        assert await cache.get("long") == 2
        assert (await cache.get_stats()).item_count == 1


class TestFallbackCacheHydrate:
    @pytest.mark.asyncio
    async def test_hydrates_empty_slot(self, store: "MemoryStore", clock: "object") -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("home-feed", [1, 2, 3], ttl_seconds=60)
        slot: "HydrationSlot[list[int]]" = HydrationSlot()

        assert await cache.hydrate("home-feed", slot) is True
        assert slot.value == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_live_result_is_not_overwritten(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("home-feed", ["cached"], ttl_seconds=60)
        slot: "HydrationSlot[list[str]]" = HydrationSlot()

        # the live fetch took its ticket first and resolved before hydration
        live_ticket = slot.begin()
        slot.offer(["live"], live_ticket)

        assert await cache.hydrate("home-feed", slot) is False
        assert slot.value == ["live"]

    @pytest.mark.asyncio
    async def test_live_result_landing_during_read_wins(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("home-feed", ["cached"], ttl_seconds=60)
        slot: "HydrationSlot[list[str]]" = HydrationSlot()
        live_ticket = slot.begin()

        read = store.get_item

        async def _get_item_while_live_lands(key: "str") -> "object":
            slot.offer(["live"], live_ticket)
            return await read(key)

        store.get_item = _get_item_while_live_lands  # type: ignore[method-assign]
        assert await cache.hydrate("home-feed", slot) is False
        assert slot.value == ["live"]

    @pytest.mark.asyncio
    async def test_snapshot_is_replaced_by_later_live_result(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        await cache.set("home-feed", ["cached"], ttl_seconds=60)
        slot: "HydrationSlot[list[str]]" = HydrationSlot()
        live_ticket = slot.begin()

        assert await cache.hydrate("home-feed", slot) is True
        assert slot.offer(["live"], live_ticket) is True
        assert slot.value == ["live"]

    @pytest.mark.asyncio
    async def test_missing_snapshot_leaves_slot_untouched(
        self, store: "MemoryStore", clock: "object"
    ) -> "None":
        cache = FallbackCache(store, clock=clock)
        slot: "HydrationSlot[str]" = HydrationSlot(initial="placeholder")

        assert await cache.hydrate("home-feed", slot) is False
        assert slot.value == "placeholder"
        assert slot.populated is False
