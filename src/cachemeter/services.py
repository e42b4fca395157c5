from types import TracebackType

import structlog
from prometheus_client import REGISTRY, CollectorRegistry

from cachemeter.cache_store import CacheStore
from cachemeter.clock import Clock, now_ms
from cachemeter.config import Config
from cachemeter.egress import EgressMonitor
from cachemeter.fallback_cache import FallbackCache
from cachemeter.metrics import MetricsUpdater
from cachemeter.result import Err
from cachemeter.storage.base import PersistentStore
from cachemeter.storage.memory import MemoryStore
from cachemeter.storage.sqlite import SQLiteStore

logger = structlog.get_logger()


class Services:
    """
    Services owns one instance of every cache component. It is built
    once at application start and passed to consumers; nothing in
    the package keeps module-level state.

    Usage:

        async with Services(Config.from_env()) as services:
            services.cache.set("feed", rows, ttl_seconds=60)
    """

    def __init__(
        self,
        config: "Config",
        store: "PersistentStore | None" = None,
        registry: "CollectorRegistry" = REGISTRY,
        clock: "Clock" = now_ms,
    ) -> "None":
        self.config = config
        if store is None:
            store = SQLiteStore(config.storage_path) if config.persistent else MemoryStore()
        self.store: "PersistentStore" = store
        self.metrics = MetricsUpdater(registry=registry)
        self.cache = CacheStore(store, config, self.metrics, clock)
        self.snapshots = FallbackCache(store, config, self.metrics, clock)
        self.egress = EgressMonitor(store, config, self.metrics, clock)
        self._initialized = False

    @property
    def initialized(self) -> "bool":
        return self._initialized

    async def init(self) -> "None":
        """
        opens the store, restores persisted cache entries and loads
        the egress log. A store that cannot be opened leaves the
        components running memory-only.
        """
        if self._initialized:
            return

        if isinstance(self.store, SQLiteStore):
            opened = await self.store.open()
            if isinstance(opened, Err):
                logger.warning("services_running_memory_only", detail=opened.detail)

        restored = await self.cache.init()
        loaded = await self.egress.load_metrics()
        self._initialized = True
        logger.info("services_initialized", cache_entries=restored, egress_records=loaded)

    async def dispose(self) -> "None":
        """
        waits for pending persistence and closes the store.
        """
        await self.cache.dispose()
        await self.egress.dispose()
        await self.store.close()
        self._initialized = False
        logger.info("services_disposed")

    async def __aenter__(self) -> "Services":
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: "type[BaseException] | None",
        exc: "BaseException | None",
        tb: "TracebackType | None",
    ) -> "None":
        await self.dispose()
