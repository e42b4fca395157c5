from collections import Counter, deque
from dataclasses import dataclass

import orjson
import structlog

from cachemeter.background import PendingWrites
from cachemeter.clock import Clock, now_ms
from cachemeter.config import Config
from cachemeter.formatting import format_bytes, render_egress_report
from cachemeter.metrics import MetricsUpdater
from cachemeter.models import EgressRecord, EgressSummary, EndpointEgress
from cachemeter.result import Err
from cachemeter.storage.base import PersistentStore

logger = structlog.get_logger()

RECORDS_KEY = "egress:records"

_MS_PER_HOUR = 3600 * 1000


def _parse_records(blob: "str") -> "tuple[list[EgressRecord], int] | None":
    """
    decodes a persisted log. Returns None when the blob is not a JSON
    array, otherwise the valid records and the number of malformed
    ones that were skipped.
    """
    try:
        raw = orjson.loads(blob)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(raw, list):
        return None

    records: "list[EgressRecord]" = []
    dropped = 0
    for item in raw:
        try:
            records.append(EgressRecord.from_json(item))
        except (KeyError, TypeError, ValueError):
            dropped += 1
    return records, dropped


def _identity(r: "EgressRecord") -> "tuple[int, str, int, bool]":
    return (r.timestamp, r.endpoint, r.bytes, r.cached)


def _merge(
    persisted: "list[EgressRecord]", session: "list[EgressRecord]"
) -> "list[EgressRecord]":
    """
    unions two logs ordered by timestamp. A record found in both is
    kept once; identical records keep the larger of their two counts.
    """
    unmatched = Counter(_identity(r) for r in persisted)
    merged = list(persisted)
    for r in session:
        ident = _identity(r)
        if unmatched[ident] > 0:
            unmatched[ident] -= 1
        else:
            merged.append(r)
    merged.sort(key=lambda r: r.timestamp)
    return merged


@dataclass
class _EndpointTotals:
    egress: "int" = 0
    uncached: "int" = 0
    requests: "int" = 0


class EgressMonitor:
    """
    EgressMonitor attributes every transfer to an endpoint and keeps
    the records in a count-bounded log. Appends are O(1); records
    past the retention window are pruned by load_metrics(), not on
    every write.

    Persistence is a single coalesced fire-and-forget save of the
    whole log: record() never waits for it, and any number of
    records appended before the save runs share one write.
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
        self._records: "deque[EgressRecord]" = deque(maxlen=self._config.egress_max_records)
        self._pending = PendingWrites("egress_monitor")
        self._save_scheduled = False

    def __len__(self) -> "int":
        return len(self._records)

    @property
    def records(self) -> "tuple[EgressRecord, ...]":
        return tuple(self._records)

    def record(
        self,
        endpoint: "str",
        num_bytes: "int",
        cached: "bool" = False,
        content_type: "str | None" = None,
    ) -> "EgressRecord":
        """
        appends a transfer to the log with the current timestamp.
        Negative byte counts are clamped to zero.
        """
        if num_bytes < 0:
            logger.debug("egress_negative_bytes_clamped", endpoint=endpoint, bytes=num_bytes)
            num_bytes = 0

        entry = EgressRecord(
            timestamp=self._clock(),
            endpoint=endpoint,
            bytes=int(num_bytes),
            cached=bool(cached),
            content_type=content_type,
        )
        self._records.append(entry)

        if self._metrics is not None:
            self._metrics.update_egress(entry)

        if not entry.cached and entry.bytes > self._config.egress_large_request_bytes:
            logger.warning(
                "high_egress_request",
                endpoint=endpoint,
                size=format_bytes(entry.bytes),
            )

        self._schedule_save()
        return entry

    async def load_metrics(self) -> "int":
        """
        merges the persisted log into the in-memory one, dropping
        malformed records and records older than the retention
        window. Records of this session that never reached storage
        are kept and saved again. Returns the number of records.
        """
        await self._pending.flush()
        if self._store is None:
            return len(self._records)

        result = await self._store.get_item(RECORDS_KEY)
        if isinstance(result, Err):
            logger.warning(
                "egress_metrics_load_failed",
                kind=result.kind.value,
                detail=result.detail,
            )
            if self._metrics is not None:
                self._metrics.inc_storage_error("read", result.kind.value)
            return len(self._records)

        session = list(self._records)
        # a missing or unreadable blob keeps the in-memory log
        loaded = session
        dropped = 0
        unsaved = len(session)
        if result.value is not None:
            parsed = _parse_records(result.value)
            if parsed is None:
                logger.warning("egress_metrics_corrupt_blob")
            else:
                persisted, dropped = parsed
                loaded = _merge(persisted, session)
                unsaved = len(loaded) - len(persisted)

        cutoff = self._clock() - int(self._config.egress_retention_hours * _MS_PER_HOUR)
        kept = [r for r in loaded if r.timestamp >= cutoff]
        pruned = len(loaded) - len(kept)

        self._records = deque(kept, maxlen=self._config.egress_max_records)
        overflow = len(kept) - len(self._records)

        if pruned or dropped or overflow or unsaved:
            self._schedule_save()

        logger.info(
            "egress_metrics_loaded",
            count=len(self._records),
            pruned=pruned,
            dropped=dropped,
            unsaved=unsaved,
        )
        return len(self._records)

    def get_egress_summary(self, period_hours: "float" = 24) -> "EgressSummary":
        """
        summarizes records in [now - period_hours, now]. Percentages
        are computed against every endpoint in the window, not only
        the reported top ones.
        """
        now = self._clock()
        start = now - int(period_hours * _MS_PER_HOUR)
        window = [r for r in self._records if start <= r.timestamp <= now]

        total = sum(r.bytes for r in window)
        cached = sum(r.bytes for r in window if r.cached)

        per_endpoint: "dict[str, _EndpointTotals]" = {}
        for r in window:
            totals = per_endpoint.setdefault(r.endpoint, _EndpointTotals())
            totals.egress += r.bytes
            totals.requests += 1
            if not r.cached:
                totals.uncached += r.bytes

        # ties are broken by name so equal logs always rank equally
        ranked = sorted(per_endpoint.items(), key=lambda kv: (-kv[1].egress, kv[0]))
        top = [
            EndpointEgress(
                endpoint=endpoint,
                egress=totals.egress,
                percentage=totals.egress / total * 100 if total else 0.0,
            )
            for endpoint, totals in ranked[: self._config.egress_top_endpoints]
        ]

        return EgressSummary(
            period_hours=period_hours,
            total_egress=total,
            cached_egress=cached,
            uncached_egress=total - cached,
            top_endpoints=top,
            recommendations=self._recommend(window, ranked, total),
        )

    def get_formatted_report(self, period_hours: "float" = 24) -> "str":
        return render_egress_report(self.get_egress_summary(period_hours))

    async def clear_metrics(self) -> "bool":
        """
        wipes the in-memory and the persisted log. Returns False when
        the persisted log could not be removed.
        """
        self._records.clear()
        await self._pending.flush()
        if self._store is None:
            return True

        result = await self._store.remove_item(RECORDS_KEY)
        if isinstance(result, Err):
            logger.warning("egress_metrics_clear_failed", kind=result.kind.value)
            if self._metrics is not None:
                self._metrics.inc_storage_error("clear", result.kind.value)
            return False

        logger.info("egress_metrics_cleared")
        return True

    async def flush(self) -> "None":
        await self._pending.flush()

    async def dispose(self) -> "None":
        await self.flush()

    def _recommend(
        self,
        window: "list[EgressRecord]",
        ranked: "list[tuple[str, _EndpointTotals]]",
        total: "int",
    ) -> "list[str]":
        cfg = self._config
        recommendations: "list[str]" = []

        for endpoint, totals in ranked:
            if totals.egress == 0 or totals.egress <= cfg.min_endpoint_bytes:
                continue
            ratio = totals.uncached / totals.egress
            if ratio > cfg.uncached_ratio_threshold:
                recommendations.append(
                    f"{endpoint}: {ratio:.0%} of {format_bytes(totals.egress)} "
                    "was fetched without cache. Cache its responses longer "
                    "or paginate the query."
                )

        if len(window) >= cfg.min_requests_for_hit_rate:
            hit_rate = sum(1 for r in window if r.cached) / len(window)
            if hit_rate < cfg.low_hit_rate_threshold:
                recommendations.append(
                    f"Low cache hit rate ({hit_rate:.0%} of requests). "
                    "Consider more aggressive caching."
                )

        frequent = [
            endpoint
            for endpoint, totals in ranked
            if totals.requests > cfg.high_frequency_requests
        ]
        if frequent:
            recommendations.append(
                f"High-frequency endpoints: {', '.join(frequent)}. "
                "Consider batching or pagination."
            )

        images = [r for r in window if (r.content_type or "").startswith("image/")]
        if images:
            average = sum(r.bytes for r in images) / len(images)
            if average > cfg.large_image_bytes:
                recommendations.append(
                    f"Average image transfer is {format_bytes(average)}. "
                    "Consider serving thumbnails."
                )

        video_bytes = sum(
            r.bytes for r in window if (r.content_type or "").startswith("video/")
        )
        if total and video_bytes / total > cfg.video_share_threshold:
            recommendations.append(
                f"Video content is {video_bytes / total:.0%} of egress. "
                "Consider compression or adaptive streaming."
            )

        return recommendations

    def _schedule_save(self) -> "None":
        if self._store is None or self._save_scheduled:
            return
        if self._pending.schedule(self._save()):
            self._save_scheduled = True

    async def _save(self) -> "None":
        assert self._store is not None
        # records appended while this write is in flight schedule a new save
        self._save_scheduled = False
        blob = orjson.dumps([r.to_json() for r in self._records]).decode("utf-8")
        result = await self._store.set_item(RECORDS_KEY, blob)
        if isinstance(result, Err):
            logger.warning(
                "egress_metrics_save_failed",
                kind=result.kind.value,
                detail=result.detail,
            )
            if self._metrics is not None:
                self._metrics.inc_storage_error("write", result.kind.value)
