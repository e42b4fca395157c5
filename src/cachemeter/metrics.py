from prometheus_client import REGISTRY, CollectorRegistry, Counter

from cachemeter.models import EgressRecord


class MetricsUpdater:
    """
    applies cache lookups, egress records and storage failures to
    Prometheus counters.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._cache_requests: "Counter" = Counter(
            "cachemeter_cache_requests_total",
            "Cache lookups by result (hit, miss, expired)",
            ["result"],
            registry=registry,
        )
        self._egress_bytes: "Counter" = Counter(
            "cachemeter_egress_bytes_total",
            "Bytes transferred per endpoint, split by cache hit",
            ["endpoint", "cached"],
            registry=registry,
        )
        self._egress_requests: "Counter" = Counter(
            "cachemeter_egress_requests_total",
            "Transfers per endpoint, split by cache hit",
            ["endpoint", "cached"],
            registry=registry,
        )
        self._storage_errors: "Counter" = Counter(
            "cachemeter_storage_errors_total",
            "Persistent storage failures by operation and kind",
            ["operation", "kind"],
            registry=registry,
        )

    def inc_cache_request(self, result: "str") -> "None":
        self._cache_requests.labels(result=result).inc()

    def update_egress(self, record: "EgressRecord") -> "None":
        """
        updates the egress counters based on the record's data.
        """
        labels = {
            "endpoint": record.endpoint,
            "cached": "true" if record.cached else "false",
        }
        self._egress_bytes.labels(**labels).inc(record.bytes)
        self._egress_requests.labels(**labels).inc()

    def inc_storage_error(self, operation: "str", kind: "str") -> "None":
        self._storage_errors.labels(operation=operation, kind=kind).inc()
