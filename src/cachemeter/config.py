import os
from dataclasses import dataclass

_ENV_PREFIX = "CACHEMETER_"


def _env(name: "str", default: "str") -> "str":
    return os.environ.get(f"{_ENV_PREFIX}{name}", default)


@dataclass
class Config:
    # sqlite database path; empty keeps everything in memory
    storage_path: "str" = ""
    log_level: "str" = "info"

    # CacheStore ttl used when set() is called without one
    default_ttl_seconds: "float" = 600
    # FallbackCache
    snapshot_ttl_seconds: "float" = 300
    snapshot_max_item_bytes: "int" = 1024 * 1024
    snapshot_max_total_bytes: "int" = 50 * 1024 * 1024
    # upper bound for any ttl; infinite ttls are clamped to it
    max_ttl_seconds: "float" = 30 * 24 * 3600

    # EgressMonitor log bounds
    egress_retention_hours: "float" = 7 * 24
    egress_max_records: "int" = 1000
    egress_top_endpoints: "int" = 5
    # single transfers above this size are logged as warnings
    egress_large_request_bytes: "int" = 1024 * 1024

    # recommendation thresholds
    uncached_ratio_threshold: "float" = 0.5
    min_endpoint_bytes: "int" = 8 * 1024
    low_hit_rate_threshold: "float" = 0.3
    min_requests_for_hit_rate: "int" = 20
    high_frequency_requests: "int" = 50
    large_image_bytes: "int" = 500 * 1024
    video_share_threshold: "float" = 0.5

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        return cls(
            storage_path=_env("STORAGE_PATH", defaults.storage_path),
            log_level=_env("LOG_LEVEL", defaults.log_level),
            default_ttl_seconds=float(
                _env("DEFAULT_TTL_SECONDS", str(defaults.default_ttl_seconds))
            ),
            snapshot_ttl_seconds=float(
                _env("SNAPSHOT_TTL_SECONDS", str(defaults.snapshot_ttl_seconds))
            ),
            egress_retention_hours=float(
                _env("EGRESS_RETENTION_HOURS", str(defaults.egress_retention_hours))
            ),
            egress_max_records=int(
                _env("EGRESS_MAX_RECORDS", str(defaults.egress_max_records))
            ),
            uncached_ratio_threshold=float(
                _env("UNCACHED_RATIO_THRESHOLD", str(defaults.uncached_ratio_threshold))
            ),
            min_endpoint_bytes=int(
                _env("MIN_ENDPOINT_BYTES", str(defaults.min_endpoint_bytes))
            ),
        )

    @property
    def persistent(self) -> "bool":
        return bool(self.storage_path)
