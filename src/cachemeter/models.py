from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """
    CacheEntry is a single in-memory cached payload. Entries are
    never mutated; a second set() for the same key replaces the
    entry wholesale.
    """

    key: "str"
    value: "Any"
    # unix milliseconds
    created_at: "int"
    # unix milliseconds, always greater than created_at
    expires_at: "int"
    # serialized byte length of value, computed once at write time
    size_bytes: "int"
    # False when the payload could not be serialized for write-through
    persistable: "bool" = True

    def is_expired(self, now: "int") -> "bool":
        return now > self.expires_at

    def to_json(self) -> "dict[str, Any]":
        return {
            "value": self.value,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "sizeBytes": self.size_bytes,
        }

    @classmethod
    def from_json(cls, key: "str", data: "dict[str, Any]") -> "CacheEntry":
        """
        builds an entry from a persisted blob. Raises KeyError,
        TypeError or ValueError when required fields are missing or
        malformed; unknown fields are ignored.
        """
        created_at = int(data["createdAt"])
        expires_at = int(data["expiresAt"])
        if expires_at <= created_at:
            raise ValueError("expiresAt must be after createdAt")
        return cls(
            key=key,
            value=data["value"],
            created_at=created_at,
            expires_at=expires_at,
            size_bytes=int(data["sizeBytes"]),
        )


@dataclass(frozen=True, slots=True)
class Snapshot:
    """
    Snapshot is a persisted value used to seed state before live
    data arrives.
    """

    value: "Any"
    expires_at: "int"
    created_at: "int" = 0

    def is_expired(self, now: "int") -> "bool":
        return now > self.expires_at

    def to_json(self) -> "dict[str, Any]":
        return {
            "value": self.value,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_json(cls, data: "dict[str, Any]") -> "Snapshot":
        return cls(
            value=data["value"],
            expires_at=int(data["expiresAt"]),
            created_at=int(data.get("createdAt", 0)),
        )


@dataclass(frozen=True, slots=True)
class SnapshotStats:
    item_count: "int"
    total_size: "int"
    # unix milliseconds of the oldest and newest write, 0 when empty
    oldest_item: "int"
    newest_item: "int"


@dataclass(frozen=True, slots=True)
class EgressRecord:
    """
    EgressRecord is one network transfer attributed to an endpoint.
    """

    # unix milliseconds
    timestamp: "int"
    endpoint: "str"
    bytes: "int"
    # True when the payload was served from the local cache
    cached: "bool"
    content_type: "str | None" = None

    def to_json(self) -> "dict[str, Any]":
        data: "dict[str, Any]" = {
            "timestamp": self.timestamp,
            "endpoint": self.endpoint,
            "bytes": self.bytes,
            "cached": self.cached,
        }
        if self.content_type:
            data["contentType"] = self.content_type
        return data

    @classmethod
    def from_json(cls, data: "dict[str, Any]") -> "EgressRecord":
        endpoint = data["endpoint"]
        if not isinstance(endpoint, str):
            raise TypeError("endpoint must be a string")
        content_type = data.get("contentType")
        return cls(
            timestamp=int(data["timestamp"]),
            endpoint=endpoint,
            bytes=max(0, int(data["bytes"])),
            cached=bool(data["cached"]),
            content_type=content_type if isinstance(content_type, str) else None,
        )


@dataclass(frozen=True, slots=True)
class EndpointEgress:
    endpoint: "str"
    egress: "int"
    # share of the whole window's egress, 0-100
    percentage: "float"


@dataclass(frozen=True, slots=True)
class EgressSummary:
    """
    EgressSummary is derived from the egress log for one time
    window. total_egress always equals cached_egress +
    uncached_egress.
    """

    period_hours: "float"
    total_egress: "int"
    cached_egress: "int"
    uncached_egress: "int"
    top_endpoints: "list[EndpointEgress]" = field(default_factory=list)
    recommendations: "list[str]" = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class KeyStatus:
    expired: "bool"
    # milliseconds since the entry was written
    age: "int"
    # milliseconds until expiry, negative once expired
    expires_in: "int"
    data_size: "int"


@dataclass(frozen=True, slots=True)
class CacheStats:
    total_keys: "int"
    valid_items: "int"
    expired_items: "int"
    # every resident entry, expired ones included
    total_size_bytes: "int"
    default_ttl_ms: "int"
