from typing import Any, Awaitable, Callable

import httpx
import structlog

from cachemeter.cache_store import CacheStore, serialized_size
from cachemeter.egress import EgressMonitor
from cachemeter.result import Err, Ok, Result, StorageErrorKind

logger = structlog.get_logger()

Fetch = Callable[[], Awaitable[Result[Any]]]
ResponseHook = Callable[[httpx.Response], Awaitable[None]]


def endpoint_name(request: "httpx.Request") -> "str":
    """
    names the endpoint a request is attributed to, e.g. 'GET /rest/v1/posts'.
    """
    return f"{request.method} {request.url.path}"


def egress_event_hooks(monitor: "EgressMonitor") -> "dict[str, list[ResponseHook]]":
    """
    returns event hooks for an httpx.AsyncClient that record the body
    size of every response as uncached egress.
    """

    async def _on_response(response: "httpx.Response") -> "None":
        await response.aread()
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        monitor.record(
            endpoint_name(response.request),
            len(response.content),
            cached=False,
            content_type=content_type or None,
        )

    return {"response": [_on_response]}


async def fetch_json(
    client: "httpx.AsyncClient",
    method: "str",
    url: "str",
    **kwargs: "Any",
) -> "Result[Any]":
    """
    performs a request and decodes the JSON body. Transport errors,
    error statuses and undecodable bodies come back as Err so nothing
    unvalidated reaches the cache.
    """
    try:
        resp = await client.request(method, url, **kwargs)
        resp.raise_for_status()
        return Ok(resp.json())
    except httpx.HTTPError as exc:
        return Err(StorageErrorKind.FETCH_FAILURE, str(exc))
    except ValueError as exc:
        return Err(StorageErrorKind.FETCH_FAILURE, f"invalid JSON body: {exc}")


async def read_through(
    cache: "CacheStore",
    monitor: "EgressMonitor",
    key: "str",
    endpoint: "str",
    fetch: "Fetch",
    ttl_seconds: "float | None" = None,
    record_miss: "bool" = True,
) -> "Result[Any]":
    """
    serves key from cache when possible, otherwise calls fetch and
    caches its value. Either way the transfer is recorded against
    endpoint: a hit with the cached entry's stored size, a miss with
    the fetched payload's size. Pass record_miss=False when the
    client already records responses through egress_event_hooks.
    """
    value = cache.get(key)
    if value is not None:
        monitor.record(endpoint, cache.entry_size(key) or 0, cached=True)
        return Ok(value)

    result = await fetch()
    if isinstance(result, Err):
        logger.warning(
            "read_through_fetch_failed",
            key=key,
            endpoint=endpoint,
            detail=result.detail,
        )
        return result

    cache.set(key, result.value, ttl_seconds)
    if record_miss:
        _, size = serialized_size(result.value)
        monitor.record(endpoint, size, cached=False)
    return result
