"""Cache-aside storage for proxied upstream responses."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import httpx
import structlog
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.networking import EgressDenied
from .resolver import CacheKey
from .routes import Route
from .supervisor import TaskSupervisor


LOGGER = structlog.get_logger("cowysvoid.edge_proxy.store")
TRACER = trace.get_tracer("cowysvoid.edge_proxy")

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("cowysvoid_edge_cache_hits_total", "Requests served from the edge cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("cowysvoid_edge_cache_misses_total", "Requests that missed the edge cache"))
STORE_COUNTER = GLOBAL_REGISTRY.register(Counter("cowysvoid_edge_cache_stores_total", "Entries written to the edge cache"))
STORE_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cowysvoid_edge_cache_store_failures_total", "Edge cache writes that failed")
)
CACHE_EVICTIONS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cowysvoid_edge_cache_evictions_total", "Entries evicted from the in-process cache")
)
UPSTREAM_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("cowysvoid_upstream_fetches_total", "Upstream fetch attempts"))
UPSTREAM_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cowysvoid_upstream_errors_total", "Upstream responses with a non-success status")
)
NETWORK_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("cowysvoid_upstream_network_failures_total", "Upstream fetches that never got a response")
)


class CacheBackendError(RuntimeError):
    """The key/value service behind the cache could not be reached."""


class CacheEntry(BaseModel):
    """Stored upstream success. Immutable; a refresh replaces the whole entry."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    status: int
    content_type: str
    cache_control: str
    body: bytes
    stored_at: float
    ttl_seconds: int

    def is_fresh(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now < self.stored_at + self.ttl_seconds


@dataclass(frozen=True)
class UpstreamResult:
    upstream_url: str
    status: Optional[int] = None
    reason: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 300

    @property
    def network_failure(self) -> bool:
        return self.error is not None


class CacheBackend:
    name = "abstract"

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCacheBackend(CacheBackend):
    """Process-local backend, suitable for a single worker or tests.

    Holds at most ``max_entries`` items. Each write first drops expired items,
    then evicts the least recently written ones until the new item fits.
    """

    name = "memory"

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._clock = clock
        # Insertion order is write order; a rewrite moves the key to the end.
        self._items: dict[str, tuple[float, bytes]] = {}

    async def get(self, key: str) -> Optional[bytes]:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            self._items.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        now = self._clock()
        self._items.pop(key, None)
        self._purge_expired(now)
        evicted = 0
        while len(self._items) >= self._max_entries:
            oldest = next(iter(self._items))
            del self._items[oldest]
            evicted += 1
        if evicted:
            CACHE_EVICTIONS_COUNTER.inc(evicted)
            LOGGER.info("cache_evicted", count=evicted, max_entries=self._max_entries)
        self._items[key] = (now + ttl_seconds, value)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._items.items() if now >= expires_at]
        for key in expired:
            del self._items[key]

    def __len__(self) -> int:
        return len(self._items)


class RedisCacheBackend(CacheBackend):
    """Shared backend; Redis owns expiry through ``SET ... EX``."""

    name = "redis"

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(Redis.from_url(url, decode_responses=False))

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"redis get failed: {exc}") from exc

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise CacheBackendError(f"redis set failed: {exc}") from exc

    async def close(self) -> None:
        await self._redis.aclose()


def build_backend(redis_url: Optional[str], memory_max_entries: int = 10_000) -> CacheBackend:
    if redis_url:
        return RedisCacheBackend.from_url(redis_url)
    return MemoryCacheBackend(max_entries=memory_max_entries)


class CacheAsideStore:
    """Lookup, single upstream fetch per miss, and conditional background store."""

    def __init__(self, backend: CacheBackend, http_client: httpx.AsyncClient, supervisor: TaskSupervisor) -> None:
        self.backend = backend
        self._http = http_client
        self._supervisor = supervisor

    async def lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        with TRACER.start_as_current_span("edge_proxy.lookup", attributes={"cowysvoid.cache_key": key.identity}) as span:
            try:
                payload = await self.backend.get(key.storage_key)
            except CacheBackendError as exc:
                LOGGER.warning("cache_lookup_failed", cache_key=key.identity, error=str(exc))
                payload = None
            entry = self._decode(key, payload)
            span.set_attribute("cowysvoid.cache_hit", entry is not None)
        if entry is None:
            MISS_COUNTER.inc()
            LOGGER.info("cache_miss", cache_key=key.identity)
            return None
        HIT_COUNTER.inc()
        LOGGER.info("cache_hit", cache_key=key.identity, bytes=len(entry.body))
        return entry

    def _decode(self, key: CacheKey, payload: Optional[bytes]) -> Optional[CacheEntry]:
        if payload is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(payload)
        except ValidationError:
            LOGGER.warning("cache_entry_corrupt", cache_key=key.identity)
            return None
        return entry if entry.is_fresh() else None

    async def fetch(self, upstream_url: str, headers: Mapping[str, str] | None = None) -> UpstreamResult:
        UPSTREAM_FETCH_COUNTER.inc()
        with TRACER.start_as_current_span("edge_proxy.fetch", attributes={"cowysvoid.upstream": upstream_url}) as span:
            try:
                response = await self._http.get(upstream_url, headers=dict(headers or {}))
            except (httpx.HTTPError, httpx.InvalidURL, EgressDenied) as exc:
                NETWORK_FAILURE_COUNTER.inc()
                detail = str(exc) or exc.__class__.__name__
                LOGGER.warning("upstream_network_failure", upstream=upstream_url, error=detail)
                return UpstreamResult(upstream_url=upstream_url, error=detail)
            span.set_attribute("http.status_code", response.status_code)
        result = UpstreamResult(
            upstream_url=upstream_url,
            status=response.status_code,
            reason=response.reason_phrase,
            headers=dict(response.headers),
            body=response.content,
        )
        if not result.ok:
            UPSTREAM_ERROR_COUNTER.inc()
            LOGGER.warning("upstream_error", upstream=upstream_url, status=result.status)
        return result

    async def fetch_and_maybe_store(
        self,
        key: CacheKey,
        upstream_url: str,
        ttl_seconds: Optional[int],
        route: Route,
    ) -> UpstreamResult:
        """Fetch once; schedule a store only for a 2xx result on a cacheable route."""

        result = await self.fetch(upstream_url, route.upstream_headers)
        if result.ok and ttl_seconds:
            entry = CacheEntry(
                status=result.status,
                content_type=result.headers.get("content-type") or route.content_type_fallback,
                cache_control=route.cache_control,
                body=result.body,
                stored_at=time.time(),
                ttl_seconds=ttl_seconds,
            )
            self._supervisor.spawn(self._store(key, entry), name=f"cache-store:{key.storage_key}")
        return result

    async def _store(self, key: CacheKey, entry: CacheEntry) -> None:
        try:
            await self.backend.set(key.storage_key, entry.model_dump_json().encode("utf-8"), entry.ttl_seconds)
        except CacheBackendError as exc:
            STORE_FAILURE_COUNTER.inc()
            LOGGER.warning("cache_store_failed", cache_key=key.identity, error=str(exc))
            return
        STORE_COUNTER.inc()
        LOGGER.debug("cache_stored", cache_key=key.identity, ttl=entry.ttl_seconds, bytes=len(entry.body))
