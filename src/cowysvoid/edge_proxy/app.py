"""Edge caching reverse proxy for the Archidekt deck API and Scryfall images."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Mapping, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.networking import UpstreamEgressGuard, create_guarded_async_client
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import EdgeProxySettings
from .cors import CORSWrapperMiddleware
from .errors import ProxyError
from .normalizer import NO_STORE, error_response, from_entry, from_upstream
from .resolver import resolve
from .routes import JSON_CONTENT_TYPE, Route, build_routes, upstream_hosts
from .store import CacheAsideStore, CacheBackend, build_backend
from .supervisor import TaskSupervisor
from .validation import validate_request


SERVICE_NAME = "cowysvoid.edge_proxy"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("cowysvoid_edge_requests_total", "Total edge proxy requests"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "cowysvoid_edge_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Edge proxy request latency",
    )
)


class EdgeProxyState:
    def __init__(
        self,
        settings: EdgeProxySettings,
        routes: Mapping[str, Route],
        backend: CacheBackend,
        http_client: httpx.AsyncClient,
    ) -> None:
        self.settings = settings
        self.routes = routes
        self.backend = backend
        self.http_client = http_client
        self.supervisor = TaskSupervisor()
        self.store = CacheAsideStore(backend, http_client, self.supervisor)
        self.logger = structlog.get_logger(SERVICE_NAME).bind(backend=backend.name)

    async def shutdown(self) -> None:
        abandoned = await self.supervisor.drain(self.settings.store_drain_seconds)
        if abandoned:
            self.logger.warning("cache_stores_abandoned", count=abandoned)
        await self.http_client.aclose()
        await self.backend.close()


def get_state(request: Request) -> EdgeProxyState:
    return request.app.state.edge_state  # type: ignore[attr-defined]


def proxy_endpoint(route: Route) -> Callable[[Request], Awaitable[Response]]:
    """Build the GET handler for one route: validate, resolve, cache-aside, normalize."""

    async def handle(request: Request) -> Response:
        state = get_state(request)
        params = validate_request(route, request.path_params, request.query_params.multi_items())
        proxied = resolve(route, params, request.method)
        if route.cacheable:
            entry = await state.store.lookup(proxied.cache_key)
            if entry is not None:
                return from_entry(entry)
        result = await state.store.fetch_and_maybe_store(
            proxied.cache_key,
            proxied.upstream_url,
            route.edge_ttl_seconds,
            route,
        )
        return from_upstream(route, result)

    handle.__name__ = f"proxy_{route.name}"
    return handle


def create_app(
    settings: Optional[EdgeProxySettings] = None,
    *,
    backend: Optional[CacheBackend] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or EdgeProxySettings()
    configure_logging(SERVICE_NAME, settings.log_level)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    routes = build_routes(settings)
    http_client = create_guarded_async_client(
        guard=UpstreamEgressGuard(upstream_hosts(routes)),
        timeout=settings.upstream_timeout_seconds,
        transport=transport,
    )
    if backend is None:
        backend = build_backend(settings.redis_url, settings.memory_cache_max_entries)
    state = EdgeProxyState(settings, routes, backend, http_client)
    GLOBAL_REGISTRY.register(
        Gauge(
            "cowysvoid_edge_pending_stores",
            "Cache stores scheduled but not finished",
            supplier=lambda: float(state.supervisor.pending),
        )
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.edge_state = state

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        state.logger.info("request_rejected", path=request.url.path, where=exc.where, error=exc.error)
        return error_response(exc)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            return JSONResponse(
                {"ok": False, "where": "edge", "error": "Internal proxy error"},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                headers={"cache-control": NO_STORE},
                media_type=JSON_CONTENT_TYPE,
            )

        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
            "cache": response.headers.get("x-cache"),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    # Added last so it wraps every response produced above, errors included.
    app.add_middleware(CORSWrapperMiddleware)

    for route in routes.values():
        handler = proxy_endpoint(route)
        for path in route.paths:
            app.add_api_route(path, handler, methods=["GET"], name=f"{route.name}:{path}")

    @app.get("/ping")
    @app.get("/api/ping")
    async def ping() -> JSONResponse:
        return JSONResponse(
            {"ok": True, "where": "edge"},
            headers={"cache-control": NO_STORE},
            media_type=JSON_CONTENT_TYPE,
        )

    @app.get("/healthz")
    async def health_check(state: EdgeProxyState = Depends(get_state)) -> dict:
        """Readiness check reporting the cache backend and pending stores."""
        return {
            "status": "healthy",
            "checks": {
                "backend": state.backend.name,
                "pending_stores": state.supervisor.pending,
            },
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: EdgeProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
