"""Shape cache entries, upstream results and failures into outgoing responses."""

from __future__ import annotations

from fastapi import Response
from fastapi.responses import JSONResponse

from .errors import NetworkFailure, ProxyError, UpstreamError
from .routes import JSON_CONTENT_TYPE, Route
from .store import CacheEntry, UpstreamResult


NO_STORE = "no-store"


def from_entry(entry: CacheEntry) -> Response:
    return Response(
        content=entry.body,
        status_code=entry.status,
        headers={
            "content-type": entry.content_type,
            "cache-control": entry.cache_control,
            "x-cache": "HIT",
        },
    )


def from_upstream(route: Route, result: UpstreamResult) -> Response:
    if result.network_failure:
        return error_response(NetworkFailure(result.upstream_url, result.error or "unknown error"))
    if not result.ok:
        return error_response(UpstreamError(result.upstream_url, result.status or 502, result.reason))
    return Response(
        content=result.body,
        status_code=result.status,
        headers={
            "content-type": result.headers.get("content-type") or route.content_type_fallback,
            "cache-control": route.cache_control,
            "x-cache": "MISS",
        },
    )


def error_response(error: ProxyError) -> JSONResponse:
    return JSONResponse(
        error.envelope(),
        status_code=error.status_code,
        headers={"cache-control": NO_STORE},
        media_type=JSON_CONTENT_TYPE,
    )
