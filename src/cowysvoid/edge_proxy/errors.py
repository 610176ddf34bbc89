"""Failure taxonomy for the edge proxy.

Every failure renders as the same JSON envelope::

    {"ok": false, "where": "validation" | "upstream" | "network", "error": ..., ...}

``where`` tells the caller whether the request was rejected locally, rejected
by the upstream, or never reached the upstream at all.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import status


UPSTREAM_HINT = (
    'Open the "upstream" URL directly in a browser. If that is 200 the proxy path is fine '
    "but the upstream refused this request. If that is 404 the resource is invalid or not public."
)


class ProxyError(Exception):
    """Base class for failures surfaced to proxy clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    where: str = "edge"

    def __init__(self, error: str, **details: Any) -> None:
        super().__init__(error)
        self.error = error
        self.details = {key: value for key, value in details.items() if value is not None}

    def envelope(self) -> dict[str, Any]:
        return {"ok": False, "where": self.where, "error": self.error, **self.details}


class InvalidParameter(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    where = "validation"


class HostNotAllowed(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN
    where = "validation"


class UpstreamError(ProxyError):
    """Upstream was reachable but answered with a non-success status."""

    where = "upstream"

    def __init__(self, upstream: str, upstream_status: int, status_text: Optional[str] = None) -> None:
        super().__init__(
            "Upstream returned an error",
            status=upstream_status,
            statusText=status_text or "",
            upstream=upstream,
            hint=UPSTREAM_HINT,
        )
        self.status_code = upstream_status


class NetworkFailure(ProxyError):
    """Upstream could not be reached (DNS, connect, timeout, egress refusal)."""

    status_code = status.HTTP_502_BAD_GATEWAY
    where = "network"

    def __init__(self, upstream: str, detail: str) -> None:
        super().__init__("Upstream fetch failed", detail=detail, upstream=upstream)
