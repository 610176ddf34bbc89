"""Egress controls for outbound upstream requests."""

from __future__ import annotations

from typing import Iterable, Optional
import urllib.parse

import httpx


class EgressDenied(PermissionError):
    """Raised when an outbound request targets a host outside the upstream set."""


class UpstreamEgressGuard:
    """Runtime checker restricting outbound requests to known upstream hosts."""

    def __init__(self, allowed_hosts: Iterable[str]) -> None:
        self._allowed_hosts = {host.strip().lower() for host in allowed_hosts if host and host.strip()}

    @property
    def allowed_hosts(self) -> frozenset[str]:
        return frozenset(self._allowed_hosts)

    def ensure_allowed(self, url: str) -> None:
        parsed = urllib.parse.urlsplit(url)
        hostname = (parsed.hostname or "").lower()
        if not hostname:
            raise EgressDenied("Outbound request missing hostname")
        if parsed.scheme not in {"http", "https"}:
            raise EgressDenied(f"Outbound scheme not permitted: {parsed.scheme}")
        if hostname not in self._allowed_hosts:
            raise EgressDenied(f"Egress to {hostname} is not permitted")


def create_guarded_async_client(
    *,
    guard: UpstreamEgressGuard,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Provide an httpx.AsyncClient enforcing the egress guard on every request.

    The hook also runs for each redirect hop, so an allowed upstream cannot
    bounce the proxy to an arbitrary host.
    """

    limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)

    async def _on_request(request: httpx.Request) -> None:
        guard.ensure_allowed(str(request.url))

    return httpx.AsyncClient(
        timeout=timeout or 10.0,
        limits=limits,
        follow_redirects=True,
        transport=transport,
        event_hooks={"request": [_on_request]},
    )
