"""Canonical upstream URL and cache key construction."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

from .routes import Route
from .validation import ValidatedParams


CACHE_KEY_PREFIX = "edge-cache:"


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached upstream response: method plus canonical URL."""

    method: str
    url: str

    @property
    def identity(self) -> str:
        return f"{self.method} {self.url}"

    @property
    def storage_key(self) -> str:
        return CACHE_KEY_PREFIX + hashlib.sha256(self.identity.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ProxyRequest:
    route: Route
    params: ValidatedParams
    upstream_url: str
    cache_key: CacheKey


def canonical_url(url: str) -> str:
    """Lower-case scheme and host, leaving path and query untouched."""

    parts = urlsplit(url)
    netloc = parts.netloc
    if parts.hostname:
        netloc = parts.hostname.lower()
        if ":" in netloc:
            netloc = f"[{netloc}]"
        if parts.port is not None:
            netloc = f"{netloc}:{parts.port}"
        if parts.username:
            userinfo = parts.username + (f":{parts.password}" if parts.password else "")
            netloc = f"{userinfo}@{netloc}"
    return urlunsplit((parts.scheme.lower(), netloc, parts.path, parts.query, ""))


def canonical_query(pairs: tuple[tuple[str, str], ...]) -> str:
    """Encode query pairs sorted by name; repeated names keep their order.

    A bare flag (``?descending``) and an empty value (``?descending=``) parse
    to the same pair and are both forwarded as ``descending=``.
    """

    return urlencode(sorted(pairs, key=lambda pair: pair[0]))


def resolve(route: Route, params: ValidatedParams, method: str = "GET") -> ProxyRequest:
    if route.kind == "id":
        upstream = route.upstream_template.format(id=quote(params.path_params["id"], safe=""))
    elif route.kind == "listing":
        query = canonical_query(params.query)
        upstream = route.upstream_template + (f"?{query}" if query else "")
    else:
        upstream = params.path_params[route.target_param or "url"]
    upstream = canonical_url(upstream)
    return ProxyRequest(
        route=route,
        params=params,
        upstream_url=upstream,
        cache_key=CacheKey(method=method.upper(), url=upstream),
    )
