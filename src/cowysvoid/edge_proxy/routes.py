"""Static route table for the edge proxy."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal, Mapping, Optional
from urllib.parse import urlsplit

from ..common.settings import EdgeProxySettings


RouteKind = Literal["id", "listing", "target"]

NUMERIC_ID = re.compile(r"^\d+$", re.ASCII)
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
BINARY_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class Route:
    """Immutable description of one proxied endpoint."""

    name: str
    kind: RouteKind
    paths: tuple[str, ...]
    upstream_template: str
    cache_control: str
    content_type_fallback: str
    edge_ttl_seconds: Optional[int] = None
    id_pattern: Optional[re.Pattern[str]] = None
    target_param: Optional[str] = None
    allowed_hosts: frozenset[str] = frozenset()
    upstream_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def cacheable(self) -> bool:
        return bool(self.edge_ttl_seconds)


def api_cache_control(edge_ttl_seconds: int, client_max_age_seconds: int) -> str:
    return f"public, s-maxage={edge_ttl_seconds}, max-age={client_max_age_seconds}"


def build_routes(settings: EdgeProxySettings) -> Mapping[str, Route]:
    """Build the read-only route table from settings."""

    api_base = settings.archidekt_api_base
    json_cache_control = api_cache_control(settings.edge_ttl_seconds, settings.client_max_age_seconds)
    routes = (
        Route(
            name="deck",
            kind="id",
            # Any suffix, empty or containing separators, reaches the validator.
            paths=("/deck", "/deck/{id:path}", "/api/archidekt/deck", "/api/archidekt/deck/{id:path}"),
            upstream_template=f"{api_base}/decks/{{id}}",
            cache_control=json_cache_control,
            content_type_fallback=JSON_CONTENT_TYPE,
            edge_ttl_seconds=settings.edge_ttl_seconds,
            id_pattern=NUMERIC_ID,
        ),
        Route(
            name="decks",
            kind="listing",
            paths=("/decks", "/api/archidekt/decks"),
            upstream_template=f"{api_base}/decks/",
            cache_control=json_cache_control,
            content_type_fallback=JSON_CONTENT_TYPE,
            edge_ttl_seconds=settings.edge_ttl_seconds,
        ),
        Route(
            name="image",
            kind="target",
            paths=("/image", "/api/img"),
            upstream_template="{url}",
            cache_control=f"public, max-age={settings.image_max_age_seconds}, immutable",
            content_type_fallback=BINARY_CONTENT_TYPE,
            target_param="url",
            allowed_hosts=frozenset(settings.image_allowed_hosts),
            upstream_headers=MappingProxyType({"User-Agent": settings.image_user_agent}),
        ),
    )
    return MappingProxyType({route.name: route for route in routes})


def upstream_hosts(routes: Mapping[str, Route]) -> set[str]:
    """Every host the proxy may contact, used to guard the outbound client."""

    hosts: set[str] = set()
    for route in routes.values():
        if route.kind == "target":
            hosts.update(route.allowed_hosts)
            continue
        hostname = urlsplit(route.upstream_template).hostname
        if hostname:
            hosts.add(hostname.lower())
    return hosts
