"""Per-route request validation, run before any cache or network access."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence
from urllib.parse import urlsplit

from .errors import HostNotAllowed, InvalidParameter
from .routes import Route


@dataclass(frozen=True)
class ValidatedParams:
    path_params: Mapping[str, str]
    query: tuple[tuple[str, str], ...]


def validate_request(
    route: Route,
    path_params: Mapping[str, str],
    query: Sequence[tuple[str, str]],
) -> ValidatedParams:
    """Return normalized parameters for ``route`` or raise a ProxyError subclass."""

    if route.kind == "id":
        return ValidatedParams(path_params={"id": _validate_id(route, path_params.get("id"))}, query=())
    if route.kind == "target":
        param = route.target_param or "url"
        targets = [value for key, value in query if key == param]
        return ValidatedParams(path_params={param: _validate_target(route, targets[0] if targets else None)}, query=())
    return ValidatedParams(path_params={}, query=tuple((str(key), str(value)) for key, value in query))


def _validate_id(route: Route, raw_id: str | None) -> str:
    if not raw_id or route.id_pattern is None or not route.id_pattern.fullmatch(raw_id):
        raise InvalidParameter("Missing or invalid id", id=raw_id)
    return raw_id


def _validate_target(route: Route, target: str | None) -> str:
    if not target:
        raise InvalidParameter(f"Missing ?{route.target_param}=")
    try:
        parsed = urlsplit(target)
        hostname = parsed.hostname
        parsed.port
    except ValueError as exc:
        raise InvalidParameter("Invalid url", detail=str(exc)) from exc
    if parsed.scheme.lower() not in {"http", "https"} or not hostname:
        raise InvalidParameter("Invalid url", detail="target must be an absolute http(s) URL")
    if hostname.lower() not in route.allowed_hosts:
        raise HostNotAllowed("Host not allowed", detail=hostname.lower())
    return target
