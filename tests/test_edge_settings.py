from __future__ import annotations

import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from cowysvoid.common import observability
from cowysvoid.common.networking import EgressDenied, UpstreamEgressGuard
from cowysvoid.common.settings import EdgeProxySettings
from cowysvoid.edge_proxy.errors import NetworkFailure, UpstreamError
from cowysvoid.edge_proxy.routes import build_routes


def test_defaults_match_edge_cache_policy() -> None:
    settings = EdgeProxySettings(_env_file=None)
    routes = build_routes(settings)
    assert routes["deck"].cache_control == "public, s-maxage=600, max-age=120"
    assert routes["decks"].edge_ttl_seconds == 600
    assert routes["image"].cache_control == "public, max-age=31536000, immutable"
    assert routes["image"].allowed_hosts == frozenset({"cards.scryfall.io", "svgs.scryfall.io"})
    assert routes["image"].upstream_headers["User-Agent"] == "cowysvoid-pages-proxy"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COWYSVOID_EDGE_TTL", "900")
    monkeypatch.setenv("COWYSVOID_CLIENT_MAX_AGE", "60")
    monkeypatch.setenv("COWYSVOID_IMAGE_ALLOWED_HOSTS", "Cards.Scryfall.io, example.org ,")
    monkeypatch.setenv("COWYSVOID_ARCHIDEKT_API_BASE", "https://staging.archidekt.com/api/")
    settings = EdgeProxySettings(_env_file=None)
    routes = build_routes(settings)

    assert settings.image_allowed_hosts == ["cards.scryfall.io", "example.org"]
    assert routes["deck"].cache_control == "public, s-maxage=900, max-age=60"
    assert routes["deck"].upstream_template == "https://staging.archidekt.com/api/decks/{id}"


def test_negative_ttl_rejected() -> None:
    with pytest.raises(ValidationError):
        EdgeProxySettings(_env_file=None, edge_ttl_seconds=-1)


def test_egress_guard_allows_only_known_hosts() -> None:
    guard = UpstreamEgressGuard(["Archidekt.com", " cards.scryfall.io "])
    guard.ensure_allowed("https://archidekt.com/api/decks/1")
    guard.ensure_allowed("https://CARDS.scryfall.io/a.jpg")
    for url in ("https://evil.example/", "file:///etc/passwd", "gopher://archidekt.com/"):
        with pytest.raises(EgressDenied):
            guard.ensure_allowed(url)


def test_error_envelopes_identify_failure_origin() -> None:
    upstream = UpstreamError("https://archidekt.com/api/decks/1", 404, "Not Found")
    network = NetworkFailure("https://archidekt.com/api/decks/1", "ConnectError")
    assert upstream.status_code == 404
    assert upstream.envelope()["where"] == "upstream"
    assert upstream.envelope()["statusText"] == "Not Found"
    assert network.status_code == 502
    assert network.envelope() == {
        "ok": False,
        "where": "network",
        "error": "Upstream fetch failed",
        "detail": "ConnectError",
        "upstream": "https://archidekt.com/api/decks/1",
    }


def test_configure_logging_emits_json(caplog, monkeypatch) -> None:
    monkeypatch.setattr(observability, "_logging_configured", False)
    observability.configure_logging("cowysvoid.test", "INFO")
    logger = structlog.get_logger("cowysvoid.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("structured-event", foo="bar")

    payload = json.loads(caplog.records[-1].message)
    assert payload["message"] == "structured-event"
    assert payload["foo"] == "bar"
    assert payload["service"] == "cowysvoid.test"


def test_parse_otlp_headers() -> None:
    headers = observability.parse_otlp_headers("authorization=Bearer token, custom=abc")
    assert headers == {"authorization": "Bearer token", "custom": "abc"}


def test_memory_cache_capacity_setting(monkeypatch: pytest.MonkeyPatch) -> None:
    assert EdgeProxySettings(_env_file=None).memory_cache_max_entries == 10_000
    monkeypatch.setenv("COWYSVOID_MEMORY_CACHE_MAX_ENTRIES", "250")
    assert EdgeProxySettings(_env_file=None).memory_cache_max_entries == 250
    with pytest.raises(ValidationError):
        EdgeProxySettings(_env_file=None, memory_cache_max_entries=0)
