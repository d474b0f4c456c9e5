import asyncio

import httpx

from app.config import Settings
from app.services.analysis.types import IntegrationHealth
from app.services.analyzer_health import AnalyzerHealthProbe, integration_base


class _MemoryCache:
    def __init__(self, stored=None):
        self.stored = stored
        self.saved = []

    async def get(self, base):
        return self.stored

    async def set(self, health, ttl_seconds):
        self.saved.append((health, ttl_seconds))


def _probe(handler, base="http://analyzer:8000/", cache=None):
    settings = Settings(ai_integration_base=base, integration_health_cache_ttl_seconds=15)
    return AnalyzerHealthProbe(settings=settings, cache=cache, transport=httpx.MockTransport(handler))


def test_missing_base_is_reported_without_a_request():
    calls = []
    probe = _probe(lambda request: calls.append(request), base=None)
    health = asyncio.run(probe.check())
    assert health == IntegrationHealth(base=None, available=False, detail="AI_INTEGRATION_BASE is not configured")
    assert calls == []


def test_healthy_analyzer_is_cached():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"status": "ok"})

    cache = _MemoryCache()
    health = asyncio.run(_probe(handler, cache=cache).check())
    assert health.available is True
    assert health.base == "http://analyzer:8000"
    assert health.detail == "ok"
    assert seen == ["http://analyzer:8000/health"]
    assert cache.saved == [(health, 15)]


def test_cached_snapshot_skips_the_probe():
    stored = IntegrationHealth(base="http://analyzer:8000", available=False, detail="HTTP 502")
    calls = []
    health = asyncio.run(_probe(lambda request: calls.append(request), cache=_MemoryCache(stored)).check())
    assert health == stored
    assert calls == []


def test_error_status_uses_response_detail():
    health = asyncio.run(_probe(lambda request: httpx.Response(503, json={"detail": "maintenance"})).check())
    assert health.available is False
    assert health.detail == "maintenance"

    health = asyncio.run(_probe(lambda request: httpx.Response(500, text="<html>")).check())
    assert health.detail == "HTTP 500"


def test_timeout_and_connection_errors_mark_unavailable():
    def timeout(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    health = asyncio.run(_probe(timeout).check())
    assert health.available is False
    assert health.detail == "AI integration request timed out"

    health = asyncio.run(_probe(refused).check())
    assert health.available is False
    assert health.detail == "connection refused"


def test_integration_base_validation():
    assert integration_base(" https://analyzer.local/api/ ") == "https://analyzer.local/api"
    assert integration_base("ftp://analyzer.local") is None
    assert integration_base("") is None
