"""Health probe for the upstream analyzer integration."""
from __future__ import annotations

import hashlib
import json
from functools import lru_cache
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import redis.asyncio as redis
import structlog

from app.config import Settings, get_settings
from app.services.analysis.types import IntegrationHealth


logger = structlog.get_logger()


class HealthSnapshotCache:
    """Shares the latest probe result between workers through Redis.

    Redis being unreachable only disables sharing; every method swallows
    connection errors and reports a cache miss.
    """

    def __init__(self, redis_url: str) -> None:
        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    @staticmethod
    def _key(base: str) -> str:
        digest = hashlib.sha256(base.encode("utf-8")).hexdigest()
        return f"analyzer_health:{digest}"

    async def get(self, base: str) -> Optional[IntegrationHealth]:
        try:
            raw = await self._client.get(self._key(base))
            if not raw:
                return None
            data = json.loads(raw)
            return IntegrationHealth(base=data.get("base"), available=bool(data.get("available")), detail=data.get("detail"))
        except Exception:
            return None

    async def set(self, health: IntegrationHealth, ttl_seconds: int) -> None:
        if not health.base:
            return
        try:
            await self._client.setex(self._key(health.base), max(1, int(ttl_seconds)), json.dumps(health.as_dict()))
        except Exception:
            return

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception:
            return


@lru_cache
def get_health_cache() -> HealthSnapshotCache:
    return HealthSnapshotCache(get_settings().redis_url)


def integration_base(raw: Optional[str]) -> Optional[str]:
    value = str(raw or "").strip()
    if not value:
        return None
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return value.rstrip("/")


def _error_detail(response: httpx.Response) -> str:
    try:
        data: Any = response.json()
    except ValueError:
        data = None
    detail = None
    if isinstance(data, dict):
        detail = data.get("detail") if data.get("detail") is not None else data.get("error")
    if isinstance(detail, str) and detail.strip():
        return detail
    if detail:
        return json.dumps(detail, ensure_ascii=False)
    return f"HTTP {response.status_code}"


class AnalyzerHealthProbe:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[HealthSnapshotCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._cache = cache
        self._transport = transport

    async def check(self) -> IntegrationHealth:
        base = integration_base(self._settings.ai_integration_base)
        if not base:
            return IntegrationHealth(base=None, available=False, detail="AI_INTEGRATION_BASE is not configured")

        if self._cache is not None:
            cached = await self._cache.get(base)
            if cached is not None:
                return cached

        health = await self._probe(base)
        if self._cache is not None:
            await self._cache.set(health, self._settings.integration_health_cache_ttl_seconds)
        return health

    async def _probe(self, base: str) -> IntegrationHealth:
        timeout = self._settings.ai_integration_health_timeout_seconds
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(f"{base}/health", headers={"Content-Type": "application/json"})
        except httpx.TimeoutException:
            return IntegrationHealth(base=base, available=False, detail="AI integration request timed out")
        except httpx.HTTPError as exc:
            logger.warning("analyzer_health.unreachable", base=base, error=str(exc))
            return IntegrationHealth(base=base, available=False, detail=str(exc) or "AI integration request failed")

        if response.status_code >= 400:
            return IntegrationHealth(base=base, available=False, detail=_error_detail(response))

        try:
            data = response.json()
        except ValueError:
            data = None
        status = None
        if isinstance(data, dict):
            status = data.get("status") if data.get("status") is not None else data.get("message")
        return IntegrationHealth(base=base, available=True, detail=str(status) if status is not None else None)
