"""Industry id -> classification-code prefix lookup."""
from __future__ import annotations

from typing import Any, Callable, List

from sqlalchemy import text

from app.services.analysis.cache import TTLCacheStore
from app.services.analysis.capabilities import quote_ident


DEFAULT_INDUSTRY_TTL_SECONDS = 600


class IndustryPrefixLookup:
    def __init__(
        self,
        session_factory: Callable[[], Any],
        cache: TTLCacheStore,
        schema: str,
        table: str,
        ttl_seconds: float = DEFAULT_INDUSTRY_TTL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._sql = text(
            f"""
            SELECT DISTINCT split_part(m.okved_code, '.', 1) AS root
            FROM {quote_ident(schema)}.{quote_ident(table)} m
            WHERE m.industry_id = :industry_id
            ORDER BY root
            """
        )

    async def prefixes(self, industry_id: int) -> List[str]:
        key = ("industry_prefixes", int(industry_id))
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        async with self._session_factory() as session:
            rows = (await session.execute(self._sql, {"industry_id": int(industry_id)})).scalars().all()
        roots = [str(root).strip() for root in rows if root and str(root).strip()]
        self._cache.set(key, tuple(roots), self._ttl_seconds)
        return roots
