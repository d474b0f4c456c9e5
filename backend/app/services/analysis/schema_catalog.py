"""Case-insensitive table/column discovery backed by information_schema."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from sqlalchemy import text

from app.services.analysis.cache import TTLCacheStore
from app.services.analysis.types import TableMetadata


logger = structlog.get_logger()

DEFAULT_SCHEMA_TTL_SECONDS = 300
DEFAULT_FAILURE_TTL_SECONDS = 5

_TABLE_SQL = text(
    """
    SELECT table_schema, table_name
    FROM information_schema.tables
    WHERE LOWER(table_schema) = LOWER(:schema)
      AND LOWER(table_name) = LOWER(:table)
    ORDER BY (table_name = :table) DESC, table_name
    LIMIT 1
    """
)

_COLUMNS_SQL = text(
    """
    SELECT column_name
    FROM information_schema.columns
    WHERE table_schema = :schema AND table_name = :table
    """
)


class SchemaCatalog:
    """Resolves logical table names into :class:`TableMetadata`.

    Lookups are cached per ``(schema, logical name)`` in the injected store and
    refreshed lazily after the TTL. A failed lookup is reported as an absent
    table, never as an exception, and is only remembered for the short
    ``failure_ttl_seconds`` so a recovered database is picked up quickly.
    """

    def __init__(
        self,
        session_factory: Callable[[], Any],
        cache: TTLCacheStore,
        ttl_seconds: float = DEFAULT_SCHEMA_TTL_SECONDS,
        failure_ttl_seconds: float = DEFAULT_FAILURE_TTL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._failure_ttl_seconds = failure_ttl_seconds

    @staticmethod
    def cache_key(schema: str, logical_name: str) -> tuple:
        return ("schema_catalog", str(schema).lower(), str(logical_name).lower())

    async def resolve_table(self, schema: str, logical_name: str) -> TableMetadata:
        key = self.cache_key(schema, logical_name)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            metadata = await self._lookup(schema, logical_name)
        except Exception as exc:
            logger.warning(
                "schema_catalog.lookup_failed",
                schema=schema,
                table=logical_name,
                error=str(exc),
            )
            metadata = TableMetadata.missing(cached_at=datetime.now(timezone.utc))
            self._cache.set(key, metadata, self._failure_ttl_seconds)
            return metadata

        self._cache.set(key, metadata, self._ttl_seconds)
        return metadata

    async def _lookup(self, schema: str, logical_name: str) -> TableMetadata:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            found = (await session.execute(_TABLE_SQL, {"schema": schema, "table": logical_name})).mappings().first()
            if not found:
                return TableMetadata.missing(cached_at=now)
            real_schema = found["table_schema"]
            real_table = found["table_name"]
            rows = (await session.execute(_COLUMNS_SQL, {"schema": real_schema, "table": real_table})).scalars().all()
        return TableMetadata(
            table_name=real_table,
            column_names=frozenset(str(name) for name in rows),
            available=True,
            cached_at=now,
            schema_name=real_schema,
        )
