"""Company analysis aggregation engine.

One call to :meth:`CompanyAnalysisEngine.load_page` snapshots the schema
capabilities, runs the primary count/activity/page queries concurrently,
fills gaps from the fallback sources and classifies every record.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.services.analysis.cache import TTLCacheStore
from app.services.analysis.capabilities import (
    PRIMARY_FIELDS,
    QUEUE_FIELDS,
    RequestCapabilities,
    plan_capabilities,
    table_ref,
)
from app.services.analysis.classifier import QUEUED_STATUS_TOKENS, classify
from app.services.analysis.fallback_sources import (
    FallbackAggregator,
    FallbackSource,
    SourceContext,
    default_sources,
)
from app.services.analysis.industry import IndustryPrefixLookup
from app.services.analysis.merger import identifiers, merge_record, signals_for
from app.services.analysis.parsing import parse_string
from app.services.analysis.query_planner import SqlStatement, build_query, build_state_query
from app.services.analysis.schema_catalog import SchemaCatalog
from app.services.analysis.types import (
    ActiveSummary,
    ActivityState,
    AnalysisPage,
    AnalysisQueryError,
    AnalysisRequest,
    IntegrationHealth,
)


logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompanyAnalysisEngine:
    def __init__(
        self,
        session_factory: Callable[[], Any],
        cache: TTLCacheStore,
        settings: Settings,
        health_probe: Optional[Any] = None,
        sources: Optional[Sequence[FallbackSource]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._health_probe = health_probe
        self._clock = clock
        self._stale_after = timedelta(minutes=settings.analysis_stale_minutes)
        self.catalog = SchemaCatalog(
            session_factory,
            cache,
            settings.schema_cache_ttl_seconds,
            settings.schema_failure_ttl_seconds,
        )
        self.industries = IndustryPrefixLookup(
            session_factory,
            cache,
            schema=settings.db_schema,
            table=settings.industry_okved_table,
            ttl_seconds=settings.industry_cache_ttl_seconds,
        )
        context = SourceContext(
            session_factory,
            self.catalog,
            schema=settings.db_schema,
            list_limit=settings.fallback_list_limit,
            site_parse_table=settings.site_parse_table,
        )
        self.fallbacks = FallbackAggregator(
            context,
            default_sources(settings) if sources is None else sources,
            timeout_seconds=settings.fallback_source_timeout_seconds,
        )

    async def capabilities(self) -> RequestCapabilities:
        """Resolve the schema-dependent plan once; callers reuse it for the whole request."""
        schema = self._settings.db_schema
        primary, queue = await asyncio.gather(
            self.catalog.resolve_table(schema, self._settings.analysis_table),
            self.catalog.resolve_table(schema, self._settings.analysis_queue_table),
        )
        if not primary.available:
            raise AnalysisQueryError(f"analysis table {self._settings.analysis_table!r} is not available")
        return RequestCapabilities(
            primary_table=table_ref(primary),
            primary=plan_capabilities(PRIMARY_FIELDS, primary.column_names),
            queue_table=table_ref(queue) if queue.available else None,
            queue=plan_capabilities(QUEUE_FIELDS, queue.column_names),
        )

    async def _fetch(self, statement: SqlStatement) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(text(statement.sql), statement.params)
            return [dict(row) for row in result.mappings().all()]

    async def _activity(self, statement: Optional[SqlStatement]) -> Optional[ActiveSummary]:
        if statement is None:
            return None
        try:
            rows = await self._fetch(statement)
        except SQLAlchemyError as exc:
            logger.warning("analysis_activity.failed", error=str(exc))
            return None
        row = rows[0] if rows else {}
        return ActiveSummary(running=int(row.get("running") or 0), queued=int(row.get("queued") or 0))

    async def _health(self) -> Optional[IntegrationHealth]:
        if self._health_probe is None:
            return None
        try:
            return await self._health_probe.check()
        except Exception as exc:
            logger.warning("analyzer_health.failed", error=str(exc))
            return IntegrationHealth(base=None, available=False, detail=str(exc) or "health check failed")

    def annotate(self, record: Dict[str, Any], now: datetime, queue_tracked: bool) -> Dict[str, Any]:
        classification = classify(signals_for(record, queue_tracked), now, self._stale_after)
        record["activity_state"] = classification.state.value
        record["outcome"] = classification.outcome.value
        status = (record.get("analysis_status") or "").lower()
        if classification.state == ActivityState.queued and not any(t in status for t in QUEUED_STATUS_TOKENS):
            record["analysis_status"] = "queued"
        return record

    async def load_page(self, request: AnalysisRequest, now: Optional[datetime] = None) -> AnalysisPage:
        now = now or self._clock()
        caps = await self.capabilities()
        available = caps.availability()

        filters = request.filters
        if filters.industry_id is not None:
            prefixes = await self.industries.prefixes(filters.industry_id)
            filters = replace(filters, industry_prefixes=prefixes)

        planned = build_query(filters, caps, request.sort, request.page, request.page_size, now - self._stale_after)
        if planned.empty:
            return AnalysisPage.empty(request.page, request.page_size, available)

        try:
            count_rows, active, page_rows, integration = await asyncio.gather(
                self._fetch(planned.count),
                self._activity(planned.activity),
                self._fetch(planned.page),
                self._health(),
            )
        except SQLAlchemyError as exc:
            raise AnalysisQueryError(str(exc)) from exc

        total = int(count_rows[0].get("cnt") or 0) if count_rows else 0
        fallbacks = await self.fallbacks.load(identifiers(page_rows))

        items = []
        for row in page_rows:
            record = merge_record(row, fallbacks.get(parse_string(row.get("inn")) or ""))
            items.append(self.annotate(record, now, caps.queue_available))

        return AnalysisPage(
            items=items,
            total=total,
            page=request.page,
            page_size=request.page_size,
            available=available,
            active=active,
            integration=integration,
        )

    async def load_states(self, inns: Iterable[str], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Lifecycle snapshots for explicit identifiers, in request order."""
        wanted = list(dict.fromkeys(s for s in (parse_string(v) for v in inns or []) if s))
        if not wanted:
            return []
        now = now or self._clock()
        caps = await self.capabilities()
        try:
            rows = await self._fetch(build_state_query(caps, wanted))
        except SQLAlchemyError as exc:
            raise AnalysisQueryError(str(exc)) from exc
        by_inn = {parse_string(row.get("inn")): row for row in rows}
        return [
            self.annotate(merge_record(by_inn[inn]), now, caps.queue_available)
            for inn in wanted
            if inn in by_inn
        ]
