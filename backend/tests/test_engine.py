import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.services.analysis.cache import TTLCacheStore
from app.services.analysis.engine import CompanyAnalysisEngine
from app.services.analysis.fallback_sources import FallbackSource
from app.services.analysis.types import (
    ActivityState,
    AnalysisFilters,
    AnalysisQueryError,
    AnalysisRequest,
    IntegrationHealth,
    Outcome,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

TABLES = {
    "dadata_result": [
        "inn",
        "short_name",
        "address",
        "branch_count",
        "year",
        "revenue",
        "status",
        "main_okved",
        "analysis_status",
        "analysis_progress",
        "analysis_started_at",
        "analysis_finished_at",
        "analysis_ok",
        "server_error",
        "analysis_info",
    ],
    "ai_analysis_queue": ["inn", "queued_at", "queued_by"],
}


class _FakeProbe:
    def __init__(self):
        self.calls = 0

    async def check(self):
        self.calls += 1
        return IntegrationHealth(base="http://analyzer:8000", available=True, detail="ok")


class _DescriptionSource(FallbackSource):
    name = "ai_response"

    def __init__(self):
        self.requested = []

    async def fetch(self, ctx, inns):
        self.requested.append(list(inns))
        return {"7700000002": {"description": "Produces metal structures"}}


def _page_rows():
    return [
        {
            "inn": "7700000001",
            "short_name": "Alpha",
            "revenue": 300,
            "analysis_status": "running",
            "analysis_progress": 40,
            "analysis_started_at": NOW - timedelta(minutes=3),
        },
        {
            "inn": "7700000002",
            "short_name": "Beta",
            "revenue": 200,
            "analysis_ok": 1,
            "analysis_progress": 1,
            "analysis_started_at": NOW - timedelta(hours=2),
            "analysis_finished_at": NOW - timedelta(hours=1),
        },
        {
            "inn": "7700000003",
            "short_name": "Gamma",
            "revenue": 100,
            "queued_at": NOW - timedelta(minutes=1),
            "analysis_finished_at": NOW - timedelta(days=2),
        },
    ]


class _Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _engine(db, sources=None, probe=None):
    return CompanyAnalysisEngine(db, TTLCacheStore(), Settings(), health_probe=probe, sources=sources or [])


def _primary_db(fake_db):
    db = fake_db(TABLES)
    db.on("AS cnt", [{"cnt": 3}])
    db.on("FILTER (WHERE", [{"running": 1, "queued": 1}])
    db.on("OFFSET", _page_rows())
    return db


def test_load_page_merges_fallbacks_and_classifies(fake_db):
    db = _primary_db(fake_db)
    source = _DescriptionSource()
    probe = _FakeProbe()
    engine = _engine(db, sources=[source], probe=probe)

    page = asyncio.run(engine.load_page(AnalysisRequest(page=1, page_size=30), now=NOW))

    assert page.total == 3
    assert page.active.running == 1 and page.active.queued == 1 and page.active.total == 2
    assert page.integration.available is True
    assert page.available["queue"] is True
    assert page.available["no_valid_site"] is False
    assert source.requested == [["7700000001", "7700000002", "7700000003"]]

    alpha, beta, gamma = page.items
    assert alpha["activity_state"] == ActivityState.running.value
    assert alpha["analysis_progress"] == 0.4
    assert beta["activity_state"] == ActivityState.idle.value
    assert beta["outcome"] == Outcome.completed.value
    assert beta["analysis_description"] == "Produces metal structures"
    assert beta["fallback_sources"] == {"description": "ai_response"}
    assert gamma["activity_state"] == ActivityState.queued.value
    assert gamma["analysis_status"] == "queued"
    assert probe.calls == 1


def test_empty_industry_skips_primary_queries(fake_db):
    db = _primary_db(fake_db)
    db.on("split_part(m.okved_code", [])
    engine = _engine(db)

    request = AnalysisRequest(filters=AnalysisFilters(industry_id=42))
    page = asyncio.run(engine.load_page(request, now=NOW))

    assert page.items == [] and page.total == 0
    assert db.statements("OFFSET") == []
    assert db.statements("AS cnt") == []
    assert len(db.statements("split_part(m.okved_code")) == 1


def test_industry_prefixes_are_cached(fake_db):
    db = _primary_db(fake_db)
    db.on("split_part(m.okved_code", [{"root": "25"}, {"root": "28"}])
    engine = _engine(db)

    request = AnalysisRequest(filters=AnalysisFilters(industry_id=42))
    asyncio.run(engine.load_page(request, now=NOW))
    asyncio.run(engine.load_page(request, now=NOW))

    assert len(db.statements("split_part(m.okved_code")) == 1
    _, params = db.statements("AS cnt")[0]
    assert ["25", "28"] in params.values()


def test_page_offset_follows_request(fake_db):
    db = _primary_db(fake_db)
    engine = _engine(db)

    asyncio.run(engine.load_page(AnalysisRequest(page=4, page_size=10), now=NOW))

    sql, params = db.statements("OFFSET")[0]
    offset_name = sql.split("OFFSET :")[1].split()[0]
    assert params[offset_name] == 30


def test_primary_query_failure_raises(fake_db):
    db = fake_db(TABLES)
    db.on("AS cnt", [{"cnt": 1}])
    db.on("OFFSET", SQLAlchemyError("connection reset"))
    engine = _engine(db)

    with pytest.raises(AnalysisQueryError):
        asyncio.run(engine.load_page(AnalysisRequest(), now=NOW))


def test_activity_failure_degrades_to_unknown(fake_db):
    db = fake_db(TABLES)
    db.on("AS cnt", [{"cnt": 0}])
    db.on("FILTER (WHERE", SQLAlchemyError("statement timeout"))
    engine = _engine(db)

    page = asyncio.run(engine.load_page(AnalysisRequest(), now=NOW))
    assert page.active is None
    assert page.items == []


def test_missing_primary_table_raises(fake_db):
    engine = _engine(fake_db({}))
    with pytest.raises(AnalysisQueryError):
        asyncio.run(engine.load_page(AnalysisRequest(), now=NOW))


def test_catalog_outage_clears_after_the_failure_ttl(fake_db):
    db = _primary_db(fake_db)
    db.schema_error = SQLAlchemyError("could not connect to server")
    clock = _Clock()
    engine = CompanyAnalysisEngine(
        db, TTLCacheStore(clock=clock), Settings(schema_failure_ttl_seconds=5), sources=[]
    )

    with pytest.raises(AnalysisQueryError):
        asyncio.run(engine.load_page(AnalysisRequest(), now=NOW))

    db.schema_error = None
    clock.now = 6
    page = asyncio.run(engine.load_page(AnalysisRequest(), now=NOW))
    assert page.total == 3
    assert len(page.items) == 3


def test_load_states_keeps_request_order(fake_db):
    db = fake_db(TABLES)
    rows = _page_rows()
    db.on("= ANY(CAST(", [rows[2], rows[0]])
    engine = _engine(db)

    states = asyncio.run(engine.load_states(["7700000001", "7700000003", "7700000009"], now=NOW))

    assert [s["inn"] for s in states] == ["7700000001", "7700000003"]
    assert states[0]["activity_state"] == ActivityState.running.value
    assert states[1]["activity_state"] == ActivityState.queued.value
    assert asyncio.run(engine.load_states([], now=NOW)) == []
