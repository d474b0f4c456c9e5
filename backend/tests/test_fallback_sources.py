import asyncio
import json

from app.services.analysis.cache import TTLCacheStore
from app.services.analysis.fallback_sources import (
    AiResponseSource,
    ContactsCacheSource,
    FallbackAggregator,
    FallbackSource,
    SiteParseSource,
    SourceContext,
    build_fallback_record,
)
from app.services.analysis.schema_catalog import SchemaCatalog


def _context(db):
    catalog = SchemaCatalog(db, TTLCacheStore())
    return SourceContext(db, catalog, schema="public", list_limit=5, site_parse_table="pars_site")


class _StaticSource(FallbackSource):
    def __init__(self, name, data):
        self.name = name
        self._data = data

    async def fetch(self, ctx, inns):
        return {inn: self._data[inn] for inn in inns if inn in self._data}


class _BrokenSource(FallbackSource):
    name = "classification_match"

    async def fetch(self, ctx, inns):
        raise RuntimeError("relation does not exist")


class _SlowSource(FallbackSource):
    name = "ai_response"

    async def fetch(self, ctx, inns):
        await asyncio.sleep(5)
        return {inn: {"description": "late"} for inn in inns}


def test_empty_identifier_list_issues_no_queries(fake_db):
    db = fake_db({"pars_site": ["inn", "domain_1"]})
    aggregator = FallbackAggregator(_context(db), [SiteParseSource("pars_site")])
    assert asyncio.run(aggregator.load([])) == {}
    assert asyncio.run(aggregator.load(["", None])) == {}
    assert db.executed == []


def test_chain_prefers_extraction_and_classification_tables():
    record = build_fallback_record(
        "1",
        {
            "extraction": {"goods": [], "equipment": [{"name": "Press", "score": 0.8}]},
            "equipment_catalog": [{"name": "Catalog press", "score": 1.0}],
            "classification_match": {"prodclass": "Metalwork", "prodclass_score": "0.9"},
            "ai_response": {
                "prodclass": "Other",
                "goods": '[{"name": "Bolts"}]',
                "description": "AI description",
            },
            "site_parse": {"description": "Manual text", "domain": "www.alpha.ru", "emails": "a@alpha.ru"},
        },
    )
    assert record.equipment == [{"name": "Press", "score": 0.8}]
    assert record.sources["equipment"] == "extraction"
    assert record.goods == [{"name": "Bolts"}]
    assert record.sources["goods"] == "ai_response"
    assert record.prodclass_name == "Metalwork"
    assert record.prodclass_score == 0.9
    assert record.description == "AI description"
    assert record.domain == "alpha.ru"
    assert record.sites == ["alpha.ru"]
    assert record.emails == ["a@alpha.ru"]


def test_failing_source_degrades_to_remaining_sources(fake_db):
    sources = [
        _BrokenSource(),
        _StaticSource("site_parse", {"1": {"description": "From site parse"}}),
    ]
    aggregator = FallbackAggregator(_context(fake_db()), sources)
    records = asyncio.run(aggregator.load(["1", "2"]))
    assert list(records) == ["1"]
    assert records["1"].description == "From site parse"
    assert records["1"].sources == {"description": "site_parse"}


def test_slow_source_times_out_without_failing_the_page(fake_db):
    sources = [
        _SlowSource(),
        _StaticSource("classification_match", {"1": {"prodclass": "Metalwork"}}),
    ]
    aggregator = FallbackAggregator(_context(fake_db()), sources, timeout_seconds=0.01)
    records = asyncio.run(aggregator.load(["1"]))
    assert records["1"].prodclass_name == "Metalwork"
    assert records["1"].description is None


def test_site_parse_source_batches_latest_row_per_identifier(fake_db):
    db = fake_db({"pars_site": ["id", "inn", "domain_1", "text_par", "created_at"]})
    db.on(
        "DISTINCT ON",
        [
            {"inn": "1", "domain": "https://www.alpha.ru/", "description": "Metal parts", "emails": None},
            {"inn": "2", "domain": None, "description": None, "emails": None},
        ],
    )
    aggregator = FallbackAggregator(_context(db), [SiteParseSource("pars_site")])
    records = asyncio.run(aggregator.load(["1", "2", "1"]))

    assert set(records) == {"1"}
    assert records["1"].domain == "alpha.ru"
    assert records["1"].description == "Metal parts"
    statements = db.statements("DISTINCT ON")
    assert len(statements) == 1
    sql, params = statements[0]
    assert params["inns"] == ["1", "2"]
    assert '"created_at" DESC NULLS LAST' in sql


def test_ai_response_reaches_identifier_through_site_parse(fake_db):
    db = fake_db(
        {
            "pars_site": ["id", "inn"],
            "ai_site_openai_responses": ["id", "text_pars_id", "response", "created_at"],
        }
    )
    db.on(
        "DISTINCT ON",
        [{"inn": "1", "response": json.dumps({"description": "Makes valves", "prodclass": "Valves"})}],
    )
    aggregator = FallbackAggregator(_context(db), [AiResponseSource("ai_site_openai_responses")])
    records = asyncio.run(aggregator.load(["1"]))

    assert records["1"].description == "Makes valves"
    assert records["1"].prodclass_name == "Valves"
    sql, _ = db.statements("DISTINCT ON")[0]
    assert 'JOIN "public"."pars_site" ps ON ps."id" = r."text_pars_id"' in sql


def test_missing_source_tables_contribute_nothing(fake_db):
    db = fake_db({})
    aggregator = FallbackAggregator(_context(db), [SiteParseSource("pars_site"), AiResponseSource("ai")])
    assert asyncio.run(aggregator.load(["1"])) == {}
    assert db.statements("DISTINCT ON") == []


def test_contacts_cache_reads_only_fresh_rows(fake_db):
    db = fake_db(
        {
            "b24_company_meta": ["inn", "company_id", "emails", "web_sites", "contacts_updated_at", "updated_at"],
        }
    )
    db.on(
        "DISTINCT ON",
        [{"inn": "1", "sites": ["https://www.alpha.ru/", "alpha.ru"], "emails": ["Sales@Alpha.ru"]}],
    )
    aggregator = FallbackAggregator(_context(db), [ContactsCacheSource("b24_company_meta", max_age_minutes=1440)])
    records = asyncio.run(aggregator.load(["1", "2"]))

    assert list(records) == ["1"]
    assert records["1"].contact_sites == ["alpha.ru"]
    assert records["1"].contact_emails == ["sales@alpha.ru"]
    assert records["1"].sites == []
    sql, params = db.statements("DISTINCT ON")[0]
    assert 'ct."contacts_updated_at" >= NOW() - make_interval(mins => :max_age_minutes)' in sql
    assert 'ct."contacts_updated_at" DESC NULLS LAST' in sql
    assert params == {"inns": ["1", "2"], "max_age_minutes": 1440}


def test_contacts_cache_without_freshness_column_is_skipped(fake_db):
    db = fake_db({"b24_company_meta": ["inn", "emails", "web_sites"]})
    aggregator = FallbackAggregator(_context(db), [ContactsCacheSource("b24_company_meta")])
    assert asyncio.run(aggregator.load(["1"])) == {}
    assert db.statements("DISTINCT ON") == []
