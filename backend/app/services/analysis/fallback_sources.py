"""Auxiliary sources that fill gaps in primary analysis rows.

Every source resolves its own tables through the schema catalog, issues a single
batched query for the whole identifier page and returns data keyed by
identifier. A source that is missing, unusable, slow or failing contributes
nothing; it never fails the request.

Precedence between sources lives in one place, :data:`FACT_CHAINS`: detailed
extraction tables first, then the raw cached AI response, then the manually
entered site-parse text. Fresh CRM contacts are kept apart from those facts
and lead the site and email lists.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import text

from app.config import Settings
from app.services.analysis.capabilities import first_present, lower_columns, quote_ident, table_ref
from app.services.analysis.parsing import (
    normalize_email,
    normalize_site,
    parse_json_list,
    parse_json_object,
    parse_number,
    parse_string,
    parse_string_list,
)
from app.services.analysis.query_planner import SqlStatement
from app.services.analysis.schema_catalog import SchemaCatalog
from app.services.analysis.types import FallbackRecord, TableMetadata


logger = structlog.get_logger()

INN_CANDIDATES = ("inn", "company_inn")
PARSE_ID_CANDIDATES = ("text_pars_id", "text_par_id", "pars_id", "pars_site_id")
RECENCY_CANDIDATES = ("created_at", "updated_at", "parsed_at", "inserted_at")
PK_CANDIDATES = ("id",)


class SourceContext:
    """Shared plumbing handed to every source."""

    def __init__(
        self,
        session_factory: Callable[[], Any],
        catalog: SchemaCatalog,
        schema: str,
        list_limit: int = 20,
        site_parse_table: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory
        self.catalog = catalog
        self.schema = schema
        self.list_limit = list_limit
        self.site_parse_table = site_parse_table

    async def table(self, logical_name: Optional[str]) -> TableMetadata:
        if not logical_name:
            return TableMetadata.missing()
        return await self.catalog.resolve_table(self.schema, logical_name)

    async def rows(self, statement: SqlStatement) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(text(statement.sql), statement.params)
            return [dict(row) for row in result.mappings().all()]


@dataclass(frozen=True)
class _KeyJoin:
    """How a source table reaches the identifier: directly or through site parses."""
    from_sql: str
    key_expr: str


def _recency_order(
    alias: str,
    columns: Mapping[str, str],
    recency_candidates: Sequence[str] = RECENCY_CANDIDATES,
) -> List[str]:
    order: List[str] = []
    recency = first_present(recency_candidates, columns)
    if recency:
        order.append(f"{alias}.{quote_ident(recency)} DESC NULLS LAST")
    pk = first_present(PK_CANDIDATES, columns)
    if pk:
        order.append(f"{alias}.{quote_ident(pk)} DESC")
    return order


async def _key_join(ctx: SourceContext, meta: TableMetadata, alias: str) -> Optional[_KeyJoin]:
    columns = lower_columns(meta)
    inn_col = first_present(INN_CANDIDATES, columns)
    if inn_col:
        return _KeyJoin(
            from_sql=f"FROM {table_ref(meta)} {alias}",
            key_expr=f"CAST({alias}.{quote_ident(inn_col)} AS text)",
        )
    parse_col = first_present(PARSE_ID_CANDIDATES, columns)
    if not parse_col:
        return None
    bridge = await ctx.table(ctx.site_parse_table)
    if not bridge.available:
        return None
    bridge_columns = lower_columns(bridge)
    bridge_inn = first_present(INN_CANDIDATES, bridge_columns)
    bridge_pk = first_present(PK_CANDIDATES, bridge_columns)
    if not bridge_inn or not bridge_pk:
        return None
    return _KeyJoin(
        from_sql=(
            f"FROM {table_ref(meta)} {alias} "
            f"JOIN {table_ref(bridge)} ps ON ps.{quote_ident(bridge_pk)} = {alias}.{quote_ident(parse_col)}"
        ),
        key_expr=f"CAST(ps.{quote_ident(bridge_inn)} AS text)",
    )


def _select_fields(alias: str, columns: Mapping[str, str], fields: Mapping[str, Sequence[str]]) -> List[str]:
    parts: List[str] = []
    for out_name, candidates in fields.items():
        found = first_present(candidates, columns)
        if found:
            parts.append(f"{alias}.{quote_ident(found)} AS {quote_ident(out_name)}")
    return parts


def _latest_row_statement(
    join: _KeyJoin,
    alias: str,
    columns: Mapping[str, str],
    select_parts: List[str],
    inns: Sequence[str],
    condition: Optional[str] = None,
    extra_params: Optional[Mapping[str, Any]] = None,
    recency_candidates: Sequence[str] = RECENCY_CANDIDATES,
) -> SqlStatement:
    order = [join.key_expr] + _recency_order(alias, columns, recency_candidates)
    where = f"{join.key_expr} = ANY(CAST(:inns AS text[]))"
    if condition:
        where += f" AND {condition}"
    params: Dict[str, Any] = {"inns": list(inns)}
    params.update(extra_params or {})
    return SqlStatement(
        sql=(
            f"SELECT DISTINCT ON ({join.key_expr}) {join.key_expr} AS inn, "
            + ", ".join(select_parts)
            + f" {join.from_sql} WHERE {where} "
            + "ORDER BY "
            + ", ".join(order)
        ),
        params=params,
    )


def _ranked_list_statement(
    join: _KeyJoin,
    alias: str,
    columns: Mapping[str, str],
    name_col: str,
    score_col: Optional[str],
    inns: Sequence[str],
    limit: int,
) -> SqlStatement:
    score_sql = f"{alias}.{quote_ident(score_col)}" if score_col else "NULL::numeric"
    order = [f"{score_sql} DESC NULLS LAST"] if score_col else []
    order.extend(_recency_order(alias, columns))
    order_sql = ", ".join(order) or "1"
    return SqlStatement(
        sql=(
            "SELECT inn, name, score FROM ("
            f"SELECT {join.key_expr} AS inn, {alias}.{quote_ident(name_col)}::text AS name, {score_sql} AS score, "
            f"ROW_NUMBER() OVER (PARTITION BY {join.key_expr} ORDER BY {order_sql}) AS rn "
            f"{join.from_sql} WHERE {join.key_expr} = ANY(CAST(:inns AS text[])) "
            f"AND {alias}.{quote_ident(name_col)} IS NOT NULL"
            ") ranked WHERE rn <= :limit ORDER BY inn, rn"
        ),
        params={"inns": list(inns), "limit": int(limit)},
    )


def _group_items(rows: Iterable[Mapping[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    seen: Dict[str, set] = {}
    for row in rows:
        inn = parse_string(row.get("inn"))
        name = parse_string(row.get("name"))
        if not inn or not name:
            continue
        key = name.lower()
        if key in seen.setdefault(inn, set()):
            continue
        seen[inn].add(key)
        grouped.setdefault(inn, []).append({"name": name, "score": parse_number(row.get("score"))})
    return grouped


def _rows_by_inn(rows: Iterable[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        inn = parse_string(row.get("inn"))
        if inn and inn not in out:
            out[inn] = dict(row)
    return out


class FallbackSource:
    name = "source"

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        raise NotImplementedError


class ContactsCacheSource(FallbackSource):
    """Company contacts cached from the CRM, used only while fresh."""

    name = "contacts"
    fields = {
        "sites": ("web_sites", "sites", "websites"),
        "emails": ("emails", "email_list"),
    }
    updated_candidates = ("contacts_updated_at", "updated_at")

    def __init__(self, table: str, max_age_minutes: int = 24 * 60) -> None:
        self.table = table
        self.max_age_minutes = max_age_minutes

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        meta = await ctx.table(self.table)
        if not meta.available:
            return {}
        columns = lower_columns(meta)
        inn_col = first_present(INN_CANDIDATES, columns)
        updated_col = first_present(self.updated_candidates, columns)
        select_parts = _select_fields("ct", columns, self.fields)
        if not inn_col or not updated_col or not select_parts:
            return {}
        join = _KeyJoin(from_sql=f"FROM {table_ref(meta)} ct", key_expr=f"CAST(ct.{quote_ident(inn_col)} AS text)")
        statement = _latest_row_statement(
            join,
            "ct",
            columns,
            select_parts,
            inns,
            condition=f"ct.{quote_ident(updated_col)} >= NOW() - make_interval(mins => :max_age_minutes)",
            extra_params={"max_age_minutes": int(self.max_age_minutes)},
            recency_candidates=self.updated_candidates,
        )
        return _rows_by_inn(await ctx.rows(statement))


class SiteParseSource(FallbackSource):
    """Latest site-parse row: crawled domain, manual description, emails."""

    name = "site_parse"
    fields = {
        "domain": ("domain_1", "domain", "url", "site"),
        "description": ("text_par", "description", "site_description"),
        "emails": ("emails", "email"),
    }

    def __init__(self, table: str) -> None:
        self.table = table

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        meta = await ctx.table(self.table)
        if not meta.available:
            return {}
        columns = lower_columns(meta)
        inn_col = first_present(INN_CANDIDATES, columns)
        select_parts = _select_fields("s", columns, self.fields)
        if not inn_col or not select_parts:
            return {}
        join = _KeyJoin(from_sql=f"FROM {table_ref(meta)} s", key_expr=f"CAST(s.{quote_ident(inn_col)} AS text)")
        return _rows_by_inn(await ctx.rows(_latest_row_statement(join, "s", columns, select_parts, inns)))


class AiResponseSource(FallbackSource):
    """Raw cached AI response for the latest parse of a company site."""

    name = "ai_response"
    fields = {
        "description": ("description", "company_description", "ai_description"),
        "prodclass": ("prodclass_name", "prodclass", "found_class"),
        "prodclass_score": ("prodclass_score", "match_level"),
        "description_score": ("description_score",),
        "okved_score": ("okved_score",),
        "description_okved_score": ("description_okved_score",),
        "prodclass_by_okved": ("prodclass_by_okved",),
        "goods": ("goods", "goods_type", "products", "tnved"),
        "equipment": ("equipment", "equipment_list"),
        "response": ("response", "response_json", "payload", "raw_response"),
    }

    def __init__(self, table: str) -> None:
        self.table = table

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        meta = await ctx.table(self.table)
        if not meta.available:
            return {}
        columns = lower_columns(meta)
        join = await _key_join(ctx, meta, "r")
        select_parts = _select_fields("r", columns, self.fields)
        if join is None or not select_parts:
            return {}
        rows = _rows_by_inn(await ctx.rows(_latest_row_statement(join, "r", columns, select_parts, inns)))
        for row in rows.values():
            # Dedicated columns win over keys buried in the raw response document.
            response = parse_json_object(row.pop("response", None)) or {}
            for key in self.fields:
                if key != "response" and row.get(key) in (None, "") and response.get(key) not in (None, ""):
                    row[key] = response.get(key)
        return rows


class ClassificationMatchSource(FallbackSource):
    """Cached production-class match for the latest parse."""

    name = "classification_match"
    fields = {
        "prodclass": ("prodclass_name", "prodclass_label", "prodclass"),
        "prodclass_score": ("prodclass_score", "score"),
        "description_okved_score": ("description_okved_score",),
        "okved_score": ("okved_score",),
        "description_score": ("description_score",),
        "prodclass_by_okved": ("prodclass_by_okved",),
    }

    def __init__(self, table: str) -> None:
        self.table = table

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        meta = await ctx.table(self.table)
        if not meta.available:
            return {}
        columns = lower_columns(meta)
        join = await _key_join(ctx, meta, "m")
        select_parts = _select_fields("m", columns, self.fields)
        if join is None or not select_parts:
            return {}
        return _rows_by_inn(await ctx.rows(_latest_row_statement(join, "m", columns, select_parts, inns)))


class ExtractionSource(FallbackSource):
    """Structured goods and equipment extracted from company sites."""

    name = "extraction"
    goods_name = ("goods_type", "goods_type_name", "goods", "name")
    goods_score = ("goods_types_score", "goods_score", "score")
    equipment_name = ("equipment", "equipment_name", "name")
    equipment_score = ("equipment_score", "score")

    def __init__(self, goods_table: str, equipment_table: str) -> None:
        self.goods_table = goods_table
        self.equipment_table = equipment_table

    async def _items(
        self,
        ctx: SourceContext,
        table: str,
        alias: str,
        name_candidates: Sequence[str],
        score_candidates: Sequence[str],
        inns: Sequence[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        meta = await ctx.table(table)
        if not meta.available:
            return {}
        columns = lower_columns(meta)
        name_col = first_present(name_candidates, columns)
        join = await _key_join(ctx, meta, alias)
        if not name_col or join is None:
            return {}
        score_col = first_present(score_candidates, columns)
        statement = _ranked_list_statement(join, alias, columns, name_col, score_col, inns, ctx.list_limit)
        return _group_items(await ctx.rows(statement))

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        goods, equipment = await asyncio.gather(
            self._items(ctx, self.goods_table, "g", self.goods_name, self.goods_score, inns),
            self._items(ctx, self.equipment_table, "e", self.equipment_name, self.equipment_score, inns),
        )
        out: Dict[str, Any] = {}
        for inn in set(goods) | set(equipment):
            out[inn] = {"goods": goods.get(inn, []), "equipment": equipment.get(inn, [])}
        return out


class EquipmentCatalogSource(FallbackSource):
    """Curated equipment catalog reached through workshops and clients."""

    name = "equipment_catalog"

    def __init__(self, equipment_table: str, workshops_table: str, clients_table: str) -> None:
        self.equipment_table = equipment_table
        self.workshops_table = workshops_table
        self.clients_table = clients_table

    async def fetch(self, ctx: SourceContext, inns: Sequence[str]) -> Dict[str, Any]:
        equipment, workshops, clients = await asyncio.gather(
            ctx.table(self.equipment_table),
            ctx.table(self.workshops_table),
            ctx.table(self.clients_table),
        )
        if not (equipment.available and workshops.available and clients.available):
            return {}
        e_cols, w_cols, c_cols = lower_columns(equipment), lower_columns(workshops), lower_columns(clients)
        name_col = first_present(("equipment_name", "name"), e_cols)
        workshop_fk = first_present(("workshop_id",), e_cols)
        workshop_pk = first_present(PK_CANDIDATES, w_cols)
        company_fk = first_present(("company_id", "client_id"), w_cols)
        client_pk = first_present(PK_CANDIDATES, c_cols)
        client_inn = first_present(INN_CANDIDATES, c_cols)
        if not all((name_col, workshop_fk, workshop_pk, company_fk, client_pk, client_inn)):
            return {}
        join = _KeyJoin(
            from_sql=(
                f"FROM {table_ref(equipment)} eq "
                f"JOIN {table_ref(workshops)} w ON w.{quote_ident(workshop_pk)} = eq.{quote_ident(workshop_fk)} "
                f"JOIN {table_ref(clients)} c ON c.{quote_ident(client_pk)} = w.{quote_ident(company_fk)}"
            ),
            key_expr=f"CAST(c.{quote_ident(client_inn)} AS text)",
        )
        score_col = first_present(("equipment_score_real", "equipment_score", "clean_score"), e_cols)
        statement = _ranked_list_statement(join, "eq", e_cols, name_col, score_col, inns, ctx.list_limit)
        return _group_items(await ctx.rows(statement))


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


@dataclass(frozen=True)
class FactResolver:
    """One step of a fallback chain: read a fact out of one source's data."""
    source: str
    extract: Callable[[Any], Any]

    def resolve(self, data_by_source: Mapping[str, Any]) -> Any:
        data = data_by_source.get(self.source)
        if data is None:
            return None
        value = self.extract(data)
        return None if _is_empty(value) else value


def resolve_fact(chain: Sequence[FactResolver], data_by_source: Mapping[str, Any]) -> tuple:
    """Return ``(value, source)`` from the first resolver yielding a non-empty value."""
    for resolver in chain:
        value = resolver.resolve(data_by_source)
        if value is not None:
            return value, resolver.source
    return None, None


def _field(name: str, parser: Callable[[Any], Any] = parse_string) -> Callable[[Any], Any]:
    return lambda row: parser(row.get(name)) if isinstance(row, Mapping) else None


def _items_list(row: Any) -> List[Any]:
    return row if isinstance(row, list) else []


FACT_CHAINS: Dict[str, List[FactResolver]] = {
    "equipment": [
        FactResolver("extraction", _field("equipment", _items_list)),
        FactResolver("equipment_catalog", _items_list),
        FactResolver("ai_response", _field("equipment", parse_json_list)),
    ],
    "goods": [
        FactResolver("extraction", _field("goods", _items_list)),
        FactResolver("ai_response", _field("goods", parse_json_list)),
    ],
    "prodclass_name": [
        FactResolver("classification_match", _field("prodclass")),
        FactResolver("ai_response", _field("prodclass")),
    ],
    "prodclass_score": [
        FactResolver("classification_match", _field("prodclass_score", parse_number)),
        FactResolver("ai_response", _field("prodclass_score", parse_number)),
    ],
    "description_okved_score": [
        FactResolver("classification_match", _field("description_okved_score", parse_number)),
        FactResolver("ai_response", _field("description_okved_score", parse_number)),
    ],
    "okved_score": [
        FactResolver("classification_match", _field("okved_score", parse_number)),
        FactResolver("ai_response", _field("okved_score", parse_number)),
    ],
    "description_score": [
        FactResolver("classification_match", _field("description_score", parse_number)),
        FactResolver("ai_response", _field("description_score", parse_number)),
    ],
    "prodclass_by_okved": [
        FactResolver("classification_match", _field("prodclass_by_okved", parse_number)),
        FactResolver("ai_response", _field("prodclass_by_okved", parse_number)),
    ],
    "description": [
        FactResolver("ai_response", _field("description")),
        FactResolver("site_parse", _field("description")),
    ],
    "domain": [
        FactResolver("site_parse", _field("domain", normalize_site)),
    ],
}


def build_fallback_record(inn: str, data_by_source: Mapping[str, Any]) -> FallbackRecord:
    record = FallbackRecord(inn=inn)
    for fact, chain in FACT_CHAINS.items():
        value, source = resolve_fact(chain, data_by_source)
        if value is None:
            continue
        setattr(record, fact, value)
        record.sources[fact] = source

    site_row = data_by_source.get("site_parse")
    if isinstance(site_row, Mapping):
        record.emails = [e for e in (normalize_email(v) for v in parse_string_list(site_row.get("emails"))) if e]
    if record.domain:
        record.sites = [record.domain]

    contacts = data_by_source.get("contacts")
    if isinstance(contacts, Mapping):
        record.contact_sites = [
            s for s in (normalize_site(v) for v in parse_string_list(contacts.get("sites"))) if s
        ]
        record.contact_emails = [
            e for e in (normalize_email(v) for v in parse_string_list(contacts.get("emails"))) if e
        ]
    return record


def default_sources(settings: Settings) -> List[FallbackSource]:
    return [
        ContactsCacheSource(settings.contacts_table, settings.contacts_max_age_minutes),
        SiteParseSource(settings.site_parse_table),
        AiResponseSource(settings.ai_response_table),
        ClassificationMatchSource(settings.classification_match_table),
        ExtractionSource(settings.extracted_goods_table, settings.extracted_equipment_table),
        EquipmentCatalogSource(
            settings.equipment_catalog_table,
            settings.workshops_table,
            settings.clients_table,
        ),
    ]


class FallbackAggregator:
    """Loads every fallback source concurrently for one page of identifiers."""

    def __init__(
        self,
        ctx: SourceContext,
        sources: Sequence[FallbackSource],
        timeout_seconds: float = 8.0,
    ) -> None:
        self._ctx = ctx
        self._sources = list(sources)
        self._timeout_seconds = timeout_seconds

    async def _load_source(self, source: FallbackSource, inns: Sequence[str]) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(source.fetch(self._ctx, inns), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("fallback_source.timeout", source=source.name, timeout_seconds=self._timeout_seconds)
        except Exception as exc:
            logger.warning("fallback_source.failed", source=source.name, error=str(exc))
        return {}

    async def load(self, identifiers: Iterable[str]) -> Dict[str, FallbackRecord]:
        inns = list(dict.fromkeys(s for s in (parse_string(v) for v in identifiers or []) if s))
        if not inns:
            return {}

        results = await asyncio.gather(*(self._load_source(source, inns) for source in self._sources))
        by_source = {source.name: result for source, result in zip(self._sources, results)}

        records: Dict[str, FallbackRecord] = {}
        for inn in inns:
            data = {name: rows[inn] for name, rows in by_source.items() if inn in rows}
            if not data:
                continue
            record = build_fallback_record(inn, data)
            if not record.is_empty():
                records[inn] = record
        return records
