"""Capability negotiation between logical fields and the deployed schema.

Each logical field lists the physical column names it has carried across
deployments. The first candidate present in the table wins; a field with no
match is rendered as a typed SQL null so the query shape never changes.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.dialects import postgresql

from app.services.analysis.types import TableMetadata


_PREPARER = postgresql.dialect().identifier_preparer


class SqlType(enum.Enum):
    text = "NULL::text"
    numeric = "NULL::numeric"
    integer = "NULL::int"
    timestamp = "NULL::timestamptz"
    json = "NULL::jsonb"


@dataclass(frozen=True)
class FieldSpec:
    alias: str
    candidates: Tuple[str, ...]
    fallback_type: SqlType = SqlType.text


def quote_ident(name: str) -> str:
    """Quote an identifier for PostgreSQL, doubling embedded quotes."""
    return _PREPARER.quote_identifier(str(name))


def qualified(table_alias: Optional[str], column: str) -> str:
    quoted = quote_ident(column)
    return f"{table_alias}.{quoted}" if table_alias else quoted


@dataclass(frozen=True)
class CapabilityPlan:
    """Immutable logical-field to column binding for one request."""
    specs: Tuple[FieldSpec, ...]
    bindings: Tuple[Tuple[str, Optional[str]], ...]

    def _lookup(self) -> Dict[str, Optional[str]]:
        return dict(self.bindings)

    def column(self, alias: str) -> Optional[str]:
        return self._lookup().get(alias)

    def is_available(self, alias: str) -> bool:
        return self.column(alias) is not None

    def column_expr(self, alias: str, table_alias: Optional[str] = "d") -> Optional[str]:
        column = self.column(alias)
        if column is None:
            return None
        return qualified(table_alias, column)

    def expression(self, alias: str, table_alias: Optional[str] = "d") -> str:
        expr = self.column_expr(alias, table_alias)
        if expr is not None:
            return expr
        for spec in self.specs:
            if spec.alias == alias:
                return spec.fallback_type.value
        raise KeyError(alias)

    def select_list(self, table_alias: Optional[str] = "d") -> List[str]:
        return [f"{self.expression(spec.alias, table_alias)} AS {quote_ident(spec.alias)}" for spec in self.specs]

    def availability_map(self, aliases: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        lookup = self._lookup()
        keys = list(aliases) if aliases is not None else [spec.alias for spec in self.specs]
        return {alias: lookup.get(alias) is not None for alias in keys}


def plan_capabilities(specs: Sequence[FieldSpec], existing_columns: Iterable[str]) -> CapabilityPlan:
    by_lower: Dict[str, str] = {}
    for name in existing_columns:
        by_lower.setdefault(str(name).lower(), str(name))
    bindings: List[Tuple[str, Optional[str]]] = []
    for spec in specs:
        found = next((by_lower[c.lower()] for c in spec.candidates if c.lower() in by_lower), None)
        bindings.append((spec.alias, found))
    return CapabilityPlan(specs=tuple(specs), bindings=tuple(bindings))


def _spec(alias: str, candidates: Sequence[str], fallback_type: SqlType = SqlType.text) -> FieldSpec:
    return FieldSpec(alias=alias, candidates=tuple(candidates), fallback_type=fallback_type)


# Optional columns of the primary analysis table, in candidate priority order.
PRIMARY_FIELDS: Tuple[FieldSpec, ...] = (
    _spec("income", ["income"], SqlType.numeric),
    _spec("employee_count", ["employee_count", "employees"], SqlType.integer),
    _spec("revenue_1", ["revenue-1", "revenue_1"], SqlType.numeric),
    _spec("revenue_2", ["revenue-2", "revenue_2"], SqlType.numeric),
    _spec("revenue_3", ["revenue-3", "revenue_3"], SqlType.numeric),
    _spec("income_1", ["income-1", "income_1"], SqlType.numeric),
    _spec("income_2", ["income-2", "income_2"], SqlType.numeric),
    _spec("income_3", ["income-3", "income_3"], SqlType.numeric),
    _spec("sites", ["sites", "site_urls", "domains", "site_list"], SqlType.json),
    _spec("emails", ["emails", "email_list", "contacts_email"], SqlType.json),
    _spec("analysis_status", ["analysis_status", "analysis_state", "analysis_stage"]),
    _spec("analysis_outcome", ["analysis_outcome", "analysis_result", "analysis_summary"]),
    _spec("analysis_progress", ["analysis_progress", "analysis_percent", "analysis_ratio"], SqlType.numeric),
    _spec(
        "analysis_started_at",
        ["analysis_started_at", "analysis_last_start", "analysis_last_started_at"],
        SqlType.timestamp,
    ),
    _spec(
        "analysis_finished_at",
        ["analysis_finished_at", "analysis_last_finish", "analysis_last_finished_at"],
        SqlType.timestamp,
    ),
    _spec(
        "analysis_duration_ms",
        ["analysis_duration_ms", "analysis_last_duration_ms", "analysis_duration"],
        SqlType.numeric,
    ),
    _spec("analysis_attempts", ["analysis_attempts", "analysis_retry_count"], SqlType.integer),
    _spec("analysis_score", ["analysis_score", "company_score"], SqlType.numeric),
    _spec("analysis_ok", ["analysis_ok"], SqlType.integer),
    _spec("server_error", ["server_error", "analysis_server_error"], SqlType.integer),
    _spec("no_valid_site", ["no_valid_site", "analysis_no_valid_site"], SqlType.integer),
    _spec("analysis_domain", ["analysis_domain", "domain_for_parsing", "analysis_crawl_domain"]),
    _spec("analysis_match_level", ["analysis_match_level", "match_level"]),
    _spec("analysis_class", ["analysis_class", "analysis_found_class"]),
    _spec("analysis_equipment", ["analysis_equipment", "top_equipment", "analysis_top_equipment"], SqlType.json),
    _spec(
        "description_score",
        ["description_score", "analysis_description_score", "description_similarity"],
        SqlType.numeric,
    ),
    _spec("okved_score", ["okved_score", "analysis_okved_score", "okved_similarity"], SqlType.numeric),
    _spec(
        "prodclass_by_okved",
        ["prodclass_by_okved", "analysis_prodclass_by_okved", "prodclass_by_okved_score"],
        SqlType.integer,
    ),
    _spec("main_okved", ["main_okved", "primary_okved"]),
    _spec("okveds", ["okveds", "okved_list", "extra_okveds"], SqlType.json),
    _spec("analysis_okved_match", ["analysis_okved_match", "okved_match"]),
    _spec("analysis_description", ["analysis_description", "site_description", "ai_description"]),
    _spec("analysis_tnved", ["analysis_tnved", "tnved_products", "analysis_products"], SqlType.json),
    _spec(
        "analysis_info",
        ["analysis_info", "analysis_payload", "analysis_details", "analysis_meta"],
        SqlType.json,
    ),
    _spec("analysis_pipeline", ["analysis_pipeline", "analysis_step", "analysis_process"]),
)

QUEUE_FIELDS: Tuple[FieldSpec, ...] = (
    _spec("inn", ["inn", "company_inn"]),
    _spec("queued_at", ["queued_at", "created_at"], SqlType.timestamp),
    _spec("queued_by", ["queued_by", "requested_by"]),
)

# Fields surfaced to callers so UIs can disable unsupported filters.
AVAILABILITY_FIELDS: Tuple[str, ...] = (
    "analysis_ok",
    "server_error",
    "no_valid_site",
    "analysis_progress",
    "analysis_status",
    "analysis_started_at",
    "analysis_finished_at",
)


@dataclass(frozen=True)
class RequestCapabilities:
    """Everything schema-dependent a request needs, resolved once up front."""
    primary_table: str
    primary: CapabilityPlan
    queue_table: Optional[str]
    queue: CapabilityPlan

    @property
    def queue_available(self) -> bool:
        return bool(self.queue_table) and self.queue.is_available("inn") and self.queue.is_available("queued_at")

    def availability(self) -> Dict[str, bool]:
        available = self.primary.availability_map(AVAILABILITY_FIELDS)
        available["queue"] = self.queue_available
        return available


def first_present(candidates: Sequence[str], columns: Mapping[str, str]) -> Optional[str]:
    """Return the real name of the first candidate in a lower-cased column map."""
    for candidate in candidates:
        found = columns.get(candidate.lower())
        if found:
            return found
    return None


def table_ref(metadata: TableMetadata) -> str:
    """Quoted ``schema.table`` reference for a resolved table."""
    if not metadata.available or not metadata.table_name:
        raise ValueError("table is not available")
    if metadata.schema_name:
        return f"{quote_ident(metadata.schema_name)}.{quote_ident(metadata.table_name)}"
    return quote_ident(metadata.table_name)


def lower_columns(metadata: TableMetadata) -> Dict[str, str]:
    return {name.lower(): name for name in metadata.column_names}
