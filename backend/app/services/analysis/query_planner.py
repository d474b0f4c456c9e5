"""Parameterized SQL for the primary analysis listing.

Only identifiers resolved through the capability plan are interpolated into
the SQL text (always quoted); every value coming from the request is bound.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from app.services.analysis.capabilities import RequestCapabilities, qualified
from app.services.analysis.classifier import (
    PROGRESS_DONE_THRESHOLD,
    QUEUED_STATUS_TOKENS,
    RUNNING_STATUS_TOKENS,
)
from app.services.analysis.types import AnalysisFilters, SortKey, StatusFilter


LIFECYCLE_STATUSES = ("ACTIVE", "REORGANIZING")
IDENTITY_COLUMNS = ("inn", "short_name", "address", "branch_count", "year", "revenue")
OKVED_OBJECT_KEYS = ("okved", "code", "okved_code")
STATUS_FILTER_COLUMNS = {
    StatusFilter.success.value: "analysis_ok",
    StatusFilter.server_error.value: "server_error",
    StatusFilter.no_valid_site.value: "no_valid_site",
}

_PREFIX_RE = re.compile(r"^\d{2}")


@dataclass
class SqlStatement:
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlannedQuery:
    count: Optional[SqlStatement] = None
    page: Optional[SqlStatement] = None
    activity: Optional[SqlStatement] = None
    # Set when the filters can never match; no query must be run.
    empty: bool = False

    @classmethod
    def empty_result(cls) -> "PlannedQuery":
        return cls(empty=True)


class _Params:
    """Accumulates bound parameters under generated names."""

    def __init__(self) -> None:
        self.values: Dict[str, Any] = {}

    def add(self, value: Any) -> str:
        name = f"p{len(self.values)}"
        self.values[name] = value
        return f":{name}"


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def okved_prefix(code: Optional[str]) -> Optional[str]:
    match = _PREFIX_RE.match(str(code or "").strip())
    return match.group(0) if match else None


def _col(name: str, table_alias: str = "d") -> str:
    return qualified(table_alias, name)


def _normalized_status_sql(expr: str) -> str:
    return f"REPLACE(REPLACE(LOWER(COALESCE({expr}::text, '')), ' ', '_'), '-', '_')"


def _progress_sql(expr: str) -> str:
    value = f"{expr}::numeric"
    return (
        f"(CASE WHEN {value} > 1 AND {value} <= 100 THEN ROUND({value}) / 100.0 "
        f"WHEN {value} >= 0 AND {value} <= 1 THEN {value} END)"
    )


def _okved_extra_sql(okveds_expr: str, value_param: str, prefix_match: bool) -> str:
    if prefix_match:
        pattern = f"('^' || {value_param} || '(\\.|$)')"
        string_cond = f"TRIM(elem.val #>> '{{}}') ~ {pattern}"
        object_value = ", ".join(f"elem.val->>'{key}'" for key in OKVED_OBJECT_KEYS)
        object_cond = f"COALESCE({object_value}, '') ~ {pattern}"
    else:
        string_cond = f"TRIM(elem.val #>> '{{}}') = {value_param}"
        object_cond = "(" + " OR ".join(f"elem.val->>'{key}' = {value_param}" for key in OKVED_OBJECT_KEYS) + ")"
    source = (
        f"CASE WHEN jsonb_typeof({okveds_expr}::jsonb) = 'array' "
        f"THEN {okveds_expr}::jsonb ELSE '[]'::jsonb END"
    )
    return (
        "EXISTS ("
        f"SELECT 1 FROM jsonb_array_elements({source}) AS elem(val) "
        f"WHERE (jsonb_typeof(elem.val) = 'string' AND {string_cond}) "
        f"OR (jsonb_typeof(elem.val) = 'object' AND {object_cond})"
        ")"
    )


def build_where(filters: AnalysisFilters, caps: RequestCapabilities, params: _Params) -> Optional[List[str]]:
    """Return WHERE conditions, or None when the filters cannot match anything."""
    plan = caps.primary
    status_values = ", ".join(params.add(value) for value in LIFECYCLE_STATUSES)
    where: List[str] = [f"{_col('status')} IN ({status_values})"]

    okved = (filters.okved or "").strip()
    if okved:
        main_expr = plan.column_expr("main_okved")
        if main_expr is None:
            return None
        okveds_expr = plan.column_expr("okveds") if filters.include_extra else None
        if filters.include_parent:
            prefix = okved_prefix(okved)
            if not prefix:
                return None
            value = params.add(prefix)
            cond = f"TRIM({main_expr}) ~ ('^' || {value} || '(\\.|$)')"
            if okveds_expr:
                cond += " OR " + _okved_extra_sql(okveds_expr, value, prefix_match=True)
        else:
            value = params.add(okved)
            cond = f"TRIM({main_expr}) = {value}"
            if okveds_expr:
                cond += " OR " + _okved_extra_sql(okveds_expr, value, prefix_match=False)
        where.append(f"({cond})")

    if filters.industry_id is not None:
        prefixes = [p for p in (filters.industry_prefixes or []) if p]
        main_expr = plan.column_expr("main_okved")
        if not prefixes or main_expr is None:
            return None
        where.append(f"split_part({main_expr}, '.', 1) = ANY(CAST({params.add(prefixes)} AS text[]))")

    query = (filters.query or "").strip()
    if query:
        value = params.add(f"%{escape_like(query)}%")
        where.append(f"({_col('short_name')} ILIKE {value} OR {_col('inn')} ILIKE {value})")

    status_conditions: List[str] = []
    for token in dict.fromkeys(filters.statuses or []):
        alias = STATUS_FILTER_COLUMNS.get(token)
        expr = plan.column_expr(alias) if alias else None
        if expr:
            status_conditions.append(f"COALESCE({expr}::int, 0) = 1")
    if status_conditions:
        where.append("(" + " OR ".join(status_conditions) + ")")

    return where


def build_order(sort: SortKey) -> str:
    direction = "ASC" if sort == SortKey.revenue_asc else "DESC"
    return f"ORDER BY {_col('revenue')} {direction} NULLS LAST, {_col('inn')} ASC"


def build_select(caps: RequestCapabilities) -> str:
    parts = [f"{_col(name)} AS {name}" for name in IDENTITY_COLUMNS]
    parts.extend(caps.primary.select_list("d"))
    if caps.queue_available:
        parts.append(f"{caps.queue.expression('queued_at', 'q')} AS queued_at")
        parts.append(f"{caps.queue.expression('queued_by', 'q')} AS queued_by")
    return ",\n        ".join(parts)


def build_from(caps: RequestCapabilities, with_queue: bool = True) -> str:
    sql = f"FROM {caps.primary_table} d"
    if with_queue and caps.queue_available:
        sql += f"\n    LEFT JOIN {caps.queue_table} q ON {caps.queue.expression('inn', 'q')} = {_col('inn')}"
    return sql


def build_activity_conditions(caps: RequestCapabilities, params: _Params, stale_cutoff: datetime) -> Optional[tuple]:
    """SQL mirrors of the classifier's running/queued rules, or None if nothing backs them."""
    plan = caps.primary
    status = plan.column_expr("analysis_status")
    progress = plan.column_expr("analysis_progress")
    started = plan.column_expr("analysis_started_at")
    finished = plan.column_expr("analysis_finished_at")
    queued = caps.queue.expression("queued_at", "q") if caps.queue_available else None

    cutoff = params.add(stale_cutoff)
    cutoff_sql = f"CAST({cutoff} AS timestamptz)"

    running: List[str] = []
    if status:
        running.append(f"{_normalized_status_sql(status)} ~ {params.add('|'.join(RUNNING_STATUS_TOKENS))}")
    if progress:
        value = f"COALESCE({_progress_sql(progress)}, 0)"
        running.append(f"{value} > 0 AND {value} < {PROGRESS_DONE_THRESHOLD}")
    if started:
        finished_check = f"{finished} IS NULL AND " if finished else ""
        running.append(f"{started} IS NOT NULL AND {finished_check}{started} > {cutoff_sql}")

    queued_parts: List[str] = []
    if status:
        status_cond = f"{_normalized_status_sql(status)} ~ {params.add('|'.join(QUEUED_STATUS_TOKENS))}"
        queued_parts.append(f"{status_cond} AND {queued} > {cutoff_sql}" if queued else status_cond)
    if queued:
        finished_check = f"({finished} IS NULL OR {queued} > {finished})" if finished else "TRUE"
        queued_parts.append(f"{queued} > {cutoff_sql} AND {finished_check}")

    if not running and not queued_parts:
        return None

    running_sql = " OR ".join(f"({part})" for part in running) if running else "FALSE"
    queued_sql = " OR ".join(f"({part})" for part in queued_parts) if queued_parts else "FALSE"
    return running_sql, f"({queued_sql}) AND NOT COALESCE(({running_sql}), FALSE)"


def build_query(
    filters: AnalysisFilters,
    caps: RequestCapabilities,
    sort: SortKey,
    page: int,
    page_size: int,
    stale_cutoff: datetime,
) -> PlannedQuery:
    params = _Params()
    where = build_where(filters, caps, params)
    if where is None:
        return PlannedQuery.empty_result()
    where_sql = "WHERE " + " AND ".join(where)
    base_params = dict(params.values)

    count = SqlStatement(
        sql=f"SELECT COUNT(*)::int AS cnt\n    {build_from(caps, with_queue=False)}\n    {where_sql}",
        params=dict(base_params),
    )

    activity: Optional[SqlStatement] = None
    activity_params = _Params()
    activity_params.values = dict(base_params)
    conditions = build_activity_conditions(caps, activity_params, stale_cutoff)
    if conditions is not None:
        running_sql, queued_sql = conditions
        activity = SqlStatement(
            sql=(
                "SELECT\n"
                f"      COUNT(*) FILTER (WHERE {running_sql})::int AS running,\n"
                f"      COUNT(*) FILTER (WHERE {queued_sql})::int AS queued\n"
                f"    {build_from(caps)}\n    {where_sql}"
            ),
            params=activity_params.values,
        )

    page_params = _Params()
    page_params.values = dict(base_params)
    offset = page_params.add((max(1, page) - 1) * page_size)
    limit = page_params.add(page_size)
    page_stmt = SqlStatement(
        sql=(
            f"SELECT\n        {build_select(caps)}\n"
            f"    {build_from(caps)}\n    {where_sql}\n    {build_order(sort)}\n"
            f"    OFFSET {offset} LIMIT {limit}"
        ),
        params=page_params.values,
    )
    return PlannedQuery(count=count, page=page_stmt, activity=activity)


def build_state_query(caps: RequestCapabilities, identifiers: Sequence[str]) -> SqlStatement:
    params = _Params()
    inns = params.add(list(identifiers))
    return SqlStatement(
        sql=(
            f"SELECT\n        {build_select(caps)}\n"
            f"    {build_from(caps)}\n"
            f"    WHERE {_col('inn')} = ANY(CAST({inns} AS text[]))"
        ),
        params=params.values,
    )
