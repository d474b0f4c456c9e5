import pytest

from app.services.analysis.capabilities import (
    PRIMARY_FIELDS,
    QUEUE_FIELDS,
    FieldSpec,
    RequestCapabilities,
    SqlType,
    plan_capabilities,
    quote_ident,
    table_ref,
)
from app.services.analysis.types import TableMetadata


def test_first_present_candidate_wins():
    spec = FieldSpec("analysis_status", ("analysis_status", "analysis_state", "analysis_stage"))
    plan = plan_capabilities([spec], ["analysis_stage", "analysis_state"])
    assert plan.column("analysis_status") == "analysis_state"


def test_candidate_match_is_case_insensitive_and_keeps_real_name():
    plan = plan_capabilities(PRIMARY_FIELDS, ["Revenue-1", "revenue_1", "Analysis_OK"])
    assert plan.column("revenue_1") == "Revenue-1"
    assert plan.column_expr("revenue_1") == 'd."Revenue-1"'
    assert plan.column("analysis_ok") == "Analysis_OK"


def test_unbound_field_renders_typed_null():
    plan = plan_capabilities(PRIMARY_FIELDS, [])
    assert plan.column_expr("analysis_progress") is None
    assert plan.expression("analysis_progress") == SqlType.numeric.value
    assert plan.expression("analysis_started_at") == "NULL::timestamptz"
    assert 'NULL::jsonb AS "analysis_info"' in plan.select_list()
    with pytest.raises(KeyError):
        plan.expression("not_a_field")


def test_quote_ident_escapes_embedded_quotes():
    assert quote_ident('weird"name') == '"weird""name"'


def test_availability_includes_queue_flag():
    caps = RequestCapabilities(
        primary_table='"public"."dadata_result"',
        primary=plan_capabilities(PRIMARY_FIELDS, ["analysis_ok", "analysis_status"]),
        queue_table='"public"."ai_analysis_queue"',
        queue=plan_capabilities(QUEUE_FIELDS, ["inn"]),
    )
    available = caps.availability()
    assert available["analysis_ok"] is True
    assert available["server_error"] is False
    assert available["analysis_status"] is True
    # The queue needs both the identifier and a timestamp column.
    assert available["queue"] is False


def test_table_ref_rejects_missing_tables():
    with pytest.raises(ValueError):
        table_ref(TableMetadata.missing())
    meta = TableMetadata(table_name="dadata_result", column_names=frozenset(), available=True, schema_name="public")
    assert table_ref(meta) == '"public"."dadata_result"'
