"""Merge primary rows, analyzer payloads and fallback facts into one record."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.services.analysis.parsing import (
    current_stage,
    ensure_duration_ms,
    normalize_email,
    normalize_site,
    parse_flag,
    parse_json,
    parse_json_list,
    parse_json_object,
    parse_number,
    parse_pipeline_steps,
    parse_progress,
    parse_string,
    parse_string_list,
    parse_timestamp,
)
from app.services.analysis.types import ActivitySignals, FallbackRecord


IDENTITY_NUMBERS = (
    "branch_count",
    "year",
    "revenue",
    "income",
    "employee_count",
    "revenue_1",
    "revenue_2",
    "revenue_3",
    "income_1",
    "income_2",
    "income_3",
)


def first_value(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def first_list(*values: Optional[List[Any]]) -> List[Any]:
    for value in values:
        if value:
            return list(value)
    return []


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _score_text(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:g}"


def union_sites(*sources: Any) -> List[str]:
    out: List[str] = []
    for source in sources:
        for raw in parse_string_list(source):
            host = normalize_site(raw)
            if host and host not in out:
                out.append(host)
    return out


def union_emails(*sources: Any) -> List[str]:
    out: List[str] = []
    for source in sources:
        for raw in parse_string_list(source):
            email = normalize_email(raw)
            if email and email not in out:
                out.append(email)
    return out


def merge_analyzer_payload(payload: Any, facts: Mapping[str, Any]) -> Any:
    """Patch the analyzer document with reconciled facts it does not carry yet.

    Keys already present in the payload are never overwritten. Payloads that
    are not JSON objects are returned untouched.
    """
    if payload is not None and not isinstance(payload, dict):
        return payload

    base = payload or {}
    company = dict(_dict(base.get("company")))
    ai = dict(_dict(base.get("ai")))

    if not ai.get("sites") and facts.get("sites"):
        ai["sites"] = list(facts["sites"])
    if not ai.get("products") and facts.get("products"):
        ai["products"] = list(facts["products"])
    if not ai.get("equipment") and facts.get("equipment"):
        ai["equipment"] = list(facts["equipment"])
    for key in ("description_score", "okved_score", "prodclass_by_okved"):
        if ai.get(key) is None and facts.get(key) is not None:
            ai[key] = facts[key]

    analysis_class = facts.get("analysis_class")
    match_level = facts.get("match_level")
    okved_match = facts.get("okved_match")
    if not ai.get("prodclass") and (analysis_class or match_level or okved_match):
        ai["prodclass"] = {
            "name": analysis_class,
            "label": analysis_class,
            "score": parse_number(match_level),
            "description_okved_score": parse_number(okved_match),
        }

    if not company.get("domain1") and facts.get("description"):
        company["domain1"] = facts["description"]
    if not company.get("domain1_site") and facts.get("domain"):
        company["domain1_site"] = facts["domain"]

    if not company and not ai:
        return payload

    merged = dict(base)
    if company:
        merged["company"] = company
    if ai:
        merged["ai"] = ai
    return merged


def merge_record(row: Mapping[str, Any], fallback: Optional[FallbackRecord] = None) -> Dict[str, Any]:
    """Build the reconciled record for one primary row.

    Scalars follow primary column -> analyzer payload -> fallback source. Site
    and email lists are the de-duplicated union of every source, led by fresh
    CRM contacts.
    """
    payload = parse_json(row.get("analysis_info"))
    info = _dict(payload)
    ai = _dict(info.get("ai"))
    company = _dict(info.get("company"))
    fb = fallback or FallbackRecord(inn=str(row.get("inn") or ""))

    started_at = parse_timestamp(row.get("analysis_started_at"))
    finished_at = parse_timestamp(row.get("analysis_finished_at"))

    description = first_value(
        parse_string(row.get("analysis_description")),
        parse_string(info.get("description")),
        fb.description,
    )
    analysis_class = first_value(
        parse_string(row.get("analysis_class")),
        parse_string(info.get("found_class")),
        fb.prodclass_name,
    )
    match_level = first_value(
        parse_string(row.get("analysis_match_level")),
        parse_string(info.get("match_level")),
        _score_text(fb.prodclass_score),
    )
    okved_match = first_value(
        parse_string(row.get("analysis_okved_match")),
        parse_string(info.get("okved_match")),
        _score_text(fb.description_okved_score),
    )
    description_score = first_value(
        parse_number(row.get("description_score")),
        parse_number(info.get("description_score")),
        parse_number(ai.get("description_score")),
        fb.description_score,
    )
    okved_score = first_value(
        parse_number(row.get("okved_score")),
        parse_number(info.get("okved_score")),
        parse_number(ai.get("okved_score")),
        fb.okved_score,
    )
    prodclass_by_okved = first_value(
        parse_number(row.get("prodclass_by_okved")),
        parse_number(info.get("prodclass_by_okved")),
        parse_number(ai.get("prodclass_by_okved")),
        fb.prodclass_by_okved,
    )
    domain = first_value(
        parse_string(row.get("analysis_domain")),
        parse_string(info.get("domain")),
        fb.domain,
    )
    equipment = first_list(
        parse_json_list(row.get("analysis_equipment")),
        parse_json_list(ai.get("equipment")),
        fb.equipment,
    )
    products = first_list(
        parse_json_list(row.get("analysis_tnved")),
        parse_json_list(ai.get("products")),
        fb.goods,
    )
    sites = union_sites(
        fb.contact_sites,
        row.get("sites"),
        info.get("sites"),
        ai.get("sites"),
        [domain] if domain else None,
        fb.sites,
    )
    emails = union_emails(fb.contact_emails, row.get("emails"), info.get("emails"), fb.emails)

    score = first_value(
        parse_number(row.get("analysis_score")),
        parse_number(info.get("score")),
        parse_number(ai.get("score")),
        parse_number(company.get("score")),
    )
    attempts = first_value(
        parse_number(row.get("analysis_attempts")),
        parse_number(info.get("attempts")),
        parse_number(info.get("retry_count")),
    )
    status = parse_string(row.get("analysis_status"))
    steps = parse_pipeline_steps(first_value(row.get("analysis_pipeline"), info.get("pipeline")))

    merged_payload = merge_analyzer_payload(
        payload,
        {
            "sites": sites,
            "description": description,
            "domain": domain,
            "match_level": match_level,
            "analysis_class": analysis_class,
            "okved_match": okved_match,
            "equipment": equipment,
            "products": products,
            "description_score": description_score,
            "okved_score": okved_score,
            "prodclass_by_okved": prodclass_by_okved,
        },
    )

    record: Dict[str, Any] = {
        "inn": parse_string(row.get("inn")),
        "short_name": parse_string(row.get("short_name")),
        "address": parse_string(row.get("address")),
    }
    for key in IDENTITY_NUMBERS:
        record[key] = parse_number(row.get(key))
    record.update(
        {
            "main_okved": first_value(parse_string(row.get("main_okved")), parse_string(info.get("main_okved"))),
            "okveds": parse_json_list(row.get("okveds")),
            "sites": sites,
            "emails": emails,
            "analysis_status": status,
            "analysis_outcome": parse_string(row.get("analysis_outcome")),
            "analysis_progress": parse_progress(row.get("analysis_progress")),
            "analysis_started_at": started_at,
            "analysis_finished_at": finished_at,
            "analysis_duration_ms": ensure_duration_ms(row.get("analysis_duration_ms"), started_at, finished_at),
            "analysis_attempts": int(attempts) if attempts is not None else None,
            "analysis_score": score,
            "analysis_ok": parse_flag(row.get("analysis_ok")),
            "server_error": parse_flag(row.get("server_error")),
            "no_valid_site": parse_flag(row.get("no_valid_site")),
            "analysis_domain": domain,
            "analysis_match_level": match_level,
            "analysis_class": analysis_class,
            "analysis_okved_match": okved_match,
            "analysis_description": description,
            "analysis_equipment": equipment,
            "analysis_tnved": products,
            "description_score": description_score,
            "okved_score": okved_score,
            "prodclass_by_okved": prodclass_by_okved,
            "analysis_info": merged_payload,
            "analysis_pipeline": [{"label": step.label, "status": step.status} for step in steps],
            "current_stage": current_stage(steps, status),
            "queued_at": parse_timestamp(row.get("queued_at")),
            "queued_by": parse_string(row.get("queued_by")),
            "fallback_sources": dict(fb.sources),
        }
    )
    return record


def signals_for(record: Mapping[str, Any], queue_tracked: bool = True) -> ActivitySignals:
    return ActivitySignals(
        status=record.get("analysis_status"),
        outcome=record.get("analysis_outcome"),
        progress=record.get("analysis_progress"),
        started_at=record.get("analysis_started_at"),
        finished_at=record.get("analysis_finished_at"),
        queued_at=record.get("queued_at"),
        analysis_ok=record.get("analysis_ok"),
        server_error=record.get("server_error"),
        no_valid_site=record.get("no_valid_site"),
        queue_tracked=queue_tracked,
    )


def identifiers(rows: Iterable[Mapping[str, Any]]) -> List[str]:
    return [inn for inn in (parse_string(row.get("inn")) for row in rows) if inn]
