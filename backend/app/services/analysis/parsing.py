"""Total parsers for values written by the external analyzer.

Every helper here accepts whatever the database driver hands back (strings,
numbers, decimals, datetimes, decoded JSON, raw JSON text) and returns a
normalized value or ``None``. None of them raise.
"""
from __future__ import annotations

import json
import math
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

from app.services.analysis.types import PipelineStep


_LIST_SPLIT_RE = re.compile(r"[\s,;]+")
_PIPELINE_SPLIT_RE = re.compile(r"\s*[>|→»]+\s*")
_HOST_STRIP_RE = re.compile(r"[^a-z0-9.-]+")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_ISO_TIME_RE = re.compile(r"(\d{2}:\d{2}(?::\d{2})?)(?:\.(\d+))?(?:([+-]\d{2})(?::?(\d{2}))?)?$")

ACTIVE_STEP_TOKENS = ("active", "running", "processing", "in_progress", "current")


def parse_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    text = str(value).strip()
    return text or None


def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", ".")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_flag(value: Any) -> Optional[int]:
    """Collapse boolean-ish flags to 0/1, passing other integers through."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, str) and value.strip().lower() in {"true", "t", "yes"}:
        return 1
    if isinstance(value, str) and value.strip().lower() in {"false", "f", "no"}:
        return 0
    number = parse_number(value)
    if number is None:
        return None
    return int(number)


def parse_json(value: Any) -> Any:
    """Decode JSON text; non-JSON text is returned trimmed, empty text as None."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text
    return value


def parse_json_object(value: Any) -> Optional[dict]:
    parsed = parse_json(value)
    return parsed if isinstance(parsed, dict) else None


def parse_json_list(value: Any) -> List[Any]:
    parsed = parse_json(value)
    if isinstance(parsed, list):
        return [item for item in parsed if item not in (None, "", [], {})]
    if isinstance(parsed, dict) and parsed:
        return [parsed]
    return []


def parse_string_list(value: Any) -> List[str]:
    """Flatten arrays or delimited strings into a de-duplicated list."""
    if value is None:
        return []
    raw = value if isinstance(value, (list, tuple, set)) else parse_json(value)
    if raw is None:
        return []
    items: Iterable[Any]
    if isinstance(raw, (list, tuple, set)):
        items = raw
    elif isinstance(raw, str):
        items = _LIST_SPLIT_RE.split(raw)
    else:
        items = [raw]
    out: List[str] = []
    seen: set[str] = set()
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        out.append(text)
    return out


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_time(match: re.Match) -> str:
    # Accepts "+03" style offsets and short fractions as Postgres renders them.
    clock, fraction, offset_hours, offset_minutes = match.groups()
    out = clock
    if fraction:
        out += "." + fraction[:6].ljust(6, "0")
    if offset_hours:
        out += f"{offset_hours}:{offset_minutes or '00'}"
    return out


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(_ISO_TIME_RE.sub(_normalize_time, text, count=1)))
    except ValueError:
        return None


def parse_progress(value: Any) -> Optional[float]:
    """Normalize progress to a 0..1 fraction.

    Values above 1 are read as percentages. Anything still outside [0, 1] is
    rejected rather than clamped.
    """
    number = parse_number(value)
    if number is None:
        return None
    if 1 < number <= 100:
        return round(number) / 100
    if 0 <= number <= 1:
        return number
    return None


def ensure_duration_ms(
    duration: Any,
    started_at: Optional[datetime],
    finished_at: Optional[datetime],
) -> Optional[int]:
    direct = parse_number(duration)
    if direct is not None:
        return int(direct)
    if started_at and finished_at and finished_at >= started_at:
        return int((finished_at - started_at).total_seconds() * 1000)
    return None


def normalize_site(value: Any) -> Optional[str]:
    """Reduce a URL or domain to its bare lowercase host name."""
    text = parse_string(value)
    if not text:
        return None
    text = text.strip("'\"<>()[]{} ").rstrip(".,;:!")
    if not text:
        return None
    candidate = text if re.match(r"^[a-z][a-z0-9+.-]*://", text, re.IGNORECASE) else f"https://{text}"
    try:
        host = (urlparse(candidate).hostname or "").lower()
    except ValueError:
        return None
    host = _HOST_STRIP_RE.sub("", host).strip(".-")
    if host.startswith("www."):
        host = host[4:]
    if not host or "." not in host:
        return None
    return host


def normalize_email(value: Any) -> Optional[str]:
    text = parse_string(value)
    if not text:
        return None
    if text.lower().startswith("mailto:"):
        text = text[7:]
    text = text.strip().lower()
    if not _EMAIL_RE.match(text):
        return None
    return text


def parse_pipeline_steps(value: Any) -> List[PipelineStep]:
    raw = parse_json(value)
    if not raw:
        return []
    if isinstance(raw, str):
        return [PipelineStep(label=part) for part in _PIPELINE_SPLIT_RE.split(raw) if part.strip()]
    if isinstance(raw, dict):
        raw = raw.get("steps") if isinstance(raw.get("steps"), list) else [raw]
    if not isinstance(raw, list):
        return []
    steps: List[PipelineStep] = []
    for item in raw:
        if not item:
            continue
        if isinstance(item, dict):
            label = parse_string(item.get("label") or item.get("name") or item.get("stage") or item.get("title"))
            status = parse_string(item.get("status") or item.get("state") or item.get("result"))
            if not label and not status:
                continue
            steps.append(PipelineStep(label=label or status or "", status=status))
        else:
            label = parse_string(item)
            if label:
                steps.append(PipelineStep(label=label))
    return steps


def current_stage(steps: List[PipelineStep], status_text: Optional[str] = None) -> Optional[str]:
    if not steps:
        return status_text
    for step in steps:
        if step.status and any(token in step.status.lower() for token in ACTIVE_STEP_TOKENS):
            return step.label
    for step in steps:
        if not step.status or step.status.lower() != "done":
            return step.label
    return steps[-1].label or status_text
