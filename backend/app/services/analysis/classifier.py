"""Deterministic activity/outcome classification for analysis records."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from app.services.analysis.types import ActivitySignals, ActivityState, Classification, Outcome


DEFAULT_STALE_AFTER = timedelta(minutes=120)

RUNNING_STATUS_TOKENS = ("running", "processing", "in_progress", "starting")
QUEUED_STATUS_TOKENS = ("queued", "waiting", "pending", "scheduled")

# Upper bound (exclusive) of the progress ratio still counted as in flight.
PROGRESS_DONE_THRESHOLD = 0.999

OUTCOME_ALIASES = {
    Outcome.completed: ("completed", "complete", "success", "succeeded", "ok", "done", "finished"),
    Outcome.partial: ("partial", "partially", "incomplete"),
    Outcome.failed: ("failed", "failure", "error", "server_error", "no_valid_site", "stopped", "cancelled"),
    Outcome.not_started: ("not_started", "never", "idle", "none"),
}


def _matches(status: Optional[str], tokens: tuple) -> bool:
    if not status:
        return False
    normalized = status.strip().lower().replace("-", "_").replace(" ", "_")
    return any(token in normalized for token in tokens)


def is_fresh(ts: Optional[datetime], now: datetime, stale_after: timedelta) -> bool:
    """True while ``ts`` is younger than ``stale_after``; the boundary itself is stale."""
    if ts is None:
        return False
    return now - ts < stale_after


def is_running(signals: ActivitySignals, now: datetime, stale_after: timedelta = DEFAULT_STALE_AFTER) -> bool:
    if _matches(signals.status, RUNNING_STATUS_TOKENS):
        return True
    if signals.progress is not None and 0 < signals.progress < PROGRESS_DONE_THRESHOLD:
        return True
    if signals.started_at is not None and signals.finished_at is None:
        return is_fresh(signals.started_at, now, stale_after)
    return False


def is_queued(signals: ActivitySignals, now: datetime, stale_after: timedelta = DEFAULT_STALE_AFTER) -> bool:
    queue_fresh = is_fresh(signals.queued_at, now, stale_after)
    if _matches(signals.status, QUEUED_STATUS_TOKENS):
        if not signals.queue_tracked or queue_fresh:
            return True
    if queue_fresh:
        if signals.finished_at is None or signals.queued_at > signals.finished_at:
            return True
    return False


def outcome_from_text(value: Optional[str]) -> Optional[Outcome]:
    if not value:
        return None
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    for outcome, aliases in OUTCOME_ALIASES.items():
        if normalized in aliases:
            return outcome
    return None


def derive_outcome(signals: ActivitySignals) -> Outcome:
    explicit = outcome_from_text(signals.outcome)
    if explicit is not None:
        return explicit
    if signals.analysis_ok:
        return Outcome.completed
    if signals.server_error or signals.no_valid_site:
        return Outcome.failed
    if signals.finished_at is not None:
        return Outcome.partial
    return Outcome.not_started


def classify(
    signals: ActivitySignals,
    now: datetime,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> Classification:
    """Classify a record's pipeline state as of ``now``.

    Pure: no clock reads, no I/O. Running wins over queued; the outcome is only
    derived for idle records, active ones report ``Outcome.pending``.
    """
    if is_running(signals, now, stale_after):
        return Classification(state=ActivityState.running, outcome=Outcome.pending)
    if is_queued(signals, now, stale_after):
        return Classification(state=ActivityState.queued, outcome=Outcome.pending)
    return Classification(state=ActivityState.idle, outcome=derive_outcome(signals))
