"""Data types for the company analysis aggregation engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class ActivityState(str, Enum):
    running = "running"
    queued = "queued"
    idle = "idle"


class Outcome(str, Enum):
    completed = "completed"
    partial = "partial"
    failed = "failed"
    not_started = "not_started"
    pending = "pending"


class SortKey(str, Enum):
    revenue_desc = "revenue_desc"
    revenue_asc = "revenue_asc"


class StatusFilter(str, Enum):
    success = "success"
    server_error = "server_error"
    no_valid_site = "no_valid_site"


@dataclass(frozen=True)
class TableMetadata:
    """Snapshot of a table as seen in the schema catalog."""
    table_name: Optional[str]
    column_names: FrozenSet[str]
    available: bool
    cached_at: Optional[datetime] = None
    schema_name: Optional[str] = None

    @classmethod
    def missing(cls, cached_at: Optional[datetime] = None) -> "TableMetadata":
        return cls(table_name=None, column_names=frozenset(), available=False, cached_at=cached_at)


@dataclass
class PipelineStep:
    label: str
    status: Optional[str] = None


@dataclass
class ActivitySignals:
    """Transient lifecycle signals the classifier works from."""
    status: Optional[str] = None
    outcome: Optional[str] = None
    progress: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    analysis_ok: Optional[int] = None
    server_error: Optional[int] = None
    no_valid_site: Optional[int] = None
    # False when the deployment has no queue table at all.
    queue_tracked: bool = True


@dataclass(frozen=True)
class Classification:
    state: ActivityState
    outcome: Outcome

    @property
    def is_active(self) -> bool:
        return self.state != ActivityState.idle


@dataclass
class FallbackRecord:
    """Facts recovered from auxiliary sources for one identifier."""
    inn: str
    description: Optional[str] = None
    domain: Optional[str] = None
    prodclass_name: Optional[str] = None
    prodclass_score: Optional[float] = None
    description_okved_score: Optional[float] = None
    description_score: Optional[float] = None
    okved_score: Optional[float] = None
    prodclass_by_okved: Optional[float] = None
    sites: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    contact_sites: List[str] = field(default_factory=list)
    contact_emails: List[str] = field(default_factory=list)
    equipment: List[Any] = field(default_factory=list)
    goods: List[Any] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)  # fact -> source name

    def is_empty(self) -> bool:
        return not (self.sources or self.sites or self.emails or self.contact_sites or self.contact_emails)


@dataclass
class AnalysisFilters:
    okved: Optional[str] = None
    include_parent: bool = False
    include_extra: bool = False
    industry_id: Optional[int] = None
    industry_prefixes: Optional[List[str]] = None
    query: Optional[str] = None
    statuses: List[str] = field(default_factory=list)


@dataclass
class AnalysisRequest:
    filters: AnalysisFilters = field(default_factory=AnalysisFilters)
    sort: SortKey = SortKey.revenue_desc
    page: int = 1
    page_size: int = 30


@dataclass
class ActiveSummary:
    running: int
    queued: int

    @property
    def total(self) -> int:
        return self.running + self.queued


@dataclass
class IntegrationHealth:
    base: Optional[str]
    available: bool
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"base": self.base, "available": self.available, "detail": self.detail}


@dataclass
class AnalysisPage:
    items: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int
    available: Dict[str, bool] = field(default_factory=dict)
    active: Optional[ActiveSummary] = None
    integration: Optional[IntegrationHealth] = None

    @classmethod
    def empty(cls, page: int, page_size: int, available: Optional[Dict[str, bool]] = None) -> "AnalysisPage":
        return cls(items=[], total=0, page=page, page_size=page_size, available=dict(available or {}))


class AnalysisQueryError(RuntimeError):
    """Raised when the primary analysis query cannot be executed."""
