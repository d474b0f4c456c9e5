"""Company analysis aggregation package."""

from .types import (
    ActiveSummary,
    ActivitySignals,
    ActivityState,
    AnalysisFilters,
    AnalysisPage,
    AnalysisQueryError,
    AnalysisRequest,
    Classification,
    FallbackRecord,
    IntegrationHealth,
    Outcome,
    SortKey,
    StatusFilter,
    TableMetadata,
)
from .cache import TTLCacheStore, get_cache_store
from .schema_catalog import SchemaCatalog
from .capabilities import RequestCapabilities, plan_capabilities
from .classifier import classify
from .engine import CompanyAnalysisEngine
from .fallback_sources import FallbackAggregator
from .merger import merge_record

__all__ = [
    # Main entry points
    "CompanyAnalysisEngine",
    "classify",
    "merge_record",

    # Components
    "TTLCacheStore",
    "get_cache_store",
    "SchemaCatalog",
    "RequestCapabilities",
    "plan_capabilities",
    "FallbackAggregator",

    # Data models
    "ActiveSummary",
    "ActivitySignals",
    "ActivityState",
    "AnalysisFilters",
    "AnalysisPage",
    "AnalysisQueryError",
    "AnalysisRequest",
    "Classification",
    "FallbackRecord",
    "IntegrationHealth",
    "Outcome",
    "SortKey",
    "StatusFilter",
    "TableMetadata",
]
