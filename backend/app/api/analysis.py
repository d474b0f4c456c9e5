"""AI analysis API routes - company listing and lifecycle state lookups."""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.config import Settings, get_settings
from app.models.base import async_session_maker
from app.services.analysis.cache import get_cache_store
from app.services.analysis.engine import CompanyAnalysisEngine
from app.services.analysis.types import (
    AnalysisFilters,
    AnalysisPage,
    AnalysisRequest,
    SortKey,
    StatusFilter,
)
from app.services.analyzer_health import AnalyzerHealthProbe, get_health_cache

router = APIRouter()
logger = structlog.get_logger()


# ============================================================================
# Pydantic Schemas
# ============================================================================

class ActiveSummaryResponse(BaseModel):
    running: int = 0
    queued: int = 0
    total: int = 0


class IntegrationResponse(BaseModel):
    base: Optional[str] = None
    available: bool = False
    detail: Optional[str] = None


class AnalysisPageResponse(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 30
    available: Dict[str, bool] = Field(default_factory=dict)
    active: Optional[ActiveSummaryResponse] = None
    integration: Optional[IntegrationResponse] = None
    error: Optional[str] = None


class AnalysisStateItem(BaseModel):
    inn: str
    analysis_status: Optional[str] = None
    activity_state: str
    outcome: str
    analysis_progress: Optional[float] = None
    analysis_started_at: Optional[datetime] = None
    analysis_finished_at: Optional[datetime] = None
    analysis_duration_ms: Optional[int] = None
    queued_at: Optional[datetime] = None
    current_stage: Optional[str] = None


class AnalysisStateResponse(BaseModel):
    ok: bool = True
    items: List[AnalysisStateItem] = Field(default_factory=list)
    error: Optional[str] = None


# ============================================================================
# Dependencies
# ============================================================================

def get_analysis_engine(settings: Settings = Depends(get_settings)) -> CompanyAnalysisEngine:
    probe = AnalyzerHealthProbe(settings=settings, cache=get_health_cache())
    return CompanyAnalysisEngine(async_session_maker, get_cache_store(), settings, health_probe=probe)


def _split_values(values: Optional[List[str]]) -> List[str]:
    out: List[str] = []
    for raw in values or []:
        for part in str(raw).split(","):
            part = part.strip()
            if part and part not in out:
                out.append(part)
    return out


def _status_tokens(values: Optional[List[str]]) -> List[str]:
    known = {item.value for item in StatusFilter}
    return [token for token in (v.lower() for v in _split_values(values)) if token in known]


def _page_response(page: AnalysisPage) -> AnalysisPageResponse:
    active = None
    if page.active is not None:
        active = ActiveSummaryResponse(
            running=page.active.running,
            queued=page.active.queued,
            total=page.active.total,
        )
    integration = None
    if page.integration is not None:
        integration = IntegrationResponse(**page.integration.as_dict())
    return AnalysisPageResponse(
        items=page.items,
        total=page.total,
        page=page.page,
        page_size=page.page_size,
        available=page.available,
        active=active,
        integration=integration,
    )


# ============================================================================
# Routes
# ============================================================================

@router.get("/companies", response_model=AnalysisPageResponse)
async def list_companies(
    okved: Optional[str] = Query(None),
    parent: bool = Query(False),
    extra: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    industry_id: Optional[int] = Query(None),
    q: Optional[str] = Query(None),
    sort: SortKey = Query(SortKey.revenue_desc),
    status: Optional[List[str]] = Query(None),
    engine: CompanyAnalysisEngine = Depends(get_analysis_engine),
    settings: Settings = Depends(get_settings),
):
    """List companies with reconciled analysis facts and activity state."""
    size = min(page_size or settings.default_page_size, settings.max_page_size)
    request = AnalysisRequest(
        filters=AnalysisFilters(
            okved=okved,
            include_parent=parent,
            include_extra=extra,
            industry_id=industry_id if industry_id and industry_id > 0 else None,
            query=q,
            statuses=_status_tokens(status),
        ),
        sort=sort,
        page=page,
        page_size=size,
    )
    try:
        result = await asyncio.wait_for(
            engine.load_page(request),
            timeout=settings.analysis_request_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            "analysis_companies.failed",
            error="timeout",
            timeout_seconds=settings.analysis_request_timeout_seconds,
        )
        return _failed_page(page, size)
    except Exception as exc:
        logger.error("analysis_companies.failed", error=str(exc), exc_info=True)
        return _failed_page(page, size)
    return _page_response(result)


def _failed_page(page: int, page_size: int) -> JSONResponse:
    body = AnalysisPageResponse(page=page, page_size=page_size, error="internal")
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


@router.get("/state", response_model=AnalysisStateResponse)
async def analysis_state(
    inn: Optional[List[str]] = Query(None),
    engine: CompanyAnalysisEngine = Depends(get_analysis_engine),
    settings: Settings = Depends(get_settings),
):
    """Current lifecycle state for specific companies."""
    inns = _split_values(inn)
    if not inns:
        return AnalysisStateResponse(items=[])
    try:
        records = await asyncio.wait_for(
            engine.load_states(inns),
            timeout=settings.analysis_request_timeout_seconds,
        )
    except Exception as exc:
        logger.error("analysis_state.failed", error=str(exc) or type(exc).__name__, exc_info=True)
        body = AnalysisStateResponse(ok=False, error="internal")
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))
    return AnalysisStateResponse(items=[AnalysisStateItem(**_state_fields(record)) for record in records])


def _state_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    keys = AnalysisStateItem.model_fields.keys()
    return {key: record.get(key) for key in keys}
