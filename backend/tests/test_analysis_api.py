import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.api.analysis import get_analysis_engine
from app.config import Settings, get_settings
from app.main import app
from app.services.analysis.types import ActiveSummary, AnalysisPage, IntegrationHealth, SortKey


class _FakeEngine:
    def __init__(self, page=None, states=None, error=None, delay=0.0):
        self.page = page
        self.states = states or []
        self.error = error
        self.delay = delay
        self.requests = []
        self.state_requests = []

    async def load_page(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.page

    async def load_states(self, inns):
        self.state_requests.append(list(inns))
        if self.error is not None:
            raise self.error
        return self.states


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use(engine, settings=None):
    app.dependency_overrides[get_analysis_engine] = lambda: engine
    if settings is not None:
        app.dependency_overrides[get_settings] = lambda: settings


def _sample_page():
    return AnalysisPage(
        items=[
            {
                "inn": "7700000001",
                "short_name": "Alpha",
                "analysis_started_at": datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc),
                "activity_state": "running",
                "outcome": "pending",
            }
        ],
        total=1,
        page=1,
        page_size=30,
        available={"analysis_ok": True, "queue": False},
        active=ActiveSummary(running=1, queued=0),
        integration=IntegrationHealth(base=None, available=False, detail="AI_INTEGRATION_BASE is not configured"),
    )


def test_companies_returns_page_and_parses_filters(client):
    engine = _FakeEngine(page=_sample_page())
    _use(engine)

    response = client.get(
        "/ai-analysis/companies",
        params=[
            ("okved", "25.62"),
            ("parent", "true"),
            ("q", "Alpha"),
            ("sort", "revenue_asc"),
            ("status", "success,bogus"),
            ("status", "server_error"),
        ],
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["error"] is None
    assert body["active"] == {"running": 1, "queued": 0, "total": 1}
    assert body["integration"]["available"] is False
    assert body["items"][0]["analysis_started_at"].startswith("2026-03-01T11:00:00")

    request = engine.requests[0]
    assert request.filters.okved == "25.62"
    assert request.filters.include_parent is True
    assert request.filters.include_extra is False
    assert request.filters.statuses == ["success", "server_error"]
    assert request.sort == SortKey.revenue_asc


def test_page_size_is_capped(client):
    engine = _FakeEngine(page=AnalysisPage.empty(1, 100))
    _use(engine)

    response = client.get("/ai-analysis/companies", params={"page_size": 500})
    assert response.status_code == 200
    assert engine.requests[0].page_size == 100


def test_non_positive_industry_id_means_no_industry_filter(client):
    engine = _FakeEngine(page=AnalysisPage.empty(1, 30))
    _use(engine)

    for value in ("0", "-3", "42"):
        assert client.get("/ai-analysis/companies", params={"industry_id": value}).status_code == 200

    assert [r.filters.industry_id for r in engine.requests] == [None, None, 42]


def test_engine_failure_returns_empty_page_with_500(client):
    _use(_FakeEngine(error=RuntimeError("db down")))

    response = client.get("/ai-analysis/companies", params={"page": 2})
    assert response.status_code == 500
    body = response.json()
    assert body["items"] == []
    assert body["total"] == 0
    assert body["page"] == 2
    assert body["error"] == "internal"


def test_request_timeout_returns_500(client):
    _use(_FakeEngine(page=_sample_page(), delay=1.0), Settings(analysis_request_timeout_seconds=0.01))

    response = client.get("/ai-analysis/companies")
    assert response.status_code == 500
    assert response.json()["error"] == "internal"


def test_invalid_sort_is_rejected(client):
    _use(_FakeEngine(page=_sample_page()))
    response = client.get("/ai-analysis/companies", params={"sort": "name"})
    assert response.status_code == 422


def test_state_accepts_repeated_and_comma_separated_identifiers(client):
    engine = _FakeEngine(
        states=[
            {
                "inn": "1",
                "analysis_status": "queued",
                "activity_state": "queued",
                "outcome": "pending",
                "queued_at": datetime(2026, 3, 1, 11, 59, tzinfo=timezone.utc),
                "short_name": "ignored",
            }
        ]
    )
    _use(engine)

    response = client.get("/ai-analysis/state", params=[("inn", "1,2"), ("inn", "3"), ("inn", "1")])
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["items"][0]["activity_state"] == "queued"
    assert "short_name" not in body["items"][0]
    assert engine.state_requests == [["1", "2", "3"]]


def test_state_failure_returns_500(client):
    _use(_FakeEngine(error=RuntimeError("boom")))
    response = client.get("/ai-analysis/state", params={"inn": "1"})
    assert response.status_code == 500
    assert response.json()["ok"] is False
    assert response.json()["error"] == "internal"


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
