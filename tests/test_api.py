"""Tests for API routes."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from visibility.agents.orchestrator import AnalysisOrchestrator
from visibility.api.routes.analyses import get_orchestrator
from visibility.config import PipelineConfig
from visibility.llm_client import LLMConfigurationError, LLMResponseError
from visibility.main import app
from visibility.services.store import InMemoryAnalysisStore
from fakes import FixedRankResolver, ScriptedAnswerAgent, seed_analysis


@pytest.fixture
def orchestrator():
    return AnalysisOrchestrator(
        store=InMemoryAnalysisStore(),
        answer_agent=ScriptedAnswerAgent(),
        validation_agent=FixedRankResolver(),
        topic_agent=AsyncMock(),
        config=PipelineConfig(),
    )


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed(orchestrator, texts, **kwargs) -> str:
    return asyncio.run(seed_analysis(orchestrator.store, texts, **kwargs))


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "visibility"}


def test_analyze_starts_analysis(client, orchestrator):
    analysis_id = _seed(orchestrator, ["q1", "q2", "q3"])
    orchestrator.start_analysis = AsyncMock(return_value=analysis_id)

    response = client.post("/api/analyze", json={"institution_name": "Example University"})

    assert response.status_code == 200
    assert response.json() == {
        "analysis_id": analysis_id,
        "total_queries": 3,
        "message": "Analysis started",
    }
    orchestrator.start_analysis.assert_awaited_once_with("Example University")


@pytest.mark.parametrize("body", [{"institution_name": "   "}, {"institution_name": ""}, {}])
def test_analyze_rejects_missing_name(client, orchestrator, body):
    orchestrator.start_analysis = AsyncMock()
    response = client.post("/api/analyze", json=body)
    assert response.status_code in (400, 422)
    orchestrator.start_analysis.assert_not_awaited()


def test_analyze_blank_name_is_bad_request(client):
    response = client.post("/api/analyze", json={"institution_name": "   "})
    assert response.status_code == 400
    assert response.json()["detail"] == "Institution name is required"


def test_analyze_topic_generation_failure_is_bad_gateway(client, orchestrator):
    orchestrator.start_analysis = AsyncMock(side_effect=LLMResponseError("topics: no valid topics returned"))
    response = client.post("/api/analyze", json={"institution_name": "Example University"})
    assert response.status_code == 502
    assert "no valid topics" in response.json()["detail"]


def test_analyze_missing_provider_config_is_server_error(client, orchestrator):
    orchestrator.start_analysis = AsyncMock(side_effect=LLMConfigurationError("OPENROUTER_API_KEY is not set"))
    response = client.post("/api/analyze", json={"institution_name": "Example University"})
    assert response.status_code == 500


def test_progress(client, orchestrator):
    analysis_id = _seed(orchestrator, ["q1"])
    asyncio.run(orchestrator.store.update_analysis(analysis_id, status="processing", progress=40))

    response = client.get(f"/api/progress/{analysis_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == analysis_id
    assert data["status"] == "processing"
    assert data["progress"] == 40
    assert data["is_complete"] is False
    assert data["is_failed"] is False
    assert data["is_cancelled"] is False


def test_progress_reports_cancelled_run(client, orchestrator):
    analysis_id = _seed(orchestrator, ["q1", "q2"])
    cancel_event = asyncio.Event()
    cancel_event.set()
    assert asyncio.run(orchestrator.run_pipeline(analysis_id, cancel_event=cancel_event)) is False

    data = client.get(f"/api/progress/{analysis_id}").json()

    assert data["status"] == "processing"
    assert data["is_complete"] is False
    assert data["is_cancelled"] is True
    assert data["cancelled_at"]


def test_progress_unknown_analysis(client):
    assert client.get("/api/progress/missing").status_code == 404


def test_report_after_pipeline(client, orchestrator):
    analysis_id = _seed(orchestrator, ["q1", "q2"])
    asyncio.run(orchestrator.run_pipeline(analysis_id))

    response = client.get(f"/api/report/{analysis_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["analysis"]["status"] == "completed"
    assert len(data["topics"]) == 1
    assert data["topics"][0]["topic_name"] == "Admissions"
    assert [q["query_text"] for q in data["topics"][0]["queries"]] == ["q1", "q2"]
    assert data["competitors"] == []
    assert data["sources"] == []


def test_report_unknown_analysis(client):
    assert client.get("/api/report/missing").status_code == 404


def test_cancel(client, orchestrator):
    analysis_id = _seed(orchestrator, ["q1"])

    response = client.post(f"/api/analyze/{analysis_id}/cancel")

    assert response.status_code == 200
    assert response.json() == {"analysis_id": analysis_id, "cancelled": False}
    assert client.post("/api/analyze/missing/cancel").status_code == 404
