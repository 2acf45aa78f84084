"""
Tests for Module 07 — API trigger surface.
Tests the ingestion, monitoring and scoring routes through FastAPI's TestClient.
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from pipeline.errors import PersistenceFailure
from pipeline.ingestion.orchestrator import IngestionOrchestrator


@pytest.fixture()
def client_for(db_engine):
    """Build a TestClient around an app bound to the in-memory database."""
    clients = []

    def _make(**kwargs):
        client = TestClient(create_app(sql_engine=db_engine, **kwargs))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


class TestHealth:
    def test_health_ok(self, client_for):
        resp = client_for().get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestIngestionRoutes:
    def test_run_returns_cycle_report(self, client_for, make, store, static_adapter):
        primary = static_adapter("EEA", [make(station_id=f"S{i}") for i in range(3)])
        client = client_for(orchestrator=IngestionOrchestrator(primary, None, store))

        resp = client.post("/api/ingestion/run")

        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "DONE"
        assert body["inserted_count"] == 3
        assert body["fetched"] == {"EEA": 3}

        last = client.get("/api/ingestion/last")
        assert last.status_code == 200
        assert last.json()["inserted_count"] == 3

    def test_persistence_failure_is_503_with_report(self, client_for, make, static_adapter):
        broken = MagicMock()
        broken.insert_observations.side_effect = PersistenceFailure("database is down")
        primary = static_adapter("EEA", [make()])
        client = client_for(orchestrator=IngestionOrchestrator(primary, None, broken))

        resp = client.post("/api/ingestion/run")

        assert resp.status_code == 503
        detail = resp.json()["detail"]
        assert "database is down" in detail["error"]
        assert detail["report"]["state"] == "FAILED"

    def test_last_report_404_before_any_cycle(self, client_for):
        assert client_for().get("/api/ingestion/last").status_code == 404

    def test_rate_limit_status_for_openaq(self, client_for):
        resp = client_for().get("/api/ingestion/rate-limit")
        assert resp.status_code == 200
        status = resp.json()["OpenAQ"]
        assert status["minute_usage"]["limit"] == 60
        assert status["hour_usage"]["limit"] == 2000
        assert status["can_make_request"] is True

    def test_cache_invalidation(self, client_for):
        resp = client_for().post("/api/ingestion/cache/invalidate")
        assert resp.status_code == 200
        assert resp.json() == {"invalidated": ["EEA", "OpenAQ"]}


class TestScoreRoutes:
    def test_compute_explicit_pairs(self, client_for):
        resp = client_for().post("/api/scores/compute", json={"types": ["heat", "floods"], "regions": ["DE"]})
        assert resp.status_code == 200
        body = resp.json()
        assert body["scored"] == 2
        assert body["failed"] == 0
        assert {s["type"] for s in body["scores"]} == {"heat", "floods"}

    def test_compute_defaults_to_seeded_regions(self, client_for):
        resp = client_for().post("/api/scores/compute", json={"types": ["wildfire"]})
        assert resp.status_code == 200
        assert resp.json()["scored"] == 30

    def test_unknown_type_is_400(self, client_for):
        resp = client_for().post("/api/scores/compute", json={"types": ["drought"]})
        assert resp.status_code == 400
