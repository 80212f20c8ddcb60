"""Tests for the processing API routes."""

import openpyxl
import pytest
from fastapi.testclient import TestClient

from mls_geo.api.deps import set_processor
from mls_geo.config import settings
from mls_geo.main import app
from mls_geo.pipeline.processor import Processor
from mls_geo.pipeline.recovery import encode_snapshot, snapshot_key
from mls_geo.pipeline.types import BatchConfig, DetectedColumns, ProcessedResult, ProcessingSnapshot, Stats


@pytest.fixture
def processor(memory_store, secondary):
    processor = Processor(geocoders=[secondary], enricher=None, snapshot_store=memory_store, inter_batch_pause=0)
    set_processor(processor)
    yield processor
    set_processor(None)


@pytest.fixture
def client(processor):
    return TestClient(app)


def saved_snapshot(user_id="agent-7"):
    records = [{"Address": f"{100 + i} Main St"} for i in range(4)]
    return ProcessingSnapshot(
        file_name="listings.xlsx",
        total_records=4,
        cursor=1,
        records=records,
        results=[ProcessedResult(index=0, record=records[0], address="100 Main St", status="success")],
        columns=DetectedColumns(address="Address"),
        config=BatchConfig(batch_size=25, concurrency_limit=15),
        stats=Stats(total_records=4, processed=1, successes=1),
        user_id=user_id,
    )


class TestProgress:
    def test_idle(self, client):
        resp = client.get("/api/v1/processing/progress")
        assert resp.status_code == 200
        data = resp.json()
        assert data["is_running"] is False
        assert data["total"] == 0
        assert data["stats"]["processed"] == 0

    def test_stop_when_idle(self, client):
        resp = client.post("/api/v1/processing/stop")
        assert resp.json() == {"stopped": False}

    def test_unknown_job(self, client):
        assert client.get("/api/v1/processing/jobs/does-not-exist").status_code == 404

    def test_cancel_unknown_job(self, client):
        assert client.delete("/api/v1/processing/jobs/does-not-exist").status_code == 404


class TestStart:
    def test_missing_file(self, client, tmp_path):
        resp = client.post("/api/v1/processing/start", json={"file_path": str(tmp_path / "missing.xlsx")})
        assert resp.status_code == 400
        assert "not found" in resp.json()["detail"]

    def test_no_address_column(self, client, tmp_path):
        workbook = openpyxl.Workbook()
        workbook.active.append(["Price", "Beds"])
        workbook.active.append([350000, 3])
        path = tmp_path / "prices.xlsx"
        workbook.save(path)

        resp = client.post("/api/v1/processing/start", json={"file_path": str(path)})
        assert resp.status_code == 422

    def test_invalid_override(self, client, tmp_path):
        resp = client.post(
            "/api/v1/processing/start",
            json={"file_path": str(tmp_path / "x.xlsx"), "overrides": {"batch_size": 0}},
        )
        assert resp.status_code == 422

    def test_rejected_while_running(self, client, processor, tmp_path):
        processor.is_running = True
        resp = client.post("/api/v1/processing/start", json={"file_path": str(tmp_path / "x.xlsx")})
        assert resp.status_code == 409


class TestRecovery:
    def test_nothing_saved(self, client):
        assert client.get("/api/v1/processing/recovery").json() == {"available": False}
        resp = client.post("/api/v1/processing/recovery/resume", json={})
        assert resp.status_code == 404

    def test_snapshot_details(self, client, memory_store):
        memory_store.blobs[snapshot_key("agent-7")] = encode_snapshot(saved_snapshot())

        data = client.get("/api/v1/processing/recovery", params={"user_id": "agent-7"}).json()

        assert data["available"] is True
        assert data["snapshot"]["cursor"] == 1
        assert data["snapshot"]["percentage"] == 25
        assert data["snapshot"]["file_name"] == "listings.xlsx"

    def test_export_and_discard(self, client, memory_store, tmp_path):
        key = snapshot_key("agent-7")
        memory_store.blobs[key] = encode_snapshot(saved_snapshot())

        resp = client.post(
            "/api/v1/processing/recovery/export",
            json={"user_id": "agent-7", "path": str(tmp_path / "partial.xlsx")},
        )
        assert resp.status_code == 200
        assert openpyxl.load_workbook(resp.json()["path"]).sheetnames == ["Partial Results"]

        resp = client.post("/api/v1/processing/recovery/discard", json={"user_id": "agent-7"})
        assert resp.json() == {"discarded": True}
        assert key not in memory_store.blobs

    def test_export_without_snapshot(self, client, tmp_path):
        resp = client.post("/api/v1/processing/recovery/export", json={"path": str(tmp_path / "p.xlsx")})
        assert resp.status_code == 404


class TestCache:
    def test_stats_and_clear(self, client):
        data = client.get("/api/v1/processing/cache").json()
        assert data["geocoding"] == {"entries": 0, "total_hits": 0}
        assert "enrichment" in data
        assert client.delete("/api/v1/processing/cache").json() == {"cleared": True}


class TestApiKey:
    def test_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "processor_api_key", "secret")
        assert client.get("/api/v1/processing/progress").status_code == 401
        resp = client.get("/api/v1/processing/progress", headers={"X-API-Key": "secret"})
        assert resp.status_code == 200
