import pytest
from fastapi.testclient import TestClient

from fakes import FakeSource
from pagesmith.admin import app, get_enrichment_sources, get_progress_bus
from pagesmith.config import DEFAULT_CONFIG
from pagesmith.errors import StorageError
from pagesmith.events import ProgressBus
from pagesmith.models import JobType


@pytest.fixture()
def client():
    bus = ProgressBus()
    app.dependency_overrides[get_progress_bus] = lambda: bus
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _enqueue(client, job_type="contractor_enrichment", target_ids=None, **kwargs):
    payload = {"target_ids": target_ids or ["c-1", "c-2"]}
    return client.post("/jobs", json={"job_type": job_type, "payload": payload}, **kwargs)


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert "version" in data
    assert "time" in data


def test_enqueue_list_and_get(client):
    response = _enqueue(client)
    assert response.status_code == 200
    job_id = response.json()["job_id"]
    assert response.json()["job"]["status"] == "pending"
    assert response.json()["job"]["total_items"] == 2

    listing = client.get("/jobs", params={"status": "pending"})
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["jobs"][0]["id"] == job_id

    detail = client.get(f"/jobs/{job_id}")
    assert detail.status_code == 200
    assert detail.json()["payload"]["target_ids"] == ["c-1", "c-2"]
    assert detail.json()["percent_complete"] == 0


def test_second_live_job_of_same_type_conflicts(client):
    assert _enqueue(client).status_code == 200

    response = _enqueue(client)

    assert response.status_code == 409
    assert response.json()["detail"].startswith("job_already_active")
    assert _enqueue(client, job_type="review_enrichment").status_code == 200


def test_invalid_requests_are_rejected(client):
    response = client.post(
        "/jobs", json={"job_type": "contractor_enrichment", "payload": {"target_ids": 5}}
    )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("invalid_payload")

    response = client.post("/jobs", json={"job_type": "sitemap_rebuild", "payload": {}})
    assert response.status_code == 400

    assert client.get("/jobs", params={"limit": 500}).status_code == 400
    assert client.get("/jobs", params={"order_by": "payload_json"}).status_code == 400
    assert client.get("/jobs", params={"status": "queued"}).status_code == 400


def test_missing_job_is_404(client):
    response = client.get("/jobs/job_missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "job_not_found"}
    assert client.post("/jobs/job_missing/cancel").status_code == 404
    assert client.get("/jobs/job_missing/logs").status_code == 404


def test_cancel_and_retry(client):
    job_id = _enqueue(client).json()["job_id"]

    cancelled = client.post(f"/jobs/{job_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/jobs/{job_id}/cancel").status_code == 409

    retried = client.post(f"/jobs/{job_id}/retry")
    assert retried.status_code == 200
    new_job = retried.json()["job"]
    assert new_job["retry_of"] == job_id
    assert new_job["status"] == "pending"
    assert client.post(f"/jobs/{new_job['id']}/retry").status_code == 409


def test_logs_endpoint(client):
    job_id = _enqueue(client).json()["job_id"]
    client.post(f"/jobs/{job_id}/cancel")

    response = client.get(f"/jobs/{job_id}/logs")

    assert response.status_code == 200
    assert [entry["event"] for entry in response.json()] == ["job_created", "job_cancel_requested"]


def test_stream_ends_with_terminal_event(client):
    job_id = _enqueue(client).json()["job_id"]
    client.post(f"/jobs/{job_id}/cancel")

    response = client.get(f"/jobs/{job_id}/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    frames = [line for line in response.text.splitlines() if line.startswith("data: ")]
    assert len(frames) == 1
    assert '"status": "cancelled"' in frames[0]
    assert '"terminal": true' in frames[0]


def test_stream_falls_back_to_row_without_bus_state(client):
    job_id = _enqueue(client).json()["job_id"]
    client.post(f"/jobs/{job_id}/cancel")
    fresh = ProgressBus()
    app.dependency_overrides[get_progress_bus] = lambda: fresh

    response = client.get(f"/jobs/{job_id}/stream")

    assert response.status_code == 200
    assert '"status": "cancelled"' in response.text


def test_admin_token_required_when_configured(client, monkeypatch):
    monkeypatch.setenv("PS_ADMIN_TOKEN", "s3cret")

    assert client.get("/health").status_code == 200
    assert client.get("/jobs").status_code == 401
    assert client.get("/jobs", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert _enqueue(client).status_code == 401

    ok = _enqueue(client, headers={"X-Admin-Token": "s3cret", "X-Admin-User": "dana"})
    assert ok.status_code == 200
    assert ok.json()["job"]["created_by"] == "dana"

    with TestClient(app, cookies={"ps_admin_token": "s3cret"}) as cookie_client:
        assert cookie_client.get("/jobs").status_code == 200


def test_runner_secret_cannot_manage_batch_jobs(client, monkeypatch):
    monkeypatch.setenv("PS_JOB_RUNNER_SECRET", "runner")

    response = _enqueue(client, headers={"X-Job-Runner-Secret": "runner"})

    assert response.status_code == 401


def test_runtime_config_roundtrip(client):
    response = client.get("/admin/config/runtime")
    assert response.status_code == 200
    cfg = response.json()["config"]
    assert cfg == DEFAULT_CONFIG

    cfg["enrichment"]["default_batch_size"] = 25
    assert client.put("/admin/config/runtime", json={"config": cfg}).status_code == 200
    assert client.get("/admin/config/runtime").json()["config"]["enrichment"]["default_batch_size"] == 25

    job = _enqueue(client).json()["job"]
    assert job["payload"]["batch_size"] == 25

    cfg["pipeline"]["surprise"] = True
    rejected = client.put("/admin/config/runtime", json={"config": cfg})
    assert rejected.status_code == 400
    assert "Invalid config.runtime" in rejected.json()["detail"]


def test_execute_runs_pending_job_inline(client):
    source = FakeSource(failing={"c-2"})
    app.dependency_overrides[get_enrichment_sources] = lambda: {
        JobType.CONTRACTOR_ENRICHMENT: source
    }
    job_id = _enqueue(client).json()["job_id"]

    response = client.post(f"/jobs/{job_id}/execute")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["job"]["status"] == "completed"
    assert body["job"]["processed_items"] == 1
    assert body["job"]["failed_items"] == 1
    assert source.seen == ["c-1", "c-2"]

    again = client.post(f"/jobs/{job_id}/execute")
    assert again.status_code == 409
    assert again.json()["detail"] == "job_not_pending: completed"
    assert client.post("/jobs/job_missing/execute").status_code == 404


def test_execute_hides_database_failure_detail(client, monkeypatch):
    app.dependency_overrides[get_enrichment_sources] = lambda: {
        JobType.CONTRACTOR_ENRICHMENT: FakeSource()
    }
    job_id = _enqueue(client).json()["job_id"]

    def _broken(*args, **kwargs):
        raise StorageError("database disk image is malformed: /data/state.sqlite3")

    monkeypatch.setattr("pagesmith.executors.update_job_progress", _broken)

    response = client.post(f"/jobs/{job_id}/execute")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "internal_error"
    assert body["job"]["status"] == "failed"
    assert body["job"]["last_error"] == "internal_error"
    assert "malformed" not in response.text
    assert "state.sqlite3" not in client.get(f"/jobs/{job_id}").text


def test_runner_secret_may_execute_batch_jobs(client, monkeypatch):
    app.dependency_overrides[get_enrichment_sources] = lambda: {
        JobType.REVIEW_ENRICHMENT: FakeSource()
    }
    job_id = _enqueue(client, job_type="review_enrichment").json()["job_id"]
    monkeypatch.setenv("PS_ADMIN_TOKEN", "s3cret")
    monkeypatch.setenv("PS_JOB_RUNNER_SECRET", "runner")

    denied = client.post(f"/jobs/{job_id}/execute", headers={"X-Job-Runner-Secret": "nope"})
    assert denied.status_code == 401

    response = client.post(f"/jobs/{job_id}/execute", headers={"X-Job-Runner-Secret": "runner"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
