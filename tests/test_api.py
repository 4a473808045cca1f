"""HTTP tests for the run API, auth and the SSE stream."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from harborline.config import HarborlineConfig
from harborline.server import create_app
from kube_fakes import FakeKube

API_KEY = "test-secret-key-12345"

BODY = {
    "repo_url": "https://git.example.com/team/app.git",
    "image_name": "app",
    "image_tag": "v3",
}


def _settings(api_key: str | None = None) -> HarborlineConfig:
    return HarborlineConfig(
        registry={"host": "harbor.test"},
        runtime={"poll_interval": 0, "conflict_retry_delay": 0, "rollout_settle_delay": 0},
        api={"api_key": api_key},
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def client(kube):
    with TestClient(create_app(config=_settings(), kube=kube)) as c:
        yield c


@pytest.fixture
def client_with_key(kube):
    with TestClient(create_app(config=_settings(API_KEY), kube=kube), raise_server_exceptions=False) as c:
        yield c


def _wait_finished(client: TestClient, run_id: str, headers=None) -> dict:
    for _ in range(500):
        body = client.get(f"/runs/{run_id}", headers=headers).json()
        if body["finished"]:
            return body
        time.sleep(0.01)
    raise AssertionError(f"run {run_id} did not finish")


# ── Tests: Runs ──────────────────────────────────────────────────────────────


class TestRuns:
    def test_trigger_returns_202(self, client):
        resp = client.post("/runs", json=BODY)
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "PENDING"
        assert body["image"] == "harbor.test/library/app:v3"
        assert len(body["id"]) == 8

    def test_trigger_validation_error(self, client):
        resp = client.post("/runs", json={"repo_url": "", "image_name": "app"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "repository URL is required"
        assert client.get("/runs").json() == {"runs": []}

    def test_run_completes(self, client):
        run_id = client.post("/runs", json=BODY).json()["id"]
        body = _wait_finished(client, run_id)
        assert body["status"] == "SUCCESS"
        assert body["current_step"] == 4
        assert body["status_label"] == "Succeeded"
        assert body["end_time"] is not None

    def test_unknown_run(self, client):
        resp = client.get("/runs/deadbeef")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "run not found: deadbeef"
        assert client.get("/runs/deadbeef/logs").status_code == 404
        assert client.get("/runs/deadbeef/stream").status_code == 404

    def test_list_runs(self, client):
        first = client.post("/runs", json=BODY).json()["id"]
        second = client.post("/runs", json={**BODY, "image_tag": "v4"}).json()["id"]
        ids = [r["id"] for r in client.get("/runs").json()["runs"]]
        assert set(ids) == {first, second}

    def test_logs_since(self, client):
        run_id = client.post("/runs", json=BODY).json()["id"]
        _wait_finished(client, run_id)
        full = client.get(f"/runs/{run_id}/logs").json()
        assert full["since"] == 0
        assert full["finished"] is True
        assert full["next"] == len(full["lines"])

        tail = client.get(f"/runs/{run_id}/logs", params={"since": 2}).json()
        assert tail["lines"] == full["lines"][2:]
        assert tail["next"] == full["next"]

    def test_stream_finished_run(self, client):
        run_id = client.post("/runs", json=BODY).json()["id"]
        _wait_finished(client, run_id)
        resp = client.get(f"/runs/{run_id}/stream")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        text = resp.text
        assert text.startswith("event: init\n")
        assert "event: complete\n" in text
        assert '"status": "SUCCESS"' in text

    def test_health(self, client, kube):
        client.post("/runs", json=BODY)
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["namespace"] == "default"
        assert body["total_runs"] == 1


# ── Tests: Auth ──────────────────────────────────────────────────────────────


class TestAuth:
    def test_missing_key(self, client_with_key):
        resp = client_with_key.get("/runs")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_wrong_key(self, client_with_key):
        resp = client_with_key.get("/runs", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid API key."

    def test_valid_key(self, client_with_key):
        headers = {"Authorization": f"Bearer {API_KEY}"}
        assert client_with_key.get("/runs", headers=headers).status_code == 200
        assert client_with_key.post("/runs", json=BODY, headers=headers).status_code == 202

    def test_stream_token_query(self, client_with_key):
        headers = {"Authorization": f"Bearer {API_KEY}"}
        run_id = client_with_key.post("/runs", json=BODY, headers=headers).json()["id"]
        _wait_finished(client_with_key, run_id, headers=headers)
        assert client_with_key.get(f"/runs/{run_id}/stream").status_code == 401
        resp = client_with_key.get(f"/runs/{run_id}/stream", params={"token": API_KEY})
        assert resp.status_code == 200
        assert "event: complete" in resp.text

    def test_health_is_open(self, client_with_key):
        assert client_with_key.get("/health").status_code == 200
