from __future__ import annotations

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from batchgrader.main import app
from batchgrader.settings import settings


def test_batches_require_api_key_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("BACKEND_API_KEY", "test-api-key")

    with TestClient(app) as client:
        unauthorized = client.get("/batches")
        assert unauthorized.status_code == 401

        authorized = client.get("/batches", headers={"X-API-Key": "test-api-key"})
        assert authorized.status_code == 200

        health = client.get("/health")
        assert health.status_code == 200


def test_preflight_bypasses_auth_but_post_requires_api_key(monkeypatch) -> None:
    monkeypatch.setenv("BACKEND_API_KEY", "test-api-key")

    with TestClient(app) as client:
        preflight = client.options(
            "/batches",
            headers={
                "Origin": "https://example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        unauthorized_post = client.post("/batches", json={"name": "Protected"})
        authorized_post = client.post(
            "/batches",
            json={"name": "Protected"},
            headers={"X-API-Key": "test-api-key"},
        )

    assert preflight.status_code in (200, 204)
    assert "access-control-allow-origin" in preflight.headers
    assert unauthorized_post.status_code == 401
    assert authorized_post.status_code == 201


def test_worker_uses_cron_secret_instead_of_api_key(monkeypatch) -> None:
    monkeypatch.setenv("BACKEND_API_KEY", "test-api-key")
    monkeypatch.setattr(settings, "worker_secret", "cron-secret")
    monkeypatch.setattr(settings, "embedder", "none")

    with TestClient(app) as client:
        missing = client.get("/processing/worker")
        wrong = client.get("/processing/worker", headers={"Authorization": "Bearer nope"})
        allowed = client.get("/processing/worker", headers={"Authorization": "Bearer cron-secret"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"processed": 0, "outcomes": [], "remaining": 0}
