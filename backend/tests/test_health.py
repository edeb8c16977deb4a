import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from batchgrader.main import app
from batchgrader.settings import settings


@pytest.mark.parametrize(
    ("api_key", "expected_openai_configured"),
    [("test-key", True), ("   ", False)],
)
def test_health_returns_openai_configuration_status(monkeypatch, api_key: str, expected_openai_configured: bool) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", api_key)

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200

    payload = response.json()
    assert payload["ok"] is True
    assert payload["openai_configured"] is expected_openai_configured


def test_health_reports_deepgram_configuration(monkeypatch) -> None:
    monkeypatch.setattr(settings, "deepgram_api_key", "dg-key")

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.json()["deepgram_configured"] is True


def test_health_deep_returns_storage_and_store_diagnostics(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")

    with TestClient(app) as client:
        response = client.get("/health/deep")

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["openai_configured"] is True
    assert payload["storage_writable"] is True
    assert payload["record_store_ok"] is True
    assert payload["record_store_backend"] == "sql"
    assert payload["queue_length"] == 0
    assert payload["data_dir"] == str(settings.data_path)
