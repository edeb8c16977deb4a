from __future__ import annotations

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from batchgrader.main import app


@pytest.mark.parametrize("path", ["/health", "/batches"])
def test_cors_headers_present(path: str) -> None:
    with TestClient(app) as client:
        response = client.get(path, headers={"Origin": "https://example.com"})

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_preflight_options_allows_cors() -> None:
    with TestClient(app) as client:
        response = client.options(
            "/submissions/presign",
            headers={
                "Origin": "https://example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "x-api-key,content-type",
            },
        )

    assert response.status_code in (200, 204)
    assert response.headers["access-control-allow-origin"] in {"*", "https://example.com"}
    assert "access-control-allow-methods" in response.headers
    assert "access-control-allow-headers" in response.headers
