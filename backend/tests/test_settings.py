from __future__ import annotations

from batchgrader.settings import Settings


def test_data_dir_defaults_to_tmp_on_vercel(monkeypatch) -> None:
    monkeypatch.setenv("VERCEL", "1")
    monkeypatch.delenv("VERCEL_ENV", raising=False)
    monkeypatch.delenv("BATCHGRADER_DATA_DIR", raising=False)
    monkeypatch.delenv("DATA_DIR", raising=False)

    settings = Settings()

    assert settings.data_path.as_posix() == "/tmp/batchgrader"


def test_data_dir_defaults_to_local_when_not_on_vercel(monkeypatch) -> None:
    monkeypatch.delenv("VERCEL", raising=False)
    monkeypatch.delenv("VERCEL_ENV", raising=False)
    monkeypatch.delenv("BATCHGRADER_SERVERLESS", raising=False)
    monkeypatch.delenv("BATCHGRADER_DATA_DIR", raising=False)
    monkeypatch.delenv("DATA_DIR", raising=False)

    settings = Settings()

    assert settings.data_path.as_posix().endswith("/backend/data")


def test_sqlite_path_follows_data_dir(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.delenv("BATCHGRADER_SQLITE_PATH", raising=False)
    monkeypatch.delenv("SQLITE_PATH", raising=False)

    settings = Settings()

    assert settings.sqlite_path == str(tmp_path / "batchgrader.db")
    assert settings.sqlite_url == f"sqlite:///{tmp_path / 'batchgrader.db'}"


def test_prefixed_env_overrides_pipeline_knobs(monkeypatch) -> None:
    monkeypatch.setenv("BATCHGRADER_LEASE_SECONDS", "60")
    monkeypatch.setenv("BATCHGRADER_MAX_CONTEXT_CHARS", "1200")
    monkeypatch.setenv("BATCHGRADER_RECORD_STORE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("CRON_SECRET", "cron-secret")

    settings = Settings()

    assert settings.lease_seconds == 60
    assert settings.max_context_chars == 1200
    assert settings.record_store_backend == "redis"
    assert settings.redis_url == "redis://cache:6379/2"
    assert settings.worker_secret == "cron-secret"


def test_retrieval_defaults() -> None:
    settings = Settings()

    assert settings.chunk_size == 1000
    assert settings.chunk_overlap == 200
    assert settings.max_context_chars == 8000
    assert settings.min_relevance_score == 0.25
    assert settings.max_chunks_per_criterion == 2


def test_cors_allow_origins_defaults_to_wildcard(monkeypatch) -> None:
    monkeypatch.delenv("BATCHGRADER_CORS_ALLOW_ORIGINS", raising=False)
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)

    settings = Settings()

    assert settings.cors_origin_list == ["*"]


def test_cors_allow_origins_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://frontend-a.vercel.app, https://frontend-b.vercel.app")

    settings = Settings()

    assert settings.cors_origin_list == [
        "https://frontend-a.vercel.app",
        "https://frontend-b.vercel.app",
    ]
