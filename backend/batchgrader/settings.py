"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_LOCAL_DATA_DIR = BASE_DIR / "data"
DEFAULT_SERVERLESS_DATA_DIR = Path("/tmp/batchgrader")


TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _is_truthy(value: str | None) -> bool:
    return bool(value and value.strip().lower() in TRUTHY_VALUES)


def _running_serverless() -> bool:
    return bool(os.getenv("VERCEL") or os.getenv("VERCEL_ENV") or _is_truthy(os.getenv("BATCHGRADER_SERVERLESS")))


def _default_data_dir() -> str:
    if _running_serverless():
        return str(DEFAULT_SERVERLESS_DATA_DIR)
    return str(DEFAULT_LOCAL_DATA_DIR)


class Settings(BaseSettings):
    """Runtime configuration for the batch grading backend."""

    model_config = SettingsConfigDict(env_prefix="BATCHGRADER_", extra="ignore")

    app_name: str = "Batch Grader API"
    data_dir: str = Field(
        default_factory=_default_data_dir,
        validation_alias=AliasChoices("BATCHGRADER_DATA_DIR", "DATA_DIR"),
    )
    sqlite_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("BATCHGRADER_SQLITE_PATH", "SQLITE_PATH"),
    )

    # Record store: "sql" keeps everything in the local SQLite file, "redis" uses redis_url
    record_store_backend: str = "sql"
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("BATCHGRADER_REDIS_URL", "REDIS_URL"),
    )

    # Object storage
    storage_backend: str = "local"
    s3_bucket: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_public_base_url: str | None = None
    upload_url_expires_seconds: int = 3600
    download_url_expires_seconds: int = 3600

    # External services
    transcriber: str = "deepgram"
    deepgram_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("BATCHGRADER_DEEPGRAM_API_KEY", "DEEPGRAM_API_KEY"),
    )
    deepgram_model: str = "nova-2"
    grader: str = "openai"
    grading_model: str = "gpt-4o-mini"
    embedder: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Processing pipeline
    min_transcript_chars: int = 10
    rubric_retry_delay_seconds: float = 2.0
    max_claim_attempts: int = 5
    worker_max_per_run: int = 3
    lease_seconds: int = 900
    max_claims_for_verification: int = 8
    max_questions: int = 10

    # Repository consistency
    fold_attempts: int = 5
    fold_backoff_seconds: float = 0.05
    batch_read_attempts: int = 3
    recovery_scan_pages: int = 20
    recovery_scan_count: int = 100
    stale_upload_seconds: int = 300

    # Retrieval
    chunk_size: int = 1000
    chunk_overlap: int = 200
    max_context_chars: int = 8000
    min_relevance_score: float = 0.25
    high_confidence_score: float = 0.5
    max_chunks_per_criterion: int = 2
    general_context_chunks: int = 3
    transcript_query_chars: int = 1000

    worker_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("BATCHGRADER_WORKER_SECRET", "CRON_SECRET"),
    )

    cors_allow_origins: str = Field(
        default="*",
        validation_alias=AliasChoices("BATCHGRADER_CORS_ALLOW_ORIGINS", "CORS_ALLOW_ORIGINS"),
    )

    @model_validator(mode="after")
    def _set_sqlite_path(self) -> "Settings":
        if not self.sqlite_path:
            self.sqlite_path = str(Path(self.data_dir) / "batchgrader.db")
        return self

    @property
    def sqlite_url(self) -> str:
        return f"sqlite:///{self.sqlite_path}"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def cors_origin_list(self) -> list[str]:
        if self.cors_allow_origins.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


settings = Settings()
