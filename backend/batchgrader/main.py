"""FastAPI application entrypoint."""

import os
from uuid import uuid4

from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.responses import Response

from batchgrader.db import create_db_and_tables
from batchgrader.record_store import get_record_store
from batchgrader.repository import QUEUE_KEY
from batchgrader.routers.batches import router as batches_router
from batchgrader.routers.context import router as context_router
from batchgrader.routers.files import router as files_router
from batchgrader.routers.processing import router as processing_router
from batchgrader.routers.submissions import router as submissions_router
from batchgrader.settings import settings
from batchgrader.storage import ensure_dir

app = FastAPI(title=settings.app_name, version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

_PUBLIC_PATHS = {
    "/health",
    "/health/deep",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/favicon.ico",
}

# The worker route carries its own shared-secret check.
_WORKER_PATHS = {"/processing/worker"}


@app.middleware("http")
async def enforce_api_key(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    if request.url.path in _PUBLIC_PATHS or request.url.path in _WORKER_PATHS:
        return await call_next(request)

    expected_api_key = os.getenv("BACKEND_API_KEY", "").strip()
    if expected_api_key:
        received_api_key = request.headers.get("X-API-Key", "")
        if received_api_key != expected_api_key:
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

    return await call_next(request)

app.include_router(batches_router)
app.include_router(submissions_router)
app.include_router(processing_router)
app.include_router(context_router)
app.include_router(files_router)


@app.on_event("startup")
def on_startup() -> None:
    ensure_dir(settings.data_path)
    if settings.record_store_backend.lower().strip() == "sql":
        create_db_and_tables()


def _service_flags() -> dict[str, bool]:
    return {
        "openai_configured": bool(os.getenv("OPENAI_API_KEY", "").strip()),
        "deepgram_configured": bool((settings.deepgram_api_key or "").strip()),
    }


@app.get("/health", tags=["meta"])
def health() -> dict[str, bool]:
    return {"ok": True, **_service_flags()}


@app.get("/health/deep", tags=["meta"])
def deep_health() -> dict[str, bool | str | int]:
    data_dir = settings.data_path

    storage_writable = False
    try:
        ensure_dir(data_dir)
        probe_path = data_dir / f".health_probe_{uuid4().hex}"
        probe_path.write_text("ok", encoding="utf-8")
        probe_path.unlink(missing_ok=True)
        storage_writable = True
    except OSError:
        storage_writable = False

    store_ok = False
    queue_length = -1
    try:
        queue_length = get_record_store().list_length(QUEUE_KEY)
        store_ok = True
    except Exception:
        store_ok = False

    return {
        "ok": True,
        **_service_flags(),
        "storage_writable": storage_writable,
        "data_dir": str(data_dir),
        "record_store_ok": store_ok,
        "record_store_backend": settings.record_store_backend,
        "queue_length": queue_length,
    }


@app.options("/{path:path}", include_in_schema=False)
async def preflight(path: str) -> Response:
    del path
    return Response(status_code=204)
