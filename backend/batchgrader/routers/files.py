"""Local object storage endpoints used when no S3-compatible bucket is configured."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse

from batchgrader.storage_provider import LocalDiskProvider, get_storage_provider

router = APIRouter(prefix="/files", tags=["files"])


def _local_provider() -> LocalDiskProvider:
    provider = get_storage_provider()
    if not isinstance(provider, LocalDiskProvider):
        raise HTTPException(status_code=400, detail="Local file endpoint is only available with local storage backend")
    return provider


@router.get("/local")
def get_local_file(key: str = Query(...)) -> FileResponse:
    provider = _local_provider()
    try:
        path = provider.resolve_local_path(key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not path.exists() or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(path)


@router.put("/local")
async def put_local_file(request: Request, key: str = Query(...)) -> dict[str, str]:
    provider = _local_provider()
    data = await request.body()
    try:
        return provider.put_bytes(key, data, request.headers.get("content-type", "application/octet-stream"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
