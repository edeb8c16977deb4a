"""Shared-secret check for the scheduled worker endpoint."""

from __future__ import annotations

from fastapi import Header
from fastapi import HTTPException

from batchgrader.settings import settings


def require_worker_secret(authorization: str | None = Header(default=None)) -> None:
    expected = (settings.worker_secret or "").strip()
    if not expected:
        return

    if authorization != f"Bearer {expected}":
        raise HTTPException(status_code=401, detail="Unauthorized")
