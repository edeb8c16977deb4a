"""Filesystem and object-key helpers."""

from __future__ import annotations

from pathlib import Path

_DEFAULT_EXTENSION = "mp4"


def ensure_dir(path: Path) -> Path:
    """Create directory if needed and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def file_extension(filename: str, default: str = _DEFAULT_EXTENSION) -> str:
    suffix = Path(filename).suffix.lstrip(".").lower()
    return suffix or default


def generate_file_key(batch_id: str, submission_id: str, filename: str) -> str:
    """Object key for an uploaded presentation: batches/{batch}/{submission}.{ext}."""
    return f"batches/{batch_id}/{submission_id}.{file_extension(filename)}"
