"""Error types shared by the processing pipeline and its service adapters."""

from __future__ import annotations

from dataclasses import dataclass


class MissingDependencyError(RuntimeError):
    """A required external service is not configured."""


@dataclass
class ExternalServiceError(Exception):
    service: str
    status_code: int | None
    body: str
    message: str

    def __str__(self) -> str:
        return self.message
