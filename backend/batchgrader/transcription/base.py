"""Transcription provider interfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from batchgrader.models import TranscriptSegment


@dataclass
class TranscriptionResult:
    text: str
    segments: list[TranscriptSegment] = field(default_factory=list)
    duration_seconds: float | None = None


class Transcriber(Protocol):
    """Speech-to-text provider protocol."""

    name: str

    def transcribe_url(self, media_url: str) -> TranscriptionResult:
        """Transcribe the media at a fetchable URL."""
