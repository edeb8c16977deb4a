"""Deepgram prerecorded-audio transcription over HTTP."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from batchgrader.errors import ExternalServiceError, MissingDependencyError
from batchgrader.models import TranscriptSegment
from batchgrader.settings import settings
from batchgrader.transcription.base import TranscriptionResult

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"
WORDS_PER_FALLBACK_SEGMENT = 10


def _speaker_label(speaker: object) -> str | None:
    if isinstance(speaker, int):
        return f"Speaker {speaker + 1}"
    return None


def parse_deepgram_response(payload: dict[str, Any]) -> TranscriptionResult:
    """Build transcript text and segments from a Deepgram listen response.

    Segments come from paragraph sentences when paragraphs are present, otherwise
    from groups of ten words.
    """
    results = payload.get("results") or {}
    channels = results.get("channels") or []
    alternatives = (channels[0].get("alternatives") or []) if channels else []
    duration = (payload.get("metadata") or {}).get("duration")
    if not alternatives:
        return TranscriptionResult(text="", segments=[], duration_seconds=duration)

    alternative = alternatives[0]
    segments: list[TranscriptSegment] = []
    paragraphs = (alternative.get("paragraphs") or {}).get("paragraphs")
    if paragraphs:
        for i, paragraph in enumerate(paragraphs):
            for j, sentence in enumerate(paragraph.get("sentences") or []):
                segments.append(
                    TranscriptSegment(
                        id=f"seg-{i}-{j}",
                        text=sentence.get("text") or "",
                        timestamp_ms=round((sentence.get("start") or 0) * 1000),
                        speaker=_speaker_label(paragraph.get("speaker")),
                    )
                )
    elif alternative.get("words"):
        words = alternative["words"]
        for i in range(0, len(words), WORDS_PER_FALLBACK_SEGMENT):
            group = words[i : i + WORDS_PER_FALLBACK_SEGMENT]
            segments.append(
                TranscriptSegment(
                    id=f"seg-{i}",
                    text=" ".join(word.get("punctuated_word") or word.get("word") or "" for word in group),
                    timestamp_ms=round((group[0].get("start") or 0) * 1000),
                    speaker=_speaker_label(group[0].get("speaker")),
                )
            )

    return TranscriptionResult(
        text=alternative.get("transcript") or "",
        segments=segments,
        duration_seconds=duration,
    )


class DeepgramTranscriber:
    name = "deepgram"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float = 300.0,
        client: httpx.Client | None = None,
    ) -> None:
        resolved_key = (api_key or settings.deepgram_api_key or "").strip()
        if not resolved_key:
            raise MissingDependencyError("DEEPGRAM_API_KEY is not set")
        self._api_key = resolved_key
        self._model = model or settings.deepgram_model
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def transcribe_url(self, media_url: str) -> TranscriptionResult:
        params = {
            "model": self._model,
            "language": "en",
            "smart_format": "true",
            "punctuate": "true",
            "diarize": "true",
            "paragraphs": "true",
        }
        try:
            response = self._client.post(
                DEEPGRAM_LISTEN_URL,
                params=params,
                json={"url": media_url},
                headers={"Authorization": f"Token {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                service="deepgram", status_code=None, body=str(exc), message=f"Deepgram request failed: {exc}"
            ) from exc

        if response.status_code >= 400:
            logger.warning("deepgram error response", extra={"status_code": response.status_code})
            raise ExternalServiceError(
                service="deepgram",
                status_code=response.status_code,
                body=response.text,
                message=f"Deepgram error: HTTP {response.status_code}",
            )
        return parse_deepgram_response(response.json())
