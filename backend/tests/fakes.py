"""In-test collaborators standing in for external services."""

from __future__ import annotations

import re
import zlib

from batchgrader.grading.rule_based import RuleBasedGradingService
from batchgrader.models import FileRef, TranscriptSegment
from batchgrader.transcription.base import TranscriptionResult

DEFAULT_TRANSCRIPT = (
    "Photosynthesis converts light energy into chemical energy. "
    "Our evidence shows chlorophyll absorbs red and blue light, because the data from 3 trials agree. "
    "Therefore the rate depends on light intensity and carbon dioxide concentration."
)


def make_file(name: str = "jane_doe_presentation.mp4", key: str | None = None) -> FileRef:
    return FileRef(key=key or f"uploads/{name}", original_filename=name, size_bytes=1024)


class FakeTranscriber:
    name = "fake"

    def __init__(self, text: str = DEFAULT_TRANSCRIPT, error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[str] = []

    def transcribe_url(self, media_url: str) -> TranscriptionResult:
        self.calls.append(media_url)
        if self.error is not None:
            raise self.error
        segments = [
            TranscriptSegment(id=f"seg-0-{i}", text=sentence, timestamp_ms=i * 4000, speaker="Speaker 1")
            for i, sentence in enumerate(s for s in re.split(r"(?<=\.)\s+", self.text) if s)
        ]
        return TranscriptionResult(text=self.text, segments=segments, duration_seconds=12.0)


class FlakyGrader(RuleBasedGradingService):
    """Rule-based grader that fails selected steps a configurable number of times."""

    name = "flaky"

    def __init__(
        self,
        evaluate_failures: int = 0,
        analyze_error: bool = False,
        questions_error: bool = False,
        verify_error: bool = False,
    ) -> None:
        self.evaluate_failures = evaluate_failures
        self.analyze_error = analyze_error
        self.questions_error = questions_error
        self.verify_error = verify_error
        self.evaluate_calls = 0
        self.evaluation_requests = []
        self.verified_claims: list[int] = []

    def analyze(self, transcript, context=None):
        if self.analyze_error:
            raise RuntimeError("analysis unavailable")
        return super().analyze(transcript, context)

    def evaluate(self, transcript, request):
        self.evaluate_calls += 1
        self.evaluation_requests.append(request)
        if self.evaluate_calls <= self.evaluate_failures:
            raise RuntimeError("model overloaded")
        return super().evaluate(transcript, request)

    def generate_questions(self, transcript, analysis, max_questions):
        if self.questions_error:
            raise RuntimeError("questions unavailable")
        return super().generate_questions(transcript, analysis, max_questions)

    def verify_claims(self, transcript, claims):
        self.verified_claims.append(len(claims))
        if self.verify_error:
            raise RuntimeError("verification unavailable")
        return super().verify_claims(transcript, claims)


class HashEmbedder:
    """Deterministic bag-of-words embedder: each word hashes into one dimension."""

    name = "hash"

    def __init__(self, dimensions: int = 512, fail_on: str | None = None) -> None:
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.calls = 0

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            if self.fail_on and self.fail_on in text:
                raise RuntimeError("embedding service unavailable")
            vector = [0.0] * self.dimensions
            for token in re.findall(r"\w+", text.lower()):
                if len(token) > 2:
                    vector[zlib.crc32(token.encode("utf-8")) % self.dimensions] += 1.0
            vectors.append(vector)
        return vectors
