"""Stub transcriber for local/offline testing."""

from batchgrader.models import TranscriptSegment
from batchgrader.transcription.base import Transcriber, TranscriptionResult

_STUB_SENTENCES = [
    "Today I will present our findings on the topic assigned for this unit.",
    "Our main claim is that the evidence supports the hypothesis because the results were consistent across trials.",
    "We analyzed the data and found a clear trend, which we explain with reference to the course readings.",
    "In conclusion, the argument holds, although further research could strengthen the evidence.",
]


class StubTranscriber(Transcriber):
    name = "stub"

    def transcribe_url(self, media_url: str) -> TranscriptionResult:
        segments = [
            TranscriptSegment(id=f"seg-0-{index}", text=sentence, timestamp_ms=index * 5000, speaker="Speaker 1")
            for index, sentence in enumerate(_STUB_SENTENCES)
        ]
        text = " ".join(_STUB_SENTENCES)
        return TranscriptionResult(text=f"[stub-transcript] {text}", segments=segments, duration_seconds=20.0)
