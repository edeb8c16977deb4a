"""Transcriber factory/dispatcher."""

from batchgrader.errors import MissingDependencyError
from batchgrader.transcription.base import Transcriber
from batchgrader.transcription.deepgram import DeepgramTranscriber
from batchgrader.transcription.stub import StubTranscriber


def get_transcriber(name: str) -> Transcriber:
    provider = name.lower()
    if provider == "stub":
        return StubTranscriber()
    if provider == "deepgram":
        return DeepgramTranscriber()
    raise MissingDependencyError(f"Unknown transcriber '{name}'. Use one of: stub, deepgram")
