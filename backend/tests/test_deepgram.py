from __future__ import annotations

import httpx
import pytest

from batchgrader.errors import ExternalServiceError, MissingDependencyError
from batchgrader.pipeline.transcribe import get_transcriber
from batchgrader.settings import settings
from batchgrader.transcription.deepgram import DEEPGRAM_LISTEN_URL, DeepgramTranscriber, parse_deepgram_response
from batchgrader.transcription.stub import StubTranscriber

PARAGRAPH_RESPONSE = {
    "metadata": {"duration": 42.5},
    "results": {
        "channels": [
            {
                "alternatives": [
                    {
                        "transcript": "Hello class. Today we discuss enzymes. Questions?",
                        "paragraphs": {
                            "paragraphs": [
                                {
                                    "speaker": 0,
                                    "sentences": [
                                        {"text": "Hello class.", "start": 0.0},
                                        {"text": "Today we discuss enzymes.", "start": 1.25},
                                    ],
                                },
                                {"speaker": 1, "sentences": [{"text": "Questions?", "start": 30.5}]},
                            ]
                        },
                    }
                ]
            }
        ]
    },
}


def test_parse_paragraph_sentences_into_segments() -> None:
    result = parse_deepgram_response(PARAGRAPH_RESPONSE)

    assert result.text == "Hello class. Today we discuss enzymes. Questions?"
    assert result.duration_seconds == 42.5
    assert [(segment.id, segment.timestamp_ms, segment.speaker) for segment in result.segments] == [
        ("seg-0-0", 0, "Speaker 1"),
        ("seg-0-1", 1250, "Speaker 1"),
        ("seg-1-0", 30500, "Speaker 2"),
    ]


def test_parse_falls_back_to_word_groups() -> None:
    words = [{"word": f"w{index}", "punctuated_word": f"W{index}", "start": index * 0.5} for index in range(12)]
    payload = {"results": {"channels": [{"alternatives": [{"transcript": "words", "words": words}]}]}}

    result = parse_deepgram_response(payload)

    assert [segment.id for segment in result.segments] == ["seg-0", "seg-10"]
    assert result.segments[0].text == " ".join(f"W{index}" for index in range(10))
    assert result.segments[1].timestamp_ms == 5000


def test_parse_empty_response() -> None:
    result = parse_deepgram_response({"results": {"channels": []}})

    assert result.text == ""
    assert result.segments == []


def test_missing_api_key_raises(monkeypatch) -> None:
    monkeypatch.setattr(settings, "deepgram_api_key", None)

    with pytest.raises(MissingDependencyError):
        DeepgramTranscriber()


def test_transcribe_url_posts_media_url_with_token() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.content
        return httpx.Response(200, json=PARAGRAPH_RESPONSE)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    transcriber = DeepgramTranscriber(api_key="dg-key", model="nova-2", client=client)

    result = transcriber.transcribe_url("https://cdn.example/video.mp4")

    assert result.text.startswith("Hello class.")
    assert str(seen["url"]).startswith(DEEPGRAM_LISTEN_URL)
    assert "model=nova-2" in str(seen["url"])
    assert seen["auth"] == "Token dg-key"
    assert b"https://cdn.example/video.mp4" in seen["body"]


def test_error_status_raises_external_service_error() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(402, text="out of credit")))
    transcriber = DeepgramTranscriber(api_key="dg-key", client=client)

    with pytest.raises(ExternalServiceError) as exc_info:
        transcriber.transcribe_url("https://cdn.example/video.mp4")

    assert exc_info.value.status_code == 402
    assert exc_info.value.body == "out of credit"


def test_transcriber_factory() -> None:
    assert isinstance(get_transcriber("stub"), StubTranscriber)
    with pytest.raises(MissingDependencyError):
        get_transcriber("whisper")
