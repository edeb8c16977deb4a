from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from batchgrader.ai.openai_grading import (
    SCHEMA_BUILDERS,
    OpenAIGradingService,
    SchemaBuildError,
    build_grading_request,
    build_response_schema,
    validate_schema_strictness,
)
from batchgrader.errors import ExternalServiceError, MissingDependencyError
from batchgrader.grading.base import EvaluationRequest
from batchgrader.models import GradingScale, KeyClaim, RubricCriterion, TranscriptSegment, VerificationVerdict


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class FakeResponses:
    def __init__(self, outputs: list[object]) -> None:
        self.outputs = list(outputs)
        self.calls: list[dict] = []

    def create(self, **payload):
        self.calls.append(payload)
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return SimpleNamespace(output_text=json.dumps(output))


def make_service(outputs: list[object]) -> tuple[OpenAIGradingService, FakeResponses]:
    responses = FakeResponses(outputs)
    client = SimpleNamespace(responses=responses)
    return OpenAIGradingService(model="gpt-test", retry_backoffs_seconds=(0.0, 0.0), client=client), responses


@pytest.mark.parametrize("name", sorted(SCHEMA_BUILDERS))
def test_response_schemas_are_strict_for_all_object_nodes(name: str) -> None:
    schema = build_response_schema(name)

    def _assert_object_nodes(node: object) -> None:
        if isinstance(node, dict):
            if node.get("type") == "object":
                assert node.get("additionalProperties") is False
                assert set(node["required"]) == set(node["properties"])
            for value in node.values():
                _assert_object_nodes(value)
        elif isinstance(node, list):
            for item in node:
                _assert_object_nodes(item)

    _assert_object_nodes(schema)


def test_schema_validation_rejects_non_strict_shape() -> None:
    invalid_schema = {"type": "object", "properties": {"x": {"type": "object", "properties": {"a": {"type": "string"}}}}}
    with pytest.raises(SchemaBuildError):
        validate_schema_strictness(invalid_schema)


def test_build_grading_request_uses_strict_json_schema() -> None:
    payload = build_grading_request("gpt-test", "rubric_evaluation", "Grade it", "Transcript:\nhello")

    assert payload["model"] == "gpt-test"
    assert payload["input"][0] == {"role": "system", "content": "Grade it"}
    assert payload["input"][1]["role"] == "user"
    text_format = payload["text"]["format"]
    assert text_format["type"] == "json_schema"
    assert text_format["name"] == "rubric_evaluation"
    assert text_format["strict"] is True
    assert "criteria_breakdown" in text_format["schema"]["required"]


def test_missing_api_key_raises_missing_dependency(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(MissingDependencyError):
        OpenAIGradingService()


def test_evaluate_parses_breakdown_and_links_transcript_quotes() -> None:
    service, responses = make_service(
        [
            {
                "overall_score": 84,
                "letter_grade": "B+",
                "band_label": None,
                "criteria_breakdown": [
                    {
                        "criterion": "Evidence",
                        "score": 8,
                        "max_score": 10,
                        "feedback": "Cites trial data.",
                        "strengths": ["Uses data"],
                        "improvements": [],
                        "transcript_quotes": ["three trials"],
                    }
                ],
                "strengths": ["Clear"],
                "improvements": ["Pace"],
                "summary_feedback": "Solid work.",
            }
        ]
    )
    request = EvaluationRequest(
        criteria=[RubricCriterion(id="criterion-1", name="Evidence", description="Uses data")],
        grading_scale=GradingScale(kind="points", max_score=100),
        course_context="Lecture 4 covers experimental design.",
        segments=[TranscriptSegment(id="seg-0-1", text="We ran three trials.", timestamp_ms=4000)],
    )

    evaluation = service.evaluate("We ran three trials.", request)

    assert evaluation.overall_score == 84.0
    assert evaluation.letter_grade == "B+"
    assert evaluation.max_possible_score == 100
    criterion = evaluation.criteria_breakdown[0]
    assert criterion.criterion_id == "criterion-1"
    assert criterion.transcript_refs[0].segment_id == "seg-0-1"
    assert criterion.transcript_refs[0].timestamp_ms == 4000
    prompt = responses.calls[0]["input"][1]["content"]
    assert "Course material:\nLecture 4 covers experimental design." in prompt
    assert "Evidence (weight 1)" in prompt


def test_retries_transient_status_then_succeeds() -> None:
    service, responses = make_service(
        [_StatusError(429), _StatusError(503), {"questions": [{"question": "Why?", "category": "reasoning", "rationale": "r"}]}]
    )

    questions = service.generate_questions("transcript", analysis=_empty_analysis(), max_questions=5)

    assert [question.question for question in questions] == ["Why?"]
    assert len(responses.calls) == 3


def test_non_retryable_error_surfaces_immediately() -> None:
    service, responses = make_service([_StatusError(400)])

    with pytest.raises(ExternalServiceError) as exc_info:
        service.analyze("transcript")

    assert exc_info.value.status_code == 400
    assert len(responses.calls) == 1


def test_verify_claims_maps_verdicts_and_skips_empty_input() -> None:
    service, responses = make_service(
        [{"findings": [{"statement": "Water boils at 100C", "verdict": "likely-true", "explanation": "At sea level."}]}]
    )

    assert service.verify_claims("transcript", []) == []
    findings = service.verify_claims("transcript", [KeyClaim(id="claim-1", claim="Water boils at 100C")])

    assert findings[0].verdict == VerificationVerdict.LIKELY_TRUE
    assert len(responses.calls) == 1


def _empty_analysis():
    from batchgrader.models import Analysis

    return Analysis()
