"""OpenAI Responses API client for presentation grading.

Every call requests strict JSON-schema output so responses can be parsed without
free-text scraping. Transient failures (429/503/504, timeouts) are retried with a
fixed backoff schedule before surfacing as ExternalServiceError.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any

import httpx

from batchgrader.errors import ExternalServiceError, MissingDependencyError
from batchgrader.grading.base import EvaluationRequest
from batchgrader.grading.rubric import find_transcript_refs
from batchgrader.models import (
    Analysis,
    CriterionScore,
    GeneratedQuestion,
    KeyClaim,
    LogicalGap,
    MissingEvidence,
    RubricEvaluation,
    VerificationFinding,
    VerificationVerdict,
)
from batchgrader.settings import settings

logger = logging.getLogger(__name__)

_STRING_LIST = {"type": "array", "items": {"type": "string"}}


@dataclass
class SchemaBuildError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


def _analysis_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "key_claims": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"claim": {"type": "string"}, "evidence": _STRING_LIST},
                },
            },
            "logical_gaps": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "description": {"type": "string"},
                        "severity": {"type": "string", "enum": ["minor", "moderate", "major"]},
                    },
                },
            },
            "missing_evidence": {
                "type": "array",
                "items": {"type": "object", "properties": {"description": {"type": "string"}}},
            },
            "overall_strength": {"type": "number"},
        },
    }


def _evaluation_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "overall_score": {"type": "number"},
            "letter_grade": {"type": ["string", "null"]},
            "band_label": {"type": ["string", "null"]},
            "criteria_breakdown": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "criterion": {"type": "string"},
                        "score": {"type": "number"},
                        "max_score": {"type": ["number", "null"]},
                        "feedback": {"type": "string"},
                        "strengths": _STRING_LIST,
                        "improvements": _STRING_LIST,
                        "transcript_quotes": _STRING_LIST,
                    },
                },
            },
            "strengths": _STRING_LIST,
            "improvements": _STRING_LIST,
            "summary_feedback": {"type": "string"},
        },
    }


def _questions_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "questions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "question": {"type": "string"},
                        "category": {"type": "string", "enum": ["clarification", "evidence", "reasoning", "extension"]},
                        "rationale": {"type": "string"},
                    },
                },
            }
        },
    }


def _verification_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "findings": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "statement": {"type": "string"},
                        "verdict": {"type": "string", "enum": [verdict.value for verdict in VerificationVerdict]},
                        "explanation": {"type": "string"},
                    },
                },
            }
        },
    }


def _ensure_strict_schema_node(node: object) -> None:
    if isinstance(node, list):
        for item in node:
            _ensure_strict_schema_node(item)
        return

    if not isinstance(node, dict):
        return

    if node.get("type") == "object":
        properties = node.get("properties")
        if not isinstance(properties, dict):
            properties = {}
            node["properties"] = properties
        node["additionalProperties"] = False
        node["required"] = list(properties.keys())

    properties = node.get("properties")
    if isinstance(properties, dict):
        for value in properties.values():
            _ensure_strict_schema_node(value)

    items = node.get("items")
    if items is not None:
        _ensure_strict_schema_node(items)


def validate_schema_strictness(schema: dict[str, Any]) -> None:
    def _walk(node: object, path: str) -> None:
        if isinstance(node, list):
            for idx, item in enumerate(node):
                _walk(item, f"{path}[{idx}]")
            return

        if not isinstance(node, dict):
            return

        if node.get("type") == "object":
            if node.get("additionalProperties") is not False:
                raise SchemaBuildError(f"Object at {path} missing additionalProperties=false")
            required = node.get("required")
            if not isinstance(required, list) or set(required) != set(node.get("properties", {})):
                raise SchemaBuildError(f"Object at {path} must require every property")

        for key, value in node.items():
            _walk(value, f"{path}.{key}")

    _walk(schema, "schema")


SCHEMA_BUILDERS = {
    "presentation_analysis": _analysis_schema,
    "rubric_evaluation": _evaluation_schema,
    "follow_up_questions": _questions_schema,
    "claim_verification": _verification_schema,
}


def build_response_schema(name: str) -> dict[str, Any]:
    schema = copy.deepcopy(SCHEMA_BUILDERS[name]())
    _ensure_strict_schema_node(schema)
    validate_schema_strictness(schema)
    return schema


def build_grading_request(model: str, name: str, instructions: str, content: str) -> dict[str, object]:
    return {
        "model": model,
        "input": [
            {"role": "system", "content": instructions},
            {"role": "user", "content": content},
        ],
        "text": {
            "format": {
                "type": "json_schema",
                "name": name,
                "strict": True,
                "schema": build_response_schema(name),
            }
        },
    }


def _evaluation_prompt(transcript: str, request: EvaluationRequest) -> str:
    parts: list[str] = []
    if request.criteria:
        lines = [f"- {c.name} (weight {c.weight:g}): {c.description}" for c in request.criteria]
        parts.append("Rubric criteria:\n" + "\n".join(lines))
    elif request.rubric_text:
        parts.append(f"Rubric:\n{request.rubric_text}")
    else:
        parts.append("Rubric: judge content, organization, evidence and delivery.")
    if request.grading_scale:
        parts.append(f"Grading scale: {request.grading_scale.kind}, maximum {request.grading_scale.max_score:g}.")
    if request.assignment_context:
        parts.append(f"Assignment:\n{request.assignment_context}")
    if request.evaluation_guidance:
        parts.append(f"Instructor guidance:\n{request.evaluation_guidance}")
    if request.course_context:
        parts.append(f"Course material:\n{request.course_context}")
    for criterion_name, context in request.criterion_context.items():
        if context:
            parts.append(f"Course material for {criterion_name}:\n{context}")
    parts.append(f"Transcript:\n{transcript}")
    return "\n\n".join(parts)


class OpenAIGradingService:
    name = "openai"

    def __init__(
        self,
        model: str | None = None,
        timeout_seconds: float = 120.0,
        retry_backoffs_seconds: tuple[float, ...] = (1.0, 2.0),
        client: Any = None,
    ) -> None:
        if client is None:
            api_key = os.getenv("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise MissingDependencyError("OPENAI_API_KEY is not set")

            from openai import OpenAI

            client = OpenAI(api_key=api_key, timeout=timeout_seconds)
        self._client = client
        self._model = model or settings.grading_model
        self._retry_backoffs_seconds = retry_backoffs_seconds

    def _call_openai_with_retry(self, request_payload: dict[str, object], stage: str) -> dict[str, Any]:
        backoffs = self._retry_backoffs_seconds
        attempts = len(backoffs) + 1
        for attempt in range(attempts):
            try:
                response = self._client.responses.create(**request_payload)
                return json.loads(response.output_text)
            except Exception as exc:
                status_code = getattr(exc, "status_code", None)
                if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
                    status_code = 504
                response_obj = getattr(exc, "response", None)
                body_text = ""
                if response_obj is not None:
                    body_text = getattr(response_obj, "text", "") or ""
                retryable = status_code in {429, 503, 504}
                error = ExternalServiceError(
                    service="openai",
                    status_code=status_code,
                    body=body_text or str(exc),
                    message=f"OpenAI request failed: {exc}",
                )
                if retryable and attempt < attempts - 1:
                    logger.warning(
                        "grading openai retry",
                        extra={"stage": stage, "model": self._model, "attempt": attempt + 1, "status_code": status_code},
                    )
                    time.sleep(backoffs[attempt])
                    continue
                raise error from exc
        raise ExternalServiceError(service="openai", status_code=None, body="", message="OpenAI request failed")

    def analyze(self, transcript: str, context: str | None = None) -> Analysis:
        content = f"Course context:\n{context}\n\nTranscript:\n{transcript}" if context else f"Transcript:\n{transcript}"
        payload = self._call_openai_with_retry(
            build_grading_request(
                self._model,
                "presentation_analysis",
                "You analyze student presentation transcripts. Identify the key claims with the evidence offered, "
                "logical gaps, and missing evidence. Rate overall argument strength from 0 to 1.",
                content,
            ),
            stage="analyze",
        )
        return Analysis(
            key_claims=[
                KeyClaim(id=f"claim-{i}", claim=item["claim"], evidence=item.get("evidence", []))
                for i, item in enumerate(payload.get("key_claims", []), start=1)
            ],
            logical_gaps=[
                LogicalGap(id=f"gap-{i}", description=item["description"], severity=item.get("severity", "minor"))
                for i, item in enumerate(payload.get("logical_gaps", []), start=1)
            ],
            missing_evidence=[
                MissingEvidence(id=f"missing-{i}", description=item["description"])
                for i, item in enumerate(payload.get("missing_evidence", []), start=1)
            ],
            overall_strength=float(payload.get("overall_strength", 0.0)),
        )

    def evaluate(self, transcript: str, request: EvaluationRequest) -> RubricEvaluation:
        payload = self._call_openai_with_retry(
            build_grading_request(
                self._model,
                "rubric_evaluation",
                "You grade student presentations against a rubric. Score every criterion, quote the transcript "
                "where it supports your judgement, and ground feedback in the course material when provided.",
                _evaluation_prompt(transcript, request),
            ),
            stage="evaluate",
        )
        criteria_ids = {criterion.name: criterion.id for criterion in request.criteria}
        breakdown = [
            CriterionScore(
                criterion=item["criterion"],
                criterion_id=criteria_ids.get(item["criterion"]),
                score=float(item["score"]),
                max_score=item.get("max_score"),
                feedback=item.get("feedback", ""),
                strengths=item.get("strengths", []),
                improvements=item.get("improvements", []),
                transcript_refs=find_transcript_refs(item.get("transcript_quotes", []), request.segments),
            )
            for item in payload.get("criteria_breakdown", [])
        ]
        return RubricEvaluation(
            overall_score=float(payload["overall_score"]),
            grading_scale_used=request.grading_scale.kind if request.grading_scale else None,
            max_possible_score=request.grading_scale.max_score if request.grading_scale else None,
            letter_grade=payload.get("letter_grade"),
            band_label=payload.get("band_label"),
            criteria_breakdown=breakdown,
            strengths=payload.get("strengths", []),
            improvements=payload.get("improvements", []),
            summary_feedback=payload.get("summary_feedback"),
        )

    def generate_questions(self, transcript: str, analysis: Analysis, max_questions: int) -> list[GeneratedQuestion]:
        claims = "\n".join(f"- {claim.claim}" for claim in analysis.key_claims) or "- (none identified)"
        gaps = "\n".join(f"- {gap.description}" for gap in analysis.logical_gaps) or "- (none identified)"
        payload = self._call_openai_with_retry(
            build_grading_request(
                self._model,
                "follow_up_questions",
                f"You write at most {max_questions} probing follow-up questions an instructor could ask the presenter.",
                f"Key claims:\n{claims}\n\nLogical gaps:\n{gaps}\n\nTranscript:\n{transcript}",
            ),
            stage="questions",
        )
        return [
            GeneratedQuestion(
                id=f"q-{i}",
                question=item["question"],
                category=item.get("category", "clarification"),
                rationale=item.get("rationale"),
            )
            for i, item in enumerate(payload.get("questions", [])[:max_questions], start=1)
        ]

    def verify_claims(self, transcript: str, claims: list[KeyClaim]) -> list[VerificationFinding]:
        if not claims:
            return []
        listed = "\n".join(f"- {claim.claim}" for claim in claims)
        payload = self._call_openai_with_retry(
            build_grading_request(
                self._model,
                "claim_verification",
                "You fact-check claims made in a student presentation. For each claim give a verdict of "
                "likely-true, uncertain or likely-false with a short explanation.",
                f"Claims:\n{listed}\n\nTranscript excerpt:\n{transcript[:4000]}",
            ),
            stage="verify",
        )
        return [
            VerificationFinding(
                id=f"verify-{i}",
                statement=item["statement"],
                verdict=VerificationVerdict(item["verdict"]),
                explanation=item.get("explanation", ""),
            )
            for i, item in enumerate(payload.get("findings", []), start=1)
        ]
