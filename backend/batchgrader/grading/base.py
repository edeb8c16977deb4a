"""Grading service interfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from batchgrader.models import (
    Analysis,
    GeneratedQuestion,
    GradingScale,
    KeyClaim,
    RubricCriterion,
    RubricEvaluation,
    TranscriptSegment,
    VerificationFinding,
)


@dataclass
class EvaluationRequest:
    """Everything a rubric evaluation may draw on besides the transcript."""

    rubric_text: str | None = None
    criteria: list[RubricCriterion] = field(default_factory=list)
    grading_scale: GradingScale | None = None
    assignment_context: str | None = None
    course_context: str | None = None
    criterion_context: dict[str, str] = field(default_factory=dict)
    evaluation_guidance: str | None = None
    segments: list[TranscriptSegment] = field(default_factory=list)


class GradingService(Protocol):
    """Analysis, rubric evaluation, question generation and claim verification."""

    name: str

    def analyze(self, transcript: str, context: str | None = None) -> Analysis:
        """Extract key claims, logical gaps and missing evidence."""

    def evaluate(self, transcript: str, request: EvaluationRequest) -> RubricEvaluation:
        """Score the transcript against a rubric."""

    def generate_questions(self, transcript: str, analysis: Analysis, max_questions: int) -> list[GeneratedQuestion]:
        """Produce follow-up questions for the presenter."""

    def verify_claims(self, transcript: str, claims: list[KeyClaim]) -> list[VerificationFinding]:
        """Assess whether each claim is likely true."""
