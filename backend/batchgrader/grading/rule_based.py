"""Heuristic grading service for offline use and tests."""

from __future__ import annotations

import re

from batchgrader.grading.base import EvaluationRequest, GradingService
from batchgrader.grading.rubric import find_transcript_refs
from batchgrader.models import (
    Analysis,
    CriterionScore,
    GeneratedQuestion,
    KeyClaim,
    LogicalGap,
    MissingEvidence,
    RubricCriterion,
    RubricEvaluation,
    VerificationFinding,
    VerificationVerdict,
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_CLAIM_MARKERS = ("because", "therefore", "shows", "suggests", "demonstrates", "proves", "evidence", "results", "data")
_EVIDENCE_MARKERS = ("according to", "study", "source", "data", "percent", "%")
_DEFAULT_CRITERIA = [
    RubricCriterion(id="content", name="Content", description="accuracy depth evidence argument"),
    RubricCriterion(id="organization", name="Organization", description="introduction structure conclusion"),
    RubricCriterion(id="delivery", name="Delivery", description="clarity engagement explanation"),
]


def _sentences(transcript: str) -> list[str]:
    return [sentence.strip() for sentence in _SENTENCE_SPLIT_RE.split(transcript) if sentence.strip()]


def _tokens(text: str) -> list[str]:
    return [tok for tok in re.split(r"\W+", text.lower()) if len(tok) > 3]


def _has_evidence(sentence: str) -> bool:
    lowered = sentence.lower()
    return any(marker in lowered for marker in _EVIDENCE_MARKERS) or bool(re.search(r"\d", sentence))


class RuleBasedGradingService(GradingService):
    name = "rule_based"

    def analyze(self, transcript: str, context: str | None = None) -> Analysis:
        del context
        sentences = _sentences(transcript)
        claim_sentences = [s for s in sentences if any(marker in s.lower() for marker in _CLAIM_MARKERS)]
        if not claim_sentences:
            claim_sentences = sorted(sentences, key=len, reverse=True)[:3]

        claims = [
            KeyClaim(id=f"claim-{index}", claim=sentence, evidence=[sentence] if _has_evidence(sentence) else [])
            for index, sentence in enumerate(claim_sentences[:8], start=1)
        ]
        unsupported = [claim for claim in claims if not claim.evidence]
        gaps = [
            LogicalGap(id=f"gap-{index}", description=f"Claim is asserted without support: {claim.claim}")
            for index, claim in enumerate(unsupported[:3], start=1)
        ]
        missing = [
            MissingEvidence(id=f"missing-{index}", description=f"No source or data offered for: {claim.claim}")
            for index, claim in enumerate(unsupported[:3], start=1)
        ]
        strength = (len(claims) - len(unsupported)) / len(claims) if claims else 0.0
        return Analysis(key_claims=claims, logical_gaps=gaps, missing_evidence=missing, overall_strength=round(strength, 2))

    def evaluate(self, transcript: str, request: EvaluationRequest) -> RubricEvaluation:
        text = transcript.lower()
        criteria = request.criteria or _DEFAULT_CRITERIA
        scale_max = request.grading_scale.max_score if request.grading_scale else 100.0

        breakdown: list[CriterionScore] = []
        weighted_total = 0.0
        weight_sum = 0.0
        for criterion in criteria:
            tokens = sorted(set(_tokens(f"{criterion.name} {criterion.description}")))
            matched = [token for token in tokens if token in text]
            fraction = len(matched) / len(tokens) if tokens else 0.5
            max_score = criterion.max_score or 10.0
            weight = criterion.weight if criterion.weight > 0 else 1.0
            weighted_total += fraction * weight
            weight_sum += weight

            breakdown.append(
                CriterionScore(
                    criterion=criterion.name,
                    criterion_id=criterion.id,
                    score=round(fraction * max_score, 1),
                    max_score=max_score,
                    feedback=(
                        f"Addressed {len(matched)} of {len(tokens)} rubric terms."
                        if tokens
                        else "No rubric terms to match; neutral score applied."
                    ),
                    strengths=[f"Mentions {token}" for token in matched[:3]],
                    improvements=[f"Address {token}" for token in tokens if token not in matched][:3],
                    transcript_refs=find_transcript_refs(matched[:2], request.segments),
                )
            )

        overall = round(scale_max * weighted_total / weight_sum, 1) if weight_sum else 0.0
        strongest = max(breakdown, key=lambda item: item.score / (item.max_score or 1.0))
        weakest = min(breakdown, key=lambda item: item.score / (item.max_score or 1.0))
        return RubricEvaluation(
            overall_score=overall,
            grading_scale_used=request.grading_scale.kind if request.grading_scale else "points",
            max_possible_score=scale_max,
            criteria_breakdown=breakdown,
            strengths=[f"Strongest criterion: {strongest.criterion}"],
            improvements=[f"Focus on: {weakest.criterion}"],
            summary_feedback="Heuristic rule-based grading applied.",
        )

    def generate_questions(self, transcript: str, analysis: Analysis, max_questions: int) -> list[GeneratedQuestion]:
        del transcript
        prompts = [(f"What evidence supports the claim that {claim.claim.rstrip('.')}?", "evidence") for claim in analysis.key_claims]
        prompts += [(f"How would you address this gap: {gap.description}", "reasoning") for gap in analysis.logical_gaps]
        return [
            GeneratedQuestion(id=f"q-{index}", question=question, category=category)
            for index, (question, category) in enumerate(prompts[:max_questions], start=1)
        ]

    def verify_claims(self, transcript: str, claims: list[KeyClaim]) -> list[VerificationFinding]:
        del transcript
        findings: list[VerificationFinding] = []
        for index, claim in enumerate(claims, start=1):
            explanation = (
                "Contains a quantitative statement that should be checked against a source."
                if re.search(r"\d", claim.claim)
                else "No external verification performed by the heuristic grader."
            )
            findings.append(
                VerificationFinding(
                    id=f"verify-{index}",
                    statement=claim.claim,
                    verdict=VerificationVerdict.UNCERTAIN,
                    explanation=explanation,
                )
            )
        return findings
