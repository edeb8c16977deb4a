"""Helpers for free-text rubrics and transcript references."""

from __future__ import annotations

import re

from batchgrader.models import RubricCriterion, TranscriptRef, TranscriptSegment

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")
_WEIGHT_RE = re.compile(r"\((\d+(?:\.\d+)?)\s*(?:%|pts?|points?|marks?)?\)\s*$", re.IGNORECASE)


def parse_rubric_text(text: str | None) -> list[RubricCriterion]:
    """Turn ``Name: description`` lines into criteria.

    Bullets and numbering are ignored; a trailing ``(20%)`` or ``(5 pts)`` becomes the weight.
    """
    criteria: list[RubricCriterion] = []
    for line in (text or "").splitlines():
        cleaned = _BULLET_RE.sub("", line).strip()
        if not cleaned:
            continue
        weight = 1.0
        weight_match = _WEIGHT_RE.search(cleaned)
        if weight_match:
            weight = float(weight_match.group(1))
            cleaned = cleaned[: weight_match.start()].strip()
        name, _, description = cleaned.partition(":")
        name = name.strip()
        if not name:
            continue
        criteria.append(
            RubricCriterion(
                id=f"criterion-{len(criteria) + 1}",
                name=name,
                description=description.strip(),
                weight=weight,
            )
        )
    return criteria


def find_transcript_refs(snippets: list[str], segments: list[TranscriptSegment], limit: int = 3) -> list[TranscriptRef]:
    """Locate quoted snippets in the transcript segments."""
    refs: list[TranscriptRef] = []
    for snippet in snippets:
        needle = snippet.strip().lower()
        if not needle:
            continue
        match = next((segment for segment in segments if needle in segment.text.lower()), None)
        refs.append(
            TranscriptRef(
                segment_id=match.id if match else None,
                timestamp_ms=match.timestamp_ms if match else None,
                snippet=snippet.strip(),
            )
        )
        if len(refs) >= limit:
            break
    return refs
