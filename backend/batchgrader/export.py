"""Batch result exports."""

from __future__ import annotations

import csv
import io
import re

from batchgrader.models import Batch, Submission

CSV_HEADERS = [
    "Student Name",
    "File Name",
    "Status",
    "Overall Score",
    "Strengths",
    "Improvements",
    "Key Claims",
    "Logical Gaps",
    "Missing Evidence",
    "Questions",
    "Completed At",
]


def _joined(values: list[str]) -> str:
    return "; ".join(value for value in values if value)


def submission_row(submission: Submission) -> list[str]:
    evaluation = submission.rubric_evaluation
    analysis = submission.analysis
    score = ""
    if evaluation is not None and evaluation.overall_score is not None:
        score = f"{evaluation.overall_score:.1f}"
    return [
        submission.student_name,
        submission.file.original_filename,
        submission.status.value,
        score,
        _joined(evaluation.strengths) if evaluation else "",
        _joined(evaluation.improvements) if evaluation else "",
        _joined([claim.claim for claim in analysis.key_claims]) if analysis else "",
        _joined([gap.description for gap in analysis.logical_gaps]) if analysis else "",
        _joined([item.description for item in analysis.missing_evidence]) if analysis else "",
        _joined([question.question for question in submission.questions]),
        submission.completed_at.isoformat() if submission.completed_at else "",
    ]


def render_csv(submissions: list[Submission]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    writer.writerows(submission_row(submission) for submission in submissions)
    return buffer.getvalue()


def export_filename(batch: Batch) -> str:
    return f"{re.sub(r'[^a-zA-Z0-9]', '_', batch.name)}_results.csv"
