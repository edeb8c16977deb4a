"""Persisted models: record-store tables and the JSON records stored in them."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return timezone-aware UTC now timestamp."""
    return datetime.now(timezone.utc)


# Record store tables (SqlRecordStore)


class RecordEntry(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=utcnow)


class SetMember(SQLModel, table=True):
    set_key: str = Field(primary_key=True)
    member: str = Field(primary_key=True)


class ListItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    list_key: str = Field(index=True)
    value: str


# Batch and submission records


class SubmissionStatus(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    READY = "ready"
    FAILED = "failed"


IN_PROGRESS_STATUSES = {SubmissionStatus.TRANSCRIBING, SubmissionStatus.ANALYZING}
FINISHED_STATUSES = {SubmissionStatus.READY, SubmissionStatus.FAILED}


class BatchStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class FileRef(BaseModel):
    key: str
    original_filename: str
    size_bytes: int = 0
    mime_type: str = "video/mp4"


class TranscriptSegment(BaseModel):
    id: str
    text: str
    timestamp_ms: int = 0
    speaker: str | None = None


class KeyClaim(BaseModel):
    id: str
    claim: str
    evidence: list[str] = PydanticField(default_factory=list)


class LogicalGap(BaseModel):
    id: str
    description: str
    severity: str = "minor"


class MissingEvidence(BaseModel):
    id: str
    description: str


class Analysis(BaseModel):
    key_claims: list[KeyClaim] = PydanticField(default_factory=list)
    logical_gaps: list[LogicalGap] = PydanticField(default_factory=list)
    missing_evidence: list[MissingEvidence] = PydanticField(default_factory=list)
    overall_strength: float = 0.0


class Citation(BaseModel):
    chunk_id: str
    document_name: str
    snippet: str
    relevance_score: float | None = None


class TranscriptRef(BaseModel):
    segment_id: str | None = None
    timestamp_ms: int | None = None
    snippet: str


class CriterionScore(BaseModel):
    criterion: str
    score: float
    criterion_id: str | None = None
    max_score: float | None = None
    feedback: str = ""
    strengths: list[str] = PydanticField(default_factory=list)
    improvements: list[str] = PydanticField(default_factory=list)
    transcript_refs: list[TranscriptRef] = PydanticField(default_factory=list)
    citations: list[Citation] = PydanticField(default_factory=list)


class RubricEvaluation(BaseModel):
    overall_score: float | None = None
    grading_scale_used: str | None = None
    max_possible_score: float | None = None
    letter_grade: str | None = None
    band_label: str | None = None
    criteria_breakdown: list[CriterionScore] = PydanticField(default_factory=list)
    strengths: list[str] = PydanticField(default_factory=list)
    improvements: list[str] = PydanticField(default_factory=list)
    summary_feedback: str | None = None
    is_placeholder: bool = False


class GeneratedQuestion(BaseModel):
    id: str
    question: str
    category: str = "clarification"
    rationale: str | None = None


class VerificationVerdict(str, Enum):
    LIKELY_TRUE = "likely-true"
    UNCERTAIN = "uncertain"
    LIKELY_FALSE = "likely-false"


class VerificationFinding(BaseModel):
    id: str
    statement: str
    verdict: VerificationVerdict = VerificationVerdict.UNCERTAIN
    explanation: str = ""


class RetrievalMetrics(BaseModel):
    chunks_retrieved: int = 0
    average_relevance: float = 0.0
    high_confidence_count: int = 0
    used_fallback: bool = False
    context_chars_used: int = 0


class Batch(BaseModel):
    id: str
    name: str
    course_name: str | None = None
    assignment_name: str | None = None
    course_id: str | None = None
    assignment_id: str | None = None
    bundle_version_id: str | None = None
    rubric_criteria: str | None = None
    rubric_template_id: str | None = None
    submission_ids: list[str] = PydanticField(default_factory=list)
    expected_upload_count: int | None = None
    total_submissions: int = 0
    processed_count: int = 0
    failed_count: int = 0
    status: BatchStatus = BatchStatus.ACTIVE
    created_at: datetime = PydanticField(default_factory=utcnow)
    updated_at: datetime = PydanticField(default_factory=utcnow)


class Submission(BaseModel):
    id: str
    batch_id: str
    file: FileRef
    student_name: str
    student_id: str | None = None
    status: SubmissionStatus = SubmissionStatus.QUEUED
    error_message: str | None = None
    transcript: str | None = None
    transcript_segments: list[TranscriptSegment] = PydanticField(default_factory=list)
    duration_seconds: float | None = None
    analysis: Analysis | None = None
    rubric_evaluation: RubricEvaluation | None = None
    questions: list[GeneratedQuestion] = PydanticField(default_factory=list)
    verification_findings: list[VerificationFinding] = PydanticField(default_factory=list)
    bundle_version_id: str | None = None
    context_citations: list[Citation] = PydanticField(default_factory=list)
    retrieval_metrics: RetrievalMetrics | None = None
    created_at: datetime = PydanticField(default_factory=utcnow)
    updated_at: datetime = PydanticField(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    lease_expires_at: datetime | None = None

    @property
    def has_score(self) -> bool:
        return self.rubric_evaluation is not None and self.rubric_evaluation.overall_score is not None

    @property
    def is_graded(self) -> bool:
        return self.status == SubmissionStatus.READY and self.has_score


# Course context records


class DocumentType(str, Enum):
    LECTURE_NOTES = "lecture_notes"
    READING = "reading"
    SLIDES = "slides"
    POLICY = "policy"
    EXAMPLE = "example"
    OTHER = "other"


class Course(BaseModel):
    id: str
    name: str
    code: str | None = None
    term: str | None = None
    description: str | None = None
    summary: str | None = None
    key_themes: list[str] = PydanticField(default_factory=list)
    created_at: datetime = PydanticField(default_factory=utcnow)


class RubricLevel(BaseModel):
    label: str
    score: float
    description: str = ""


class RubricCriterion(BaseModel):
    id: str
    name: str
    description: str = ""
    weight: float = 1.0
    max_score: float | None = None
    levels: list[RubricLevel] = PydanticField(default_factory=list)


class GradingScale(BaseModel):
    kind: str = "points"
    max_score: float = 100.0
    bands: dict[str, float] = PydanticField(default_factory=dict)


class Rubric(BaseModel):
    id: str
    name: str
    criteria: list[RubricCriterion] = PydanticField(default_factory=list)
    grading_scale: GradingScale = PydanticField(default_factory=GradingScale)
    created_at: datetime = PydanticField(default_factory=utcnow)


class Assignment(BaseModel):
    id: str
    course_id: str
    name: str
    instructions: str = ""
    rubric_id: str | None = None
    created_at: datetime = PydanticField(default_factory=utcnow)


class CourseDocument(BaseModel):
    id: str
    course_id: str
    name: str
    content: str
    document_type: DocumentType = DocumentType.OTHER
    assignment_id: str | None = None
    chunk_count: int = 0
    created_at: datetime = PydanticField(default_factory=utcnow)


class Bundle(BaseModel):
    id: str
    course_id: str
    assignment_id: str
    name: str
    latest_version_id: str | None = None
    created_at: datetime = PydanticField(default_factory=utcnow)


class BundleVersion(BaseModel):
    """Immutable snapshot of everything a grading run needs."""

    id: str
    bundle_id: str
    version: int
    course_id: str
    assignment: Assignment
    rubric: Rubric | None = None
    document_ids: list[str] = PydanticField(default_factory=list)
    evaluation_guidance: str | None = None
    created_at: datetime = PydanticField(default_factory=utcnow)


# Retrieval index records


class DocumentChunk(BaseModel):
    id: str
    document_id: str
    course_id: str
    assignment_id: str | None = None
    content: str
    start_index: int
    end_index: int
    chunk_index: int
    document_name: str
    document_type: DocumentType = DocumentType.OTHER
    embedding_id: str
    created_at: datetime = PydanticField(default_factory=utcnow)


class ChunkEmbedding(BaseModel):
    id: str
    chunk_id: str
    vector: list[float]
