"""Request and response schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from batchgrader.models import (
    Batch,
    DocumentType,
    GradingScale,
    RubricCriterion,
    Submission,
    SubmissionStatus,
)


class BatchCreate(BaseModel):
    name: str
    course_name: str | None = None
    assignment_name: str | None = None
    course_id: str | None = None
    assignment_id: str | None = None
    bundle_version_id: str | None = None
    rubric_criteria: str | None = None
    rubric_template_id: str | None = None
    expected_upload_count: int | None = Field(default=None, ge=0)


class BatchRead(Batch):
    average_score: float | None = None


class GradingStatusRead(BaseModel):
    state: str
    graded_count: int
    total_count: int
    message: str


class SubmissionSummary(BaseModel):
    id: str
    student_name: str
    original_filename: str
    status: SubmissionStatus
    overall_score: float | None = None
    error_message: str | None = None


class BatchStatusRead(BaseModel):
    batch: Batch
    grading_status: GradingStatusRead
    status_counts: dict[str, int]
    submissions: list[SubmissionSummary]
    recovered_submissions: int = 0


class ExpectedUploadsUpdate(BaseModel):
    count: int = Field(ge=0)


class BatchDeleteResponse(BaseModel):
    deleted: bool
    deleted_files: int


class BatchExport(BaseModel):
    batch: Batch
    submissions: list[Submission]


class PresignRequest(BaseModel):
    batch_id: str
    filename: str
    content_type: str = "video/mp4"


class PresignResponse(BaseModel):
    submission_id: str
    file_key: str
    upload_url: str
    expires_seconds: int


class EnqueueRequest(BaseModel):
    batch_id: str
    file_key: str
    original_filename: str
    size_bytes: int = 0
    mime_type: str = "video/mp4"
    student_name: str | None = None
    student_id: str | None = None
    submission_id: str | None = None


class RegradeRequest(BaseModel):
    submission_ids: list[str] = Field(min_length=1)
    bundle_version_id: str | None = None


class RegradeResponse(BaseModel):
    requeued: list[str]
    missing: list[str]


class ProcessOutcomeRead(BaseModel):
    submission_id: str
    batch_id: str
    status: SubmissionStatus
    error: str | None = None
    duration_ms: int = 0


class ProcessResponse(BaseModel):
    processed: bool
    outcome: ProcessOutcomeRead | None = None
    queue_length: int
    message: str


class WorkerResponse(BaseModel):
    processed: int
    outcomes: list[ProcessOutcomeRead]
    remaining: int


class WorkerStatusResponse(BaseModel):
    queue_length: int
    transcriber: str
    grader: str
    embedder: str
    worker_max_per_run: int
    worker_secret_configured: bool


class CourseCreate(BaseModel):
    name: str
    code: str | None = None
    term: str | None = None
    description: str | None = None
    summary: str | None = None
    key_themes: list[str] = Field(default_factory=list)


class RubricCreate(BaseModel):
    name: str
    criteria: list[RubricCriterion]
    grading_scale: GradingScale | None = None


class AssignmentCreate(BaseModel):
    course_id: str
    name: str
    instructions: str = ""
    rubric_id: str | None = None


class DocumentCreate(BaseModel):
    course_id: str
    name: str
    content: str
    document_type: DocumentType = DocumentType.OTHER
    assignment_id: str | None = None


class BundleCreate(BaseModel):
    course_id: str
    assignment_id: str
    name: str


class BundleVersionCreate(BaseModel):
    document_ids: list[str] | None = None
    evaluation_guidance: str | None = None
