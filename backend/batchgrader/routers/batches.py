"""Batch endpoints."""

from __future__ import annotations

import logging
from collections import Counter

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from batchgrader.deps import get_reconciler, get_repository
from batchgrader.export import export_filename, render_csv
from batchgrader.models import Batch, Submission
from batchgrader.reconciler import Reconciler, needs_orphan_recovery
from batchgrader.repository import BatchRepository, compute_grading_status
from batchgrader.schemas import (
    BatchCreate,
    BatchDeleteResponse,
    BatchExport,
    BatchRead,
    BatchStatusRead,
    ExpectedUploadsUpdate,
    GradingStatusRead,
    SubmissionSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])


def _average_score(submissions: list[Submission]) -> float | None:
    scores = [s.rubric_evaluation.overall_score for s in submissions if s.has_score]
    if not scores:
        return None
    return round(sum(scores) / len(scores))


def _summary(submission: Submission) -> SubmissionSummary:
    return SubmissionSummary(
        id=submission.id,
        student_name=submission.student_name,
        original_filename=submission.file.original_filename,
        status=submission.status,
        overall_score=submission.rubric_evaluation.overall_score if submission.rubric_evaluation else None,
        error_message=submission.error_message,
    )


def _visible_submissions(batch: Batch, repository: BatchRepository, reconciler: Reconciler) -> tuple[list[Submission], int]:
    submissions = repository.get_batch_submissions(batch.id)
    recovered: list[str] = []
    if needs_orphan_recovery(batch, len(submissions)):
        recovered = reconciler.recover_orphans(batch.id)
        if recovered:
            submissions = repository.get_batch_submissions(batch.id)
    return submissions, len(recovered)


@router.post("", response_model=Batch, status_code=status.HTTP_201_CREATED)
def create_batch(payload: BatchCreate, repository: BatchRepository = Depends(get_repository)) -> Batch:
    try:
        return repository.create_batch(**payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("", response_model=list[BatchRead])
def list_batches(
    repository: BatchRepository = Depends(get_repository),
    reconciler: Reconciler = Depends(get_reconciler),
) -> list[BatchRead]:
    results: list[BatchRead] = []
    for batch in repository.list_batches():
        submissions, _ = _visible_submissions(batch, repository, reconciler)
        refreshed = repository.update_batch_stats(batch.id) or batch
        results.append(BatchRead(**refreshed.model_dump(), average_score=_average_score(submissions)))
    return results


@router.get("/{batch_id}", response_model=BatchRead)
def get_batch(
    batch_id: str,
    repository: BatchRepository = Depends(get_repository),
    reconciler: Reconciler = Depends(get_reconciler),
) -> BatchRead:
    batch = repository.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    submissions, recovered = _visible_submissions(batch, repository, reconciler)
    if recovered:
        batch = repository.update_batch_stats(batch_id) or batch
    return BatchRead(**batch.model_dump(), average_score=_average_score(submissions))


@router.get("/{batch_id}/status", response_model=BatchStatusRead)
def get_batch_status(
    batch_id: str,
    repository: BatchRepository = Depends(get_repository),
    reconciler: Reconciler = Depends(get_reconciler),
) -> BatchStatusRead:
    batch = repository.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")

    submissions, recovered = _visible_submissions(batch, repository, reconciler)
    batch = repository.update_batch_stats(batch_id) or batch
    grading = compute_grading_status(submissions)
    return BatchStatusRead(
        batch=batch,
        grading_status=GradingStatusRead(
            state=grading.state,
            graded_count=grading.graded_count,
            total_count=grading.total_count,
            message=grading.message,
        ),
        status_counts=dict(Counter(submission.status.value for submission in submissions)),
        submissions=[_summary(submission) for submission in submissions],
        recovered_submissions=recovered,
    )


@router.get("/{batch_id}/submissions", response_model=list[Submission])
def list_batch_submissions(batch_id: str, repository: BatchRepository = Depends(get_repository)) -> list[Submission]:
    if repository.get_batch(batch_id) is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return repository.get_batch_submissions(batch_id)


@router.post("/{batch_id}/expected-uploads", response_model=Batch)
def update_expected_uploads(
    batch_id: str,
    payload: ExpectedUploadsUpdate,
    repository: BatchRepository = Depends(get_repository),
) -> Batch:
    batch = repository.set_expected_upload_count(batch_id, payload.count)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch


@router.delete("/{batch_id}", response_model=BatchDeleteResponse)
def delete_batch(batch_id: str, repository: BatchRepository = Depends(get_repository)) -> BatchDeleteResponse:
    deleted_files = repository.delete_batch(batch_id)
    if deleted_files is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return BatchDeleteResponse(deleted=True, deleted_files=deleted_files)


@router.get("/{batch_id}/export", response_model=None)
def export_batch(
    batch_id: str,
    format: str = Query(default="csv", pattern="^(csv|json)$"),
    repository: BatchRepository = Depends(get_repository),
) -> Response | BatchExport:
    batch = repository.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")

    submissions = repository.get_batch_submissions(batch_id)
    if format == "json":
        return BatchExport(batch=batch, submissions=submissions)
    return Response(
        content=render_csv(submissions),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(batch)}"'},
    )
