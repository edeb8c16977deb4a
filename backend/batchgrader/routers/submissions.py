"""Submission upload, enqueue and regrade endpoints."""

from __future__ import annotations

from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status

from batchgrader.deps import get_repository
from batchgrader.models import FileRef, Submission
from batchgrader.repository import BatchNotFoundError, BatchRepository
from batchgrader.schemas import (
    EnqueueRequest,
    PresignRequest,
    PresignResponse,
    RegradeRequest,
    RegradeResponse,
)
from batchgrader.settings import settings
from batchgrader.storage import generate_file_key

router = APIRouter(prefix="/submissions", tags=["submissions"])


@router.post("/presign", response_model=PresignResponse)
def presign_upload(payload: PresignRequest, repository: BatchRepository = Depends(get_repository)) -> PresignResponse:
    if repository.get_batch(payload.batch_id) is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    if repository.storage is None:
        raise HTTPException(status_code=500, detail="Object storage is not configured")

    submission_id = uuid4().hex
    file_key = generate_file_key(payload.batch_id, submission_id, payload.filename)
    expires = settings.upload_url_expires_seconds
    upload_url = repository.storage.get_upload_url(file_key, payload.content_type, expires)
    return PresignResponse(submission_id=submission_id, file_key=file_key, upload_url=upload_url, expires_seconds=expires)


@router.post("", response_model=Submission, status_code=status.HTTP_201_CREATED)
def enqueue_submission(payload: EnqueueRequest, repository: BatchRepository = Depends(get_repository)) -> Submission:
    file = FileRef(
        key=payload.file_key,
        original_filename=payload.original_filename,
        size_bytes=payload.size_bytes,
        mime_type=payload.mime_type,
    )
    try:
        return repository.create_submission(
            payload.batch_id,
            file,
            student_name=payload.student_name,
            student_id=payload.student_id,
            submission_id=payload.submission_id,
        )
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/regrade", response_model=RegradeResponse)
def regrade_submissions(payload: RegradeRequest, repository: BatchRepository = Depends(get_repository)) -> RegradeResponse:
    requeued: list[str] = []
    missing: list[str] = []
    for submission_id in payload.submission_ids:
        if repository.reset_for_regrade(submission_id, payload.bundle_version_id) is None:
            missing.append(submission_id)
        else:
            requeued.append(submission_id)
    return RegradeResponse(requeued=requeued, missing=missing)


@router.get("/{submission_id}", response_model=Submission)
def get_submission(submission_id: str, repository: BatchRepository = Depends(get_repository)) -> Submission:
    submission = repository.get_submission(submission_id)
    if submission is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission


@router.delete("/{submission_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_submission(submission_id: str, repository: BatchRepository = Depends(get_repository)) -> None:
    if not repository.delete_submission(submission_id):
        raise HTTPException(status_code=404, detail="Submission not found")
