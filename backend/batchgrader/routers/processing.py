"""Queue processing endpoints: on-demand processing, the scheduled worker and its status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from batchgrader.auth import require_worker_secret
from batchgrader.deps import get_processor, get_repository
from batchgrader.pipeline.orchestrator import ProcessOutcome, SubmissionProcessor
from batchgrader.repository import BatchRepository
from batchgrader.schemas import ProcessOutcomeRead, ProcessResponse, WorkerResponse, WorkerStatusResponse
from batchgrader.settings import settings

router = APIRouter(prefix="/processing", tags=["processing"])


def _outcome_read(outcome: ProcessOutcome) -> ProcessOutcomeRead:
    return ProcessOutcomeRead(
        submission_id=outcome.submission_id,
        batch_id=outcome.batch_id,
        status=outcome.status,
        error=outcome.error,
        duration_ms=outcome.duration_ms,
    )


@router.post("/process-now", response_model=ProcessResponse)
def process_now(
    batch_id: str | None = Query(default=None),
    processor: SubmissionProcessor = Depends(get_processor),
) -> ProcessResponse:
    outcome = processor.process_next(batch_id)
    queue_length = processor.repository.queue_length()
    if outcome is None:
        return ProcessResponse(processed=False, queue_length=queue_length, message="No queued submissions")
    return ProcessResponse(
        processed=True,
        outcome=_outcome_read(outcome),
        queue_length=queue_length,
        message=f"Submission {outcome.submission_id} {outcome.status.value}",
    )


@router.api_route("/worker", methods=["GET", "POST"], response_model=WorkerResponse, dependencies=[Depends(require_worker_secret)])
def run_worker(processor: SubmissionProcessor = Depends(get_processor)) -> WorkerResponse:
    report = processor.run_worker()
    return WorkerResponse(
        processed=report.processed,
        outcomes=[_outcome_read(outcome) for outcome in report.outcomes],
        remaining=report.remaining,
    )


@router.get("/status", response_model=WorkerStatusResponse)
def worker_status(repository: BatchRepository = Depends(get_repository)) -> WorkerStatusResponse:
    return WorkerStatusResponse(
        queue_length=repository.queue_length(),
        transcriber=settings.transcriber,
        grader=settings.grader,
        embedder=settings.embedder,
        worker_max_per_run=settings.worker_max_per_run,
        worker_secret_configured=bool((settings.worker_secret or "").strip()),
    )
