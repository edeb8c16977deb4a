"""Claim submissions from the work queue and drive them through the pipeline.

queued -> transcribing -> analyzing -> ready, with any unhandled error landing in
failed. Each status write renews the submission's lease so stuck recovery can tell
live work from work abandoned by a crashed worker.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta

from batchgrader.context_store import ContextStore, GradingContext
from batchgrader.errors import MissingDependencyError
from batchgrader.grading.base import EvaluationRequest, GradingService
from batchgrader.grading.rubric import parse_rubric_text
from batchgrader.models import (
    Batch,
    Citation,
    RetrievalMetrics,
    RubricEvaluation,
    Submission,
    SubmissionStatus,
    utcnow,
)
from batchgrader.pipeline.grade import get_grading_service
from batchgrader.pipeline.transcribe import get_transcriber
from batchgrader.reconciler import Reconciler
from batchgrader.record_store import get_record_store
from batchgrader.repository import BatchRepository
from batchgrader.retrieval.embeddings import Embedder, get_embedder
from batchgrader.retrieval.index import ChunkIndex
from batchgrader.retrieval.search import ContextRetriever, RetrievalConfig
from batchgrader.settings import settings
from batchgrader.storage_provider import StorageProvider, get_storage_provider
from batchgrader.transcription.base import Transcriber

logger = logging.getLogger(__name__)

TRANSCRIPT_TOO_SHORT = "Transcription returned empty or too short"


class TranscriptTooShortError(ValueError):
    pass


@dataclass(frozen=True)
class ProcessorConfig:
    min_transcript_chars: int = 10
    rubric_retry_delay_seconds: float = 2.0
    max_claim_attempts: int = 5
    lease_seconds: int = 900
    max_claims_for_verification: int = 8
    max_questions: int = 10
    worker_max_per_run: int = 3
    download_url_expires_seconds: int = 3600

    @classmethod
    def from_settings(cls) -> "ProcessorConfig":
        return cls(
            min_transcript_chars=settings.min_transcript_chars,
            rubric_retry_delay_seconds=settings.rubric_retry_delay_seconds,
            max_claim_attempts=settings.max_claim_attempts,
            lease_seconds=settings.lease_seconds,
            max_claims_for_verification=settings.max_claims_for_verification,
            max_questions=settings.max_questions,
            worker_max_per_run=settings.worker_max_per_run,
            download_url_expires_seconds=settings.download_url_expires_seconds,
        )


@dataclass
class ProcessOutcome:
    submission_id: str
    batch_id: str
    status: SubmissionStatus
    error: str | None = None
    duration_ms: int = 0


@dataclass
class WorkerReport:
    outcomes: list[ProcessOutcome] = field(default_factory=list)
    remaining: int = 0

    @property
    def processed(self) -> int:
        return len(self.outcomes)


@dataclass
class _GradingInputs:
    request: EvaluationRequest
    analysis_context: str | None = None
    citations_by_criterion: dict[str, list[Citation]] = field(default_factory=dict)
    context_citations: list[Citation] = field(default_factory=list)
    metrics: RetrievalMetrics | None = None


def placeholder_evaluation(error: Exception, request: EvaluationRequest) -> RubricEvaluation:
    """Zero-score evaluation recorded when rubric grading keeps failing."""
    return RubricEvaluation(
        overall_score=0.0,
        grading_scale_used=request.grading_scale.kind if request.grading_scale else None,
        max_possible_score=request.grading_scale.max_score if request.grading_scale else None,
        summary_feedback=f"Automated rubric evaluation was unavailable ({error}). This score needs instructor review.",
        is_placeholder=True,
    )


class SubmissionProcessor:
    def __init__(
        self,
        repository: BatchRepository,
        *,
        storage: StorageProvider | None = None,
        transcriber: Transcriber | None = None,
        grader: GradingService | None = None,
        embedder: Embedder | None = None,
        context_store: ContextStore | None = None,
        reconciler: Reconciler | None = None,
        config: ProcessorConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
    ) -> None:
        self.repository = repository
        self.storage = storage or repository.storage
        self.embedder = embedder
        self.index = ChunkIndex(repository.store, embedder)
        self.context_store = context_store or ContextStore(repository.store, self.index)
        self.reconciler = reconciler or Reconciler(repository)
        self.config = config or ProcessorConfig.from_settings()
        self.retrieval_config = retrieval_config or RetrievalConfig.from_settings()
        self._transcriber = transcriber
        self._grader = grader

    def _resolve_services(self) -> tuple[Transcriber, GradingService, StorageProvider]:
        """Resolve required services before any work starts. Raises MissingDependencyError."""
        if self._transcriber is None:
            self._transcriber = get_transcriber(settings.transcriber)
        if self._grader is None:
            self._grader = get_grading_service(settings.grader)
        if self.storage is None:
            try:
                self.storage = get_storage_provider()
            except RuntimeError as exc:
                raise MissingDependencyError(str(exc)) from exc
        return self._transcriber, self._grader, self.storage

    # Claiming

    def claim_next(self, batch_id: str | None = None) -> Submission | None:
        """Pop queue entries until one is a queued submission in scope.

        Entries for missing or no longer queued submissions are dropped; entries for
        other batches go back on the queue.
        """
        for _ in range(max(1, self.config.max_claim_attempts)):
            submission_id = self.repository.claim_next()
            if submission_id is None:
                return None
            submission = self.repository.get_submission(submission_id)
            if submission is None:
                logger.warning("dropping queue entry for missing submission", extra={"submission_id": submission_id})
                continue
            if submission.status != SubmissionStatus.QUEUED:
                logger.info(
                    "dropping stale queue entry",
                    extra={"submission_id": submission_id, "status": submission.status.value},
                )
                continue
            if batch_id and submission.batch_id != batch_id:
                self.repository.enqueue(submission_id)
                continue
            return submission
        return None

    def process_next(self, batch_id: str | None = None) -> ProcessOutcome | None:
        """One claim-and-process cycle. An empty queue triggers stuck recovery for the batch."""
        if batch_id and self.repository.queue_length() == 0:
            requeued = self.reconciler.recover_stuck(batch_id)
            if requeued:
                logger.info("requeued stuck submissions", extra={"batch_id": batch_id, "count": len(requeued)})
        submission = self.claim_next(batch_id)
        if submission is None:
            return None
        return self.process_submission(submission.id)

    def run_worker(self, max_submissions: int | None = None, batch_id: str | None = None) -> WorkerReport:
        limit = max_submissions if max_submissions is not None else self.config.worker_max_per_run
        report = WorkerReport()
        for _ in range(limit):
            outcome = self.process_next(batch_id)
            if outcome is None:
                break
            report.outcomes.append(outcome)
        report.remaining = self.repository.queue_length()
        logger.info("worker run finished", extra={"processed": report.processed, "remaining": report.remaining})
        return report

    # Processing

    def process_submission(self, submission_id: str) -> ProcessOutcome | None:
        started = time.monotonic()
        submission = self.repository.get_submission(submission_id)
        if submission is None:
            logger.warning("submission not found", extra={"submission_id": submission_id})
            return None

        try:
            transcriber, grader, storage = self._resolve_services()
        except MissingDependencyError as exc:
            logger.error("missing dependency", extra={"submission_id": submission_id, "reason": str(exc)})
            return self._fail(submission, str(exc), started)

        try:
            return self._run_pipeline(submission, transcriber, grader, storage, started)
        except Exception as exc:
            logger.exception(
                "submission processing failed",
                extra={"submission_id": submission.id, "batch_id": submission.batch_id},
            )
            return self._fail(submission, str(exc) or exc.__class__.__name__, started)

    def _elapsed_ms(self, started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _transition(self, submission_id: str, status: SubmissionStatus, **changes: object) -> Submission:
        updated = self.repository.update_submission(
            submission_id,
            status=status,
            lease_expires_at=utcnow() + timedelta(seconds=self.config.lease_seconds),
            **changes,
        )
        if updated is None:
            raise LookupError(f"Submission {submission_id} was deleted during processing")
        return updated

    def _fail(self, submission: Submission, message: str, started: float) -> ProcessOutcome:
        self.repository.update_submission(
            submission.id,
            status=SubmissionStatus.FAILED,
            error_message=message,
            completed_at=utcnow(),
            lease_expires_at=None,
        )
        self.repository.update_batch_stats(submission.batch_id)
        return ProcessOutcome(
            submission_id=submission.id,
            batch_id=submission.batch_id,
            status=SubmissionStatus.FAILED,
            error=message,
            duration_ms=self._elapsed_ms(started),
        )

    def _run_pipeline(
        self,
        submission: Submission,
        transcriber: Transcriber,
        grader: GradingService,
        storage: StorageProvider,
        started: float,
    ) -> ProcessOutcome:
        log_extra = {"submission_id": submission.id, "batch_id": submission.batch_id}
        submission = self._transition(
            submission.id,
            SubmissionStatus.TRANSCRIBING,
            started_at=utcnow(),
            completed_at=None,
            error_message=None,
            analysis=None,
            rubric_evaluation=None,
            questions=[],
            verification_findings=[],
            context_citations=[],
            retrieval_metrics=None,
        )

        media_url = storage.get_download_url(submission.file.key, self.config.download_url_expires_seconds)
        result = transcriber.transcribe_url(media_url)
        transcript = (result.text or "").strip()
        if len(transcript) < self.config.min_transcript_chars:
            raise TranscriptTooShortError(TRANSCRIPT_TOO_SHORT)
        logger.info("transcribed", extra={**log_extra, "chars": len(transcript), "segments": len(result.segments)})

        submission = self._transition(
            submission.id,
            SubmissionStatus.ANALYZING,
            transcript=transcript,
            transcript_segments=result.segments,
            duration_seconds=result.duration_seconds,
        )
        batch = self.repository.get_batch(submission.batch_id)
        inputs = self._prepare_grading_inputs(submission, batch, transcript)

        analysis = grader.analyze(transcript, inputs.analysis_context)
        with ThreadPoolExecutor(max_workers=3) as pool:
            evaluation_future = pool.submit(self._evaluate_with_retry, grader, transcript, inputs.request, log_extra)
            questions_future = pool.submit(
                self._optional_step,
                "questions",
                log_extra,
                grader.generate_questions,
                transcript,
                analysis,
                self.config.max_questions,
            )
            verification_future = pool.submit(
                self._optional_step,
                "verification",
                log_extra,
                grader.verify_claims,
                transcript,
                analysis.key_claims[: self.config.max_claims_for_verification],
            )
            evaluation = evaluation_future.result()
            questions = questions_future.result()
            findings = verification_future.result()

        for entry in evaluation.criteria_breakdown:
            entry.citations = inputs.citations_by_criterion.get(entry.criterion, entry.citations)

        current = self.repository.get_submission(submission.id)
        if current is None:
            raise LookupError(f"Submission {submission.id} was deleted during processing")
        current.analysis = analysis
        current.rubric_evaluation = evaluation
        current.questions = questions[: self.config.max_questions]
        current.verification_findings = findings
        current.context_citations = inputs.context_citations
        current.retrieval_metrics = inputs.metrics
        current.status = SubmissionStatus.READY
        current.error_message = None
        current.completed_at = utcnow()
        current.lease_expires_at = None
        self.repository.save_submission(current)
        self.repository.update_batch_stats(current.batch_id)

        duration_ms = self._elapsed_ms(started)
        logger.info(
            "submission ready",
            extra={**log_extra, "duration_ms": duration_ms, "overall_score": evaluation.overall_score},
        )
        return ProcessOutcome(current.id, current.batch_id, SubmissionStatus.READY, duration_ms=duration_ms)

    def _prepare_grading_inputs(self, submission: Submission, batch: Batch | None, transcript: str) -> _GradingInputs:
        rubric_text = batch.rubric_criteria if batch else None
        request = EvaluationRequest(
            rubric_text=rubric_text,
            criteria=parse_rubric_text(rubric_text),
            segments=submission.transcript_segments,
        )
        inputs = _GradingInputs(request=request)

        context: GradingContext | None = None
        version_id = submission.bundle_version_id or (batch.bundle_version_id if batch else None)
        if version_id:
            context = self.context_store.get_grading_context(version_id)
            if context is None:
                logger.warning("bundle version not found", extra={"bundle_version_id": version_id})
        if context is not None:
            request.criteria = context.criteria or request.criteria
            request.rubric_text = context.rubric_text or request.rubric_text
            request.grading_scale = context.grading_scale
            request.assignment_context = context.assignment_summary or None
            request.evaluation_guidance = context.evaluation_guidance

        course_id = context.course_id if context else (batch.course_id if batch else None)
        assignment_id = context.assignment_id if context else (batch.assignment_id if batch else None)
        course_summary = context.course_summary if context else None
        document_ids = context.document_ids if context else None
        inputs.analysis_context = course_summary or request.assignment_context

        if self.embedder is None or not course_id:
            excerpts = context.document_context if context else ""
            request.course_context = "\n\n".join(part for part in (course_summary, excerpts) if part) or None
            return inputs

        retriever = ContextRetriever(self.index, self.embedder, self.retrieval_config)
        try:
            if request.criteria:
                by_criterion = retriever.retrieve_context_by_criterion(
                    transcript,
                    request.criteria,
                    course_id,
                    assignment_id,
                    course_summary,
                    document_ids=document_ids,
                )
                request.criterion_context = {
                    item.criterion_name: item.formatted_context for item in by_criterion.criteria if item.formatted_context
                }
                inputs.citations_by_criterion = {
                    item.criterion_name: item.citations for item in by_criterion.criteria if item.citations
                }
                inputs.context_citations = by_criterion.citations
                inputs.metrics = by_criterion.metrics
                if by_criterion.metrics.used_fallback:
                    request.course_context = by_criterion.formatted_context
            else:
                general = retriever.retrieve_context_for_grading(
                    transcript, course_id, assignment_id, course_summary, document_ids=document_ids
                )
                request.course_context = general.formatted_context or None
                inputs.context_citations = general.citations
                inputs.metrics = general.metrics
        except Exception:
            logger.warning("context retrieval failed; using course summary", extra={"course_id": course_id}, exc_info=True)
            request.course_context = course_summary or None
            inputs.metrics = RetrievalMetrics(used_fallback=bool(course_summary), context_chars_used=len(course_summary or ""))
        return inputs

    def _evaluate_with_retry(
        self,
        grader: GradingService,
        transcript: str,
        request: EvaluationRequest,
        log_extra: dict[str, str],
    ) -> RubricEvaluation:
        """Evaluate, retry once after a delay, then fall back to a zero-score placeholder."""
        last_error: Exception | None = None
        for attempt in range(2):
            try:
                return grader.evaluate(transcript, request)
            except Exception as exc:
                last_error = exc
                if attempt == 0:
                    logger.warning("rubric evaluation failed; retrying", extra=log_extra, exc_info=True)
                    time.sleep(self.config.rubric_retry_delay_seconds)
        logger.error("rubric evaluation failed after retry; recording placeholder", extra=log_extra)
        return placeholder_evaluation(last_error, request)

    def _optional_step(self, stage: str, log_extra: dict[str, str], func, *args):
        """Run a non-essential grading step; failures degrade to an empty result."""
        try:
            return func(*args)
        except Exception:
            logger.warning("optional grading step failed", extra={**log_extra, "stage": stage}, exc_info=True)
            return []


def build_processor(repository: BatchRepository | None = None) -> SubmissionProcessor:
    """Processor wired from settings. Retrieval is skipped when no embedder is configured."""
    if repository is None:
        repository = BatchRepository(get_record_store(), get_storage_provider())
    embedder: Embedder | None = None
    try:
        embedder = get_embedder(settings.embedder)
    except MissingDependencyError as exc:
        logger.info("context retrieval disabled", extra={"reason": str(exc)})
    return SubmissionProcessor(repository, embedder=embedder)
