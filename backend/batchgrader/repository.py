"""Batch and submission persistence on top of the record store.

Keys:
  batch:{id}                 JSON Batch record
  submission:{id}            JSON Submission record
  batch_submissions:{id}     set of submission ids (authoritative membership)
  submission_queue           FIFO list of submission ids awaiting processing
  all_batches                set of batch ids

``Batch.submission_ids`` and the batch counters are projections. They are folded
from the membership set with a re-read / merge / compare-and-set loop and recomputed
from the submissions on every stats update.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from uuid import NAMESPACE_URL, uuid4, uuid5

from batchgrader.models import (
    FINISHED_STATUSES,
    IN_PROGRESS_STATUSES,
    Batch,
    BatchStatus,
    FileRef,
    Submission,
    SubmissionStatus,
    utcnow,
)
from batchgrader.record_store import RecordStore
from batchgrader.settings import settings
from batchgrader.storage_provider import StorageProvider, delete_objects_best_effort

logger = logging.getLogger(__name__)

BATCH_PREFIX = "batch:"
SUBMISSION_PREFIX = "submission:"
BATCH_MEMBERS_PREFIX = "batch_submissions:"
QUEUE_KEY = "submission_queue"
ALL_BATCHES_KEY = "all_batches"

_NAME_SUFFIX_RE = re.compile(r"[-_](presentation|video|recording|submission|final|v\d+)$", re.IGNORECASE)
_TRAILING_DIGITS_RE = re.compile(r"[-_]\d{4,}$")


def batch_key(batch_id: str) -> str:
    return f"{BATCH_PREFIX}{batch_id}"


def submission_key(submission_id: str) -> str:
    return f"{SUBMISSION_PREFIX}{submission_id}"


def members_key(batch_id: str) -> str:
    return f"{BATCH_MEMBERS_PREFIX}{batch_id}"


def infer_student_name(filename: str) -> str:
    """Derive a display name from an upload filename.

    ``jane_doe_presentation.mp4`` becomes ``Jane Doe``. Filenames with nothing left
    after cleanup fall back to the bare stem.
    """
    stem = Path(filename).stem
    name = _NAME_SUFFIX_RE.sub("", stem)
    name = _TRAILING_DIGITS_RE.sub("", name)
    words = [word for word in re.split(r"[-_\s]+", name) if word]
    if not words:
        return stem or filename
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def _ordered_union(*sequences: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for sequence in sequences:
        for item in sequence:
            if item not in seen:
                seen.add(item)
                merged.append(item)
    return merged


class BatchNotFoundError(LookupError):
    pass


class BatchWriteConflict(RuntimeError):
    pass


@dataclass
class BatchStats:
    total: int
    graded: int
    failed: int
    status: BatchStatus


@dataclass
class GradingStatus:
    state: str
    graded_count: int
    total_count: int
    message: str


def compute_batch_stats(submissions: list[Submission]) -> BatchStats:
    total = len(submissions)
    graded = sum(1 for submission in submissions if submission.is_graded)
    failed = sum(1 for submission in submissions if submission.status == SubmissionStatus.FAILED)
    finished_without_score = sum(
        1 for submission in submissions if submission.status in FINISHED_STATUSES and not submission.is_graded
    )

    if total and graded == total:
        status = BatchStatus.COMPLETED
    elif graded or finished_without_score:
        status = BatchStatus.PROCESSING
    else:
        status = BatchStatus.ACTIVE
    return BatchStats(total=total, graded=graded, failed=failed, status=status)


def compute_grading_status(submissions: list[Submission]) -> GradingStatus:
    """Summarize batch progress for display."""
    total = len(submissions)
    if total == 0:
        return GradingStatus("not_started", 0, 0, "No submissions yet")

    graded = sum(1 for submission in submissions if submission.is_graded)
    ready = sum(1 for submission in submissions if submission.status == SubmissionStatus.READY)
    failed = sum(1 for submission in submissions if submission.status == SubmissionStatus.FAILED)
    in_progress = sum(1 for submission in submissions if submission.status in IN_PROGRESS_STATUSES)
    queued = sum(1 for submission in submissions if submission.status == SubmissionStatus.QUEUED)
    ready_without_score = sum(
        1 for submission in submissions if submission.status == SubmissionStatus.READY and not submission.has_score
    )

    if ready + failed == total and ready_without_score:
        return GradingStatus("finalizing", graded, total, "Finalizing automated grading results")
    if graded == total:
        return GradingStatus("completed", graded, total, "All submissions successfully evaluated")
    if failed and graded + failed == total:
        return GradingStatus("retrying", graded, total, f"{failed} submission(s) being retried")
    if in_progress or graded:
        return GradingStatus("processing", graded, total, f"{graded} of {total} completed")
    if queued == total:
        return GradingStatus("not_started", 0, total, "Queued for automated grading")
    return GradingStatus("processing", graded, total, f"{graded} of {total} completed")


@dataclass(frozen=True)
class RepositoryConfig:
    fold_attempts: int = 5
    fold_backoff_seconds: float = 0.05
    batch_read_attempts: int = 3
    stale_upload_seconds: int = 300

    @classmethod
    def from_settings(cls) -> "RepositoryConfig":
        return cls(
            fold_attempts=settings.fold_attempts,
            fold_backoff_seconds=settings.fold_backoff_seconds,
            batch_read_attempts=settings.batch_read_attempts,
            stale_upload_seconds=settings.stale_upload_seconds,
        )


class BatchRepository:
    def __init__(
        self,
        store: RecordStore,
        storage: StorageProvider | None = None,
        config: RepositoryConfig | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.config = config or RepositoryConfig.from_settings()

    # Batches

    def create_batch(
        self,
        name: str,
        *,
        course_name: str | None = None,
        assignment_name: str | None = None,
        course_id: str | None = None,
        assignment_id: str | None = None,
        bundle_version_id: str | None = None,
        rubric_criteria: str | None = None,
        rubric_template_id: str | None = None,
        expected_upload_count: int | None = None,
    ) -> Batch:
        if not name or not name.strip():
            raise ValueError("Batch name is required")
        batch = Batch(
            id=uuid4().hex,
            name=name.strip(),
            course_name=course_name,
            assignment_name=assignment_name,
            course_id=course_id,
            assignment_id=assignment_id,
            bundle_version_id=bundle_version_id,
            rubric_criteria=rubric_criteria,
            rubric_template_id=rubric_template_id,
            expected_upload_count=expected_upload_count or None,
        )
        self.store.set(batch_key(batch.id), batch.model_dump_json())
        self.store.add_to_set(ALL_BATCHES_KEY, batch.id)
        logger.info("batch created", extra={"batch_id": batch.id})
        return batch

    def get_batch(self, batch_id: str) -> Batch | None:
        raw = self.store.get(batch_key(batch_id))
        return Batch.model_validate_json(raw) if raw is not None else None

    def _get_batch_with_retry(self, batch_id: str) -> Batch | None:
        attempts = max(1, self.config.batch_read_attempts)
        for attempt in range(attempts):
            batch = self.get_batch(batch_id)
            if batch is not None:
                return batch
            if attempt < attempts - 1:
                time.sleep(self.config.fold_backoff_seconds * (2**attempt))
        return None

    def list_batches(self) -> list[Batch]:
        batches: list[Batch] = []
        for batch_id in self.store.set_members(ALL_BATCHES_KEY):
            batch = self.get_batch(batch_id)
            if batch is None:
                logger.warning("batch listed but missing", extra={"batch_id": batch_id})
                continue
            batches.append(batch)
        return sorted(batches, key=lambda batch: batch.created_at, reverse=True)

    def _mutate_batch(self, batch_id: str, mutate: Callable[[Batch], Batch | None]) -> Batch | None:
        """Re-read, apply mutate and compare-and-set until the write lands.

        mutate returns None when there is nothing to write. Raises BatchWriteConflict
        when every attempt lost to a concurrent writer.
        """
        key = batch_key(batch_id)
        attempts = max(1, self.config.fold_attempts)
        for attempt in range(attempts):
            raw = self.store.get(key)
            if raw is None:
                return None
            current = Batch.model_validate_json(raw)
            updated = mutate(current.model_copy(deep=True))
            if updated is None:
                return current
            updated.updated_at = utcnow()
            if self.store.compare_and_set(key, raw, updated.model_dump_json()):
                return updated
            if attempt < attempts - 1:
                time.sleep(self.config.fold_backoff_seconds * (2**attempt))
        raise BatchWriteConflict(f"Batch {batch_id} write lost {attempts} times to concurrent writers")

    def update_batch(self, batch_id: str, **changes: object) -> Batch | None:
        def mutate(batch: Batch) -> Batch:
            for field_name, value in changes.items():
                setattr(batch, field_name, value)
            return batch

        return self._mutate_batch(batch_id, mutate)

    def set_expected_upload_count(self, batch_id: str, count: int) -> Batch | None:
        """Record how many uploads the client intends to send. The count only ever grows."""

        def mutate(batch: Batch) -> Batch | None:
            if batch.expected_upload_count is not None and count <= batch.expected_upload_count:
                return None
            batch.expected_upload_count = count
            return batch

        return self._mutate_batch(batch_id, mutate)

    def membership(self, batch_id: str) -> set[str]:
        return self.store.set_members(members_key(batch_id))

    def add_member(self, batch_id: str, submission_id: str) -> bool:
        return self.store.add_to_set(members_key(batch_id), submission_id)

    def fold_submission_ids(self, batch_id: str, extra: Iterable[str] = ()) -> Batch | None:
        """Merge the membership set (plus extra ids) into the batch's submission_ids."""
        extra_ids = list(extra)

        def mutate(batch: Batch) -> Batch | None:
            members = self.membership(batch_id)
            known = set(batch.submission_ids)
            merged = _ordered_union(batch.submission_ids, sorted(members - known), extra_ids)
            if merged == batch.submission_ids and batch.total_submissions >= len(merged):
                return None
            batch.submission_ids = merged
            batch.total_submissions = max(batch.total_submissions, len(merged))
            return batch

        try:
            return self._mutate_batch(batch_id, mutate)
        except BatchWriteConflict:
            logger.warning(
                "submission id fold gave up; reconciliation will repair",
                extra={"batch_id": batch_id, "extra_ids": extra_ids},
            )
            return None

    # Submissions

    def get_submission(self, submission_id: str) -> Submission | None:
        raw = self.store.get(submission_key(submission_id))
        return Submission.model_validate_json(raw) if raw is not None else None

    def save_submission(self, submission: Submission) -> Submission:
        submission.updated_at = utcnow()
        self.store.set(submission_key(submission.id), submission.model_dump_json())
        return submission

    def update_submission(self, submission_id: str, **changes: object) -> Submission | None:
        submission = self.get_submission(submission_id)
        if submission is None:
            return None
        for field_name, value in changes.items():
            setattr(submission, field_name, value)
        return self.save_submission(submission)

    def create_submission(
        self,
        batch_id: str,
        file: FileRef,
        *,
        student_name: str | None = None,
        student_id: str | None = None,
        submission_id: str | None = None,
    ) -> Submission:
        """Create and enqueue a submission. Repeated calls for the same file are no-ops."""
        if not file.key:
            raise ValueError("File key is required")
        batch = self._get_batch_with_retry(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        resolved_id = submission_id or uuid5(NAMESPACE_URL, f"{batch_id}:{file.key}").hex
        existing = self.get_submission(resolved_id)
        if existing is not None:
            return existing

        submission = Submission(
            id=resolved_id,
            batch_id=batch_id,
            file=file,
            student_name=(student_name or "").strip() or infer_student_name(file.original_filename),
            student_id=student_id,
            bundle_version_id=batch.bundle_version_id,
        )
        if not self.store.compare_and_set(submission_key(resolved_id), None, submission.model_dump_json()):
            logger.info("duplicate submission create", extra={"batch_id": batch_id, "submission_id": resolved_id})
            return self.get_submission(resolved_id) or submission

        if not self.add_member(batch_id, resolved_id):
            return submission

        self.store.push(QUEUE_KEY, resolved_id)
        self.fold_submission_ids(batch_id, extra=[resolved_id])
        logger.info("submission enqueued", extra={"batch_id": batch_id, "submission_id": resolved_id})
        return submission

    def get_batch_submissions(self, batch_id: str) -> list[Submission]:
        """Resolve submissions reachable from the batch's id list and membership set, sorted by name."""
        batch = self.get_batch(batch_id)
        if batch is None:
            return []

        members = self.membership(batch_id)
        listed = list(batch.submission_ids)
        if not listed and batch.total_submissions > 0:
            logger.warning(
                "batch submission list empty while counter is not; consistency repair needed",
                extra={"batch_id": batch_id, "total_submissions": batch.total_submissions},
            )
        missing = sorted(members - set(listed))
        if missing and listed:
            logger.info("membership ahead of submission list", extra={"batch_id": batch_id, "missing": len(missing)})

        submissions: list[Submission] = []
        for submission_id in _ordered_union(listed, missing):
            submission = self.get_submission(submission_id)
            if submission is None or submission.batch_id != batch_id:
                continue
            submissions.append(submission)
        return sorted(submissions, key=lambda submission: (submission.student_name.casefold(), submission.id))

    def update_batch_stats(self, batch_id: str) -> Batch | None:
        """Recompute counters and status from the batch's submissions."""
        batch = self.get_batch(batch_id)
        if batch is None:
            return None

        submissions = self.get_batch_submissions(batch_id)
        if not submissions and batch.total_submissions > 0:
            logger.warning(
                "refusing to zero submission count on empty read",
                extra={"batch_id": batch_id, "total_submissions": batch.total_submissions},
            )
            return batch

        stats = compute_batch_stats(submissions)
        resolved_ids = [submission.id for submission in submissions]
        resolved = set(resolved_ids)
        now = utcnow()

        def mutate(current: Batch) -> Batch:
            kept = [
                sid
                for sid in current.submission_ids
                if sid in resolved or self.store.get(submission_key(sid)) is not None
            ]
            current.submission_ids = _ordered_union(kept, resolved_ids)
            current.total_submissions = stats.total
            current.processed_count = stats.graded
            current.failed_count = stats.failed
            if current.status != BatchStatus.ARCHIVED:
                current.status = stats.status

            expected = current.expected_upload_count
            if expected:
                uploads_complete = stats.total >= expected
                uploads_stale = stats.total == 0 and now - current.created_at > timedelta(
                    seconds=self.config.stale_upload_seconds
                )
                if uploads_complete or uploads_stale:
                    current.expected_upload_count = None
            return current

        try:
            return self._mutate_batch(batch_id, mutate)
        except BatchWriteConflict:
            logger.warning("batch stats write gave up", extra={"batch_id": batch_id})
            return self.get_batch(batch_id)

    def delete_submission(self, submission_id: str) -> bool:
        submission = self.get_submission(submission_id)
        if submission is None:
            return False
        if self.storage is not None:
            delete_objects_best_effort(self.storage, [submission.file.key])

        batch_id = submission.batch_id
        self.store.remove_from_set(members_key(batch_id), submission_id)

        def mutate(batch: Batch) -> Batch | None:
            if submission_id not in batch.submission_ids:
                return None
            batch.submission_ids = [sid for sid in batch.submission_ids if sid != submission_id]
            batch.total_submissions = len(batch.submission_ids)
            return batch

        try:
            self._mutate_batch(batch_id, mutate)
        except BatchWriteConflict:
            logger.warning(
                "submission list update gave up; stats update will repair",
                extra={"batch_id": batch_id, "submission_id": submission_id},
            )
        self.store.delete(submission_key(submission_id))
        self.update_batch_stats(batch_id)
        logger.info("submission deleted", extra={"batch_id": batch_id, "submission_id": submission_id})
        return True

    def delete_batch(self, batch_id: str) -> int | None:
        """Delete a batch with its submissions. Returns how many stored files were removed."""
        batch = self.get_batch(batch_id)
        if batch is None:
            return None

        submissions = self.get_batch_submissions(batch_id)
        deleted_files = 0
        if self.storage is not None:
            deleted_files = delete_objects_best_effort(self.storage, [submission.file.key for submission in submissions])

        for submission in submissions:
            self.store.delete(submission_key(submission.id))
        self.store.delete(members_key(batch_id))
        self.store.remove_from_set(ALL_BATCHES_KEY, batch_id)
        self.store.delete(batch_key(batch_id))
        logger.info(
            "batch deleted",
            extra={"batch_id": batch_id, "submissions": len(submissions), "deleted_files": deleted_files},
        )
        return deleted_files

    def reset_for_regrade(self, submission_id: str, bundle_version_id: str | None = None) -> Submission | None:
        """Clear results and put the submission back on the queue."""
        submission = self.get_submission(submission_id)
        if submission is None:
            return None

        submission.status = SubmissionStatus.QUEUED
        submission.error_message = None
        submission.transcript = None
        submission.transcript_segments = []
        submission.duration_seconds = None
        submission.analysis = None
        submission.rubric_evaluation = None
        submission.questions = []
        submission.verification_findings = []
        submission.context_citations = []
        submission.retrieval_metrics = None
        submission.started_at = None
        submission.completed_at = None
        submission.lease_expires_at = None
        if bundle_version_id:
            submission.bundle_version_id = bundle_version_id
        self.save_submission(submission)
        self.enqueue(submission_id)
        self.update_batch_stats(submission.batch_id)
        return submission

    # Work queue

    def enqueue(self, submission_id: str) -> None:
        self.store.push(QUEUE_KEY, submission_id)

    def claim_next(self) -> str | None:
        return self.store.pop(QUEUE_KEY)

    def queue_length(self) -> int:
        return self.store.list_length(QUEUE_KEY)

    def queue_contents(self) -> list[str]:
        return self.store.list_range(QUEUE_KEY)
