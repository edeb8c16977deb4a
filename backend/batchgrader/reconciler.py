"""Crash recovery for the batch/submission model.

Two repairs run opportunistically from read paths and from the processing
endpoint when the queue is empty:

* orphan recovery re-attaches submission records whose batch membership was lost
  between the record write and the set add;
* stuck recovery puts abandoned submissions back on the queue: work whose lease
  expired mid-pipeline, and queued submissions whose queue entry disappeared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from batchgrader.models import IN_PROGRESS_STATUSES, Batch, Submission, SubmissionStatus, utcnow
from batchgrader.repository import SUBMISSION_PREFIX, BatchRepository
from batchgrader.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcilerConfig:
    scan_pages: int = 20
    scan_count: int = 100

    @classmethod
    def from_settings(cls) -> "ReconcilerConfig":
        return cls(scan_pages=settings.recovery_scan_pages, scan_count=settings.recovery_scan_count)


@dataclass
class ReconcileReport:
    batch_id: str
    recovered: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)


def needs_orphan_recovery(batch: Batch, visible_count: int) -> bool:
    """True when the batch counter claims more submissions than a read can see."""
    return visible_count == 0 or batch.total_submissions > visible_count


def _lease_expired(submission: Submission, now: datetime) -> bool:
    if submission.lease_expires_at is None:
        return True
    return submission.lease_expires_at <= now


class Reconciler:
    def __init__(self, repository: BatchRepository, config: ReconcilerConfig | None = None) -> None:
        self.repository = repository
        self.config = config or ReconcilerConfig.from_settings()

    def _candidate_ids(self) -> list[str]:
        """Queue contents first, then a bounded scan of submission keys."""
        candidates = list(self.repository.queue_contents())
        cursor = 0
        for _ in range(max(1, self.config.scan_pages)):
            cursor, keys = self.repository.store.scan(cursor, f"{SUBMISSION_PREFIX}*", self.config.scan_count)
            candidates.extend(key[len(SUBMISSION_PREFIX) :] for key in keys)
            if cursor == 0:
                break
        return list(dict.fromkeys(candidates))

    def recover_orphans(self, batch_id: str) -> list[str]:
        """Re-attach submissions that reference the batch but are not members of it."""
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            return []

        known = set(batch.submission_ids) | self.repository.membership(batch_id)
        recovered: list[str] = []
        for submission_id in self._candidate_ids():
            if submission_id in known:
                continue
            submission = self.repository.get_submission(submission_id)
            if submission is None or submission.batch_id != batch_id:
                continue
            self.repository.add_member(batch_id, submission_id)
            known.add(submission_id)
            recovered.append(submission_id)

        if recovered:
            logger.warning(
                "recovered orphaned submissions",
                extra={"batch_id": batch_id, "recovered": len(recovered)},
            )
        self.repository.fold_submission_ids(batch_id)
        return recovered

    def recover_stuck(self, batch_id: str, now: datetime | None = None) -> list[str]:
        """Requeue expired in-progress work and queued submissions missing from the queue."""
        now = now or utcnow()
        queued_ids = set(self.repository.queue_contents())
        requeued: list[str] = []

        for submission in self.repository.get_batch_submissions(batch_id):
            if submission.status in IN_PROGRESS_STATUSES:
                if not _lease_expired(submission, now):
                    continue
                logger.warning(
                    "requeueing stuck submission",
                    extra={
                        "batch_id": batch_id,
                        "submission_id": submission.id,
                        "status": submission.status.value,
                    },
                )
                self.repository.update_submission(
                    submission.id,
                    status=SubmissionStatus.QUEUED,
                    lease_expires_at=None,
                    error_message=None,
                )
            elif submission.status != SubmissionStatus.QUEUED or submission.id in queued_ids:
                continue

            self.repository.enqueue(submission.id)
            queued_ids.add(submission.id)
            requeued.append(submission.id)

        return requeued

    def reconcile_batch(self, batch_id: str, now: datetime | None = None) -> ReconcileReport:
        report = ReconcileReport(batch_id=batch_id)
        report.recovered = self.recover_orphans(batch_id)
        report.requeued = self.recover_stuck(batch_id, now=now)
        self.repository.update_batch_stats(batch_id)
        return report
