from __future__ import annotations

import logging
import sqlite3

from jobimport.core.errors import InfrastructureError, RunStateError, ValidationError
from jobimport.core.models import BatchOutcome, BatchWorkItem, CanonicalJob, FailureReason
from jobimport.ledger.service import RunLedger
from jobimport.storage.repository import JobRepository

logger = logging.getLogger(__name__)

EXHAUSTED_REASON = "Batch processing failed"


def validate_job(job: CanonicalJob) -> None:
    if not job.external_id:
        raise ValidationError("Missing externalId")
    if not job.title:
        raise ValidationError("Missing title")


class BatchWorker:
    def __init__(self, repository: JobRepository, ledger: RunLedger) -> None:
        self.repository = repository
        self.ledger = ledger

    def process_batch(self, item: BatchWorkItem) -> BatchOutcome:
        outcome = BatchOutcome()
        for job in item.jobs:
            try:
                validate_job(job)
            except ValidationError as exc:
                outcome.failed_count += 1
                outcome.failure_reasons.append(
                    FailureReason(job_ref=job.external_id or "unknown", reason=str(exc), detail=str(exc))
                )
                continue
            try:
                inserted = self.repository.upsert_job(job, item.source_key)
            except sqlite3.Error as exc:
                raise InfrastructureError(f"upsert failed for {job.external_id}: {exc}") from exc
            if inserted:
                outcome.new_count += 1
            else:
                outcome.updated_count += 1

        logger.info(
            "batch_processed",
            extra={
                "extra_fields": {
                    "run_id": item.run_id,
                    "source": item.source_key,
                    "new": outcome.new_count,
                    "updated": outcome.updated_count,
                    "failed": outcome.failed_count,
                }
            },
        )
        self._report(item, outcome)
        return outcome

    def on_exhausted(self, item: BatchWorkItem, error: str) -> None:
        """Account every job of a batch that ran out of retries as failed."""
        outcome = BatchOutcome(
            failed_count=len(item.jobs),
            failure_reasons=[
                FailureReason(job_ref=job.external_id or "unknown", reason=EXHAUSTED_REASON, detail=error)
                for job in item.jobs
            ],
        )
        logger.error("batch_exhausted", extra={"extra_fields": {"run_id": item.run_id, "jobs": len(item.jobs), "error": error}})
        self._report(item, outcome)

    def _report(self, item: BatchWorkItem, outcome: BatchOutcome) -> None:
        try:
            self.ledger.apply_batch_outcome(item.run_id, outcome, item.batch_index)
        except (RunStateError, sqlite3.Error) as exc:
            logger.error(
                "ledger_update_failed",
                extra={"extra_fields": {"run_id": item.run_id, "batch": item.batch_index, "error": str(exc)}},
            )
