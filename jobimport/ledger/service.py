from __future__ import annotations

import logging
import sqlite3

from jobimport.core.models import ApplyResult, BatchOutcome, FailureReason, ImportRun, Source
from jobimport.storage.repository import JobRepository

logger = logging.getLogger(__name__)


class RunLedger:
    """Creates import runs and folds concurrently completing batch outcomes into them.

    A run starts ``pending``, becomes ``processing`` once its fetched count is
    known, and ends ``completed`` or ``failed``. Terminal runs never change
    again: late outcomes are logged and dropped.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def start_run(self, source: Source) -> ImportRun:
        run = self.repository.create_run(source.url, source.display_name)
        logger.info("run_started", extra={"extra_fields": {"run_id": run.id, "source": source.url}})
        return run

    def record_fetched(self, run_id: int, count: int) -> None:
        self.repository.set_total_fetched(run_id, count)

    def mark_completed(self, run_id: int) -> bool:
        """Close a run that fetched nothing."""
        closed = self.repository.complete_empty_run(run_id)
        if closed:
            logger.info("run_completed", extra={"extra_fields": {"run_id": run_id, "total_fetched": 0}})
        return closed

    def apply_batch_outcome(self, run_id: int, outcome: BatchOutcome, batch_index: int | None = None) -> ApplyResult:
        result = self.repository.increment_run(run_id, outcome, batch_index)
        fields = {
            "run_id": run_id,
            "batch": batch_index,
            "new": outcome.new_count,
            "updated": outcome.updated_count,
            "failed": outcome.failed_count,
            "result": result.value,
        }
        if result is ApplyResult.COMPLETED:
            logger.info("run_completed", extra={"extra_fields": fields})
        elif result is ApplyResult.APPLIED:
            logger.info("batch_outcome_applied", extra={"extra_fields": fields})
        elif result is ApplyResult.DUPLICATE:
            logger.info("batch_outcome_redelivered", extra={"extra_fields": fields})
        else:
            logger.warning("batch_outcome_discarded", extra={"extra_fields": fields})
        return result

    def mark_failed(self, run_id: int, reason: FailureReason | str) -> bool:
        if isinstance(reason, str):
            reason = FailureReason(job_ref="source", reason=reason)
        failed = self.repository.fail_run(run_id, reason)
        level = logging.WARNING if failed else logging.INFO
        logger.log(
            level,
            "run_failed" if failed else "run_already_terminal",
            extra={"extra_fields": {"run_id": run_id, "reason": reason.reason, "detail": reason.detail}},
        )
        return failed

    def record_processing_time(self, run_id: int, ms: int) -> None:
        try:
            self.repository.set_processing_time(run_id, ms)
        except sqlite3.Error as exc:
            logger.warning("processing_time_not_recorded", extra={"extra_fields": {"run_id": run_id, "error": str(exc)}})

    def get_run(self, run_id: int) -> ImportRun:
        return self.repository.get_run(run_id)
