from __future__ import annotations

import logging
from typing import Protocol

from jobimport.core.models import BatchWorkItem, CanonicalJob

logger = logging.getLogger(__name__)


class WorkQueue(Protocol):
    def enqueue(self, item: BatchWorkItem) -> int: ...


def slice_batches(jobs: list[CanonicalJob], batch_size: int) -> list[list[CanonicalJob]]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [jobs[i : i + batch_size] for i in range(0, len(jobs), batch_size)]


class BatchDispatcher:
    def __init__(self, queue: WorkQueue, batch_size: int = 100) -> None:
        self.queue = queue
        self.batch_size = batch_size

    def dispatch(self, jobs: list[CanonicalJob], source_key: str, run_id: int, batch_size: int | None = None) -> list[int]:
        """Enqueue contiguous batches in input order and return their queue handles."""
        handles = [
            self.queue.enqueue(BatchWorkItem(jobs=batch, source_key=source_key, run_id=run_id, batch_index=index))
            for index, batch in enumerate(slice_batches(jobs, batch_size or self.batch_size))
        ]
        logger.info(
            "batches_dispatched",
            extra={"extra_fields": {"run_id": run_id, "source": source_key, "jobs": len(jobs), "batches": len(handles)}},
        )
        return handles
