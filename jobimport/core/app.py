from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jobimport.core.coordinator import SourceCoordinator
from jobimport.core.scheduler import SweepScheduler
from jobimport.ledger.service import RunLedger
from jobimport.queue.dispatcher import BatchDispatcher
from jobimport.queue.transport import SqliteWorkQueue, WorkerPool
from jobimport.sources.normalizer import FeedNormalizer
from jobimport.storage.repository import JobRepository
from jobimport.worker.processor import BatchWorker


@dataclass(slots=True)
class Pipeline:
    config: dict[str, Any]
    repository: JobRepository
    queue: SqliteWorkQueue
    ledger: RunLedger
    normalizer: FeedNormalizer
    coordinator: SourceCoordinator
    worker: BatchWorker
    pool: WorkerPool
    scheduler: SweepScheduler

    def close(self) -> None:
        self.scheduler.shutdown()
        self.pool.stop()
        self.normalizer.close()
        self.queue.close()
        self.repository.close()


def build_pipeline(config: dict[str, Any], normalizer: FeedNormalizer | None = None) -> Pipeline:
    imports = config["import"]
    queue_cfg = config["queue"]

    repository = JobRepository(config["database_path"])
    queue = SqliteWorkQueue(
        queue_cfg["path"],
        max_attempts=queue_cfg["max_attempts"],
        backoff_seconds=queue_cfg["backoff_seconds"],
    )
    ledger = RunLedger(repository)
    normalizer = normalizer or FeedNormalizer(
        timeout_seconds=imports["fetch_timeout_seconds"],
        user_agent=imports["user_agent"],
    )
    coordinator = SourceCoordinator(
        repository,
        ledger,
        normalizer,
        BatchDispatcher(queue, imports["batch_size"]),
        fan_out=imports["source_fan_out"],
    )
    worker = BatchWorker(repository, ledger)
    pool = WorkerPool(
        queue,
        worker.process_batch,
        concurrency=imports["worker_concurrency"],
        on_exhausted=worker.on_exhausted,
        poll_interval=queue_cfg["poll_interval_seconds"],
    )
    scheduler = SweepScheduler(
        coordinator,
        cron=config["schedule"]["cron"],
        sweep_on_start=config["schedule"]["sweep_on_start"],
    )
    return Pipeline(config, repository, queue, ledger, normalizer, coordinator, worker, pool, scheduler)
