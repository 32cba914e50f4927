from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from jobimport.core.errors import FeedError
from jobimport.core.models import CanonicalJob, FailureReason, ImportRun, RunStatus, Source
from jobimport.ledger.service import RunLedger
from jobimport.queue.dispatcher import BatchDispatcher
from jobimport.storage.repository import JobRepository
from jobimport.utils.text import source_name_from_url

logger = logging.getLogger(__name__)


class Normalizer(Protocol):
    def fetch(self, url: str) -> list[CanonicalJob]: ...


class SweepState(Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"


class SweepGuard:
    """Test-and-set token allowing one sweep at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = SweepState.IDLE

    @property
    def state(self) -> SweepState:
        return self._state

    def try_begin(self) -> bool:
        with self._lock:
            if self._state is SweepState.SWEEPING:
                return False
            self._state = SweepState.SWEEPING
            return True

    def end(self) -> None:
        with self._lock:
            self._state = SweepState.IDLE


@dataclass(slots=True)
class SweepReport:
    dispatched: list[int] = field(default_factory=list)
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def runs(self) -> list[int]:
        return sorted(self.dispatched + self.completed + self.failed)


class SourceCoordinator:
    def __init__(
        self,
        repository: JobRepository,
        ledger: RunLedger,
        normalizer: Normalizer,
        dispatcher: BatchDispatcher,
        fan_out: int = 3,
        guard: SweepGuard | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.normalizer = normalizer
        self.dispatcher = dispatcher
        self.fan_out = fan_out
        self.guard = guard or SweepGuard()

    def seed_sources(self, seeds: list[dict[str, Any]]) -> int:
        added = 0
        for seed in seeds:
            url = seed["url"]
            if self.repository.ensure_source(
                url,
                seed.get("name") or source_name_from_url(url),
                active=seed.get("active", True),
                fetch_interval_seconds=seed.get("fetch_interval_seconds", 3600),
            ):
                added += 1
        logger.info("sources_seeded", extra={"extra_fields": {"configured": len(seeds), "added": added}})
        return added

    def request_sweep(self) -> SweepReport | None:
        """Run a sweep unless one is already in progress, in which case the request is dropped."""
        if not self.guard.try_begin():
            logger.info("sweep_skipped_already_running")
            return None
        try:
            return self._sweep()
        finally:
            self.guard.end()

    def _sweep(self) -> SweepReport:
        sources = self.repository.list_sources(active_only=True)
        logger.info("sweep_started", extra={"extra_fields": {"sources": len(sources), "fan_out": self.fan_out}})
        report = SweepReport()
        with ThreadPoolExecutor(max_workers=self.fan_out, thread_name_prefix="source") as pool:
            for source, future in [(s, pool.submit(self.process_source, s)) for s in sources]:
                try:
                    run = future.result()
                except Exception:  # noqa: BLE001
                    logger.exception("source_processing_crashed", extra={"extra_fields": {"source": source.url}})
                    continue
                if run is None:
                    continue
                if run.status is RunStatus.FAILED:
                    report.failed.append(run.id)
                elif run.status is RunStatus.COMPLETED:
                    report.completed.append(run.id)
                else:
                    report.dispatched.append(run.id)
        logger.info(
            "sweep_finished",
            extra={
                "extra_fields": {
                    "dispatched": len(report.dispatched),
                    "completed": len(report.completed),
                    "failed": len(report.failed),
                }
            },
        )
        return report

    def process_source(self, source: Source) -> ImportRun | None:
        if not source.active:
            return None

        started = time.monotonic()
        run = self.ledger.start_run(source)
        try:
            return self._import_source(source, run.id, started)
        except Exception as exc:  # noqa: BLE001
            logger.exception("source_processing_failed", extra={"extra_fields": {"run_id": run.id, "source": source.url}})
            self.ledger.mark_failed(
                run.id,
                FailureReason(job_ref="source", reason="Source processing failed", detail=f"{type(exc).__name__}: {exc}"),
            )
            return self.ledger.get_run(run.id)

    def _import_source(self, source: Source, run_id: int, started: float) -> ImportRun:
        try:
            jobs = self.normalizer.fetch(source.url)
        except FeedError as exc:
            self.ledger.mark_failed(run_id, FailureReason(job_ref="source", reason="Source fetch failed", detail=str(exc)))
            return self.ledger.get_run(run_id)

        self.ledger.record_fetched(run_id, len(jobs))
        self.repository.mark_source_fetched(source.id)
        if not jobs:
            self.ledger.mark_completed(run_id)
        else:
            try:
                self.dispatcher.dispatch(jobs, source.url, run_id)
            except Exception as exc:  # noqa: BLE001
                logger.exception("dispatch_failed", extra={"extra_fields": {"run_id": run_id, "source": source.url}})
                self.ledger.mark_failed(
                    run_id, FailureReason(job_ref="source", reason="Batch dispatch failed", detail=str(exc))
                )
        self.ledger.record_processing_time(run_id, int((time.monotonic() - started) * 1000))
        return self.ledger.get_run(run_id)
