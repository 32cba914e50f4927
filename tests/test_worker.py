from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from jobimport.core.errors import InfrastructureError
from jobimport.core.models import BatchWorkItem, CanonicalJob, RunStatus, Source
from jobimport.ledger.service import RunLedger
from jobimport.storage.repository import JobRepository
from jobimport.worker.processor import EXHAUSTED_REASON, BatchWorker

SOURCE_URL = "https://feed.example.com/rss"


def mkjob(external_id: str, title: str = "IT Support Specialist", **fields) -> CanonicalJob:
    return CanonicalJob(
        external_id=external_id,
        title=title,
        description=fields.get("description", "Troubleshooting and customer service"),
        company=fields.get("company", "Acme"),
        location="Remote",
        category="support",
        job_type="full-time",
        salary="",
        url=f"https://example.com/j/{external_id}",
        published_at="2026-01-02T00:00:00+00:00",
        raw={"id": external_id},
    )


def setup(tmp_path: Path, total: int) -> tuple[JobRepository, RunLedger, BatchWorker, int]:
    repo = JobRepository(str(tmp_path / "jobs.db"))
    ledger = RunLedger(repo)
    run = ledger.start_run(Source(id=1, url=SOURCE_URL, display_name="feed"))
    ledger.record_fetched(run.id, total)
    return repo, ledger, BatchWorker(repo, ledger), run.id


def test_missing_title_is_recorded_and_batch_continues(tmp_path: Path) -> None:
    repo, ledger, worker, run_id = setup(tmp_path, 10)
    jobs = [mkjob(f"job{i}") for i in range(10)]
    jobs[4].title = ""

    result = worker.process_batch(BatchWorkItem(jobs=jobs, source_key=SOURCE_URL, run_id=run_id))

    assert (result.new_count, result.updated_count, result.failed_count) == (9, 0, 1)
    assert result.failure_reasons[0].job_ref == "job4"
    assert result.failure_reasons[0].reason == "Missing title"
    run = ledger.get_run(run_id)
    assert run.failed_count == 1
    assert run.status is RunStatus.COMPLETED
    assert len(repo.list_jobs()) == 9


def test_missing_external_id_uses_unknown_ref(tmp_path: Path) -> None:
    _, _, worker, run_id = setup(tmp_path, 1)
    result = worker.process_batch(BatchWorkItem(jobs=[mkjob("")], source_key=SOURCE_URL, run_id=run_id))
    assert result.failure_reasons[0].job_ref == "unknown"
    assert result.failure_reasons[0].reason == "Missing externalId"


def test_second_delivery_updates_instead_of_inserting(tmp_path: Path) -> None:
    repo, ledger, worker, run_id = setup(tmp_path, 6)
    item = BatchWorkItem(jobs=[mkjob("a"), mkjob("b"), mkjob("c")], source_key=SOURCE_URL, run_id=run_id)

    first = worker.process_batch(item)
    records_after_first = {(r.external_id, r.source, r.title, r.company) for r in repo.list_jobs()}
    second = worker.process_batch(item)
    records_after_second = {(r.external_id, r.source, r.title, r.company) for r in repo.list_jobs()}

    assert (first.new_count, first.updated_count) == (3, 0)
    assert (second.new_count, second.updated_count) == (0, 3)
    assert records_after_first == records_after_second
    # items without a batch index carry no redelivery key
    assert ledger.get_run(run_id).processed == 6


def test_redelivered_dispatched_batch_is_counted_once(tmp_path: Path) -> None:
    _, ledger, worker, run_id = setup(tmp_path, 5)
    first = BatchWorkItem(jobs=[mkjob("a"), mkjob("b"), mkjob("c")], source_key=SOURCE_URL, run_id=run_id, batch_index=0)
    second = BatchWorkItem(jobs=[mkjob("d"), mkjob("e")], source_key=SOURCE_URL, run_id=run_id, batch_index=1)

    worker.process_batch(first)
    worker.process_batch(first)
    assert ledger.get_run(run_id).processed == 3

    worker.process_batch(second)
    run = ledger.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert (run.new_count, run.updated_count) == (5, 0)


def test_exhaustion_after_a_recorded_delivery_is_ignored(tmp_path: Path) -> None:
    _, ledger, worker, run_id = setup(tmp_path, 4)
    item = BatchWorkItem(jobs=[mkjob("a"), mkjob("b")], source_key=SOURCE_URL, run_id=run_id, batch_index=0)
    worker.process_batch(item)
    worker.on_exhausted(item, "InfrastructureError: ack lost")

    run = ledger.get_run(run_id)
    assert (run.new_count, run.failed_count) == (2, 0)
    assert run.status is RunStatus.PROCESSING


def test_upsert_replaces_fields_and_keeps_created_at(tmp_path: Path) -> None:
    repo, _, worker, run_id = setup(tmp_path, 2)
    worker.process_batch(BatchWorkItem(jobs=[mkjob("a", company="Acme")], source_key=SOURCE_URL, run_id=run_id))
    original = repo.list_jobs()[0]
    worker.process_batch(
        BatchWorkItem(jobs=[mkjob("a", title="Senior Support", company="")], source_key=SOURCE_URL, run_id=run_id)
    )
    replaced = repo.list_jobs()[0]

    assert replaced.title == "Senior Support"
    assert replaced.company == ""
    assert replaced.created_at == original.created_at
    assert replaced.updated_at >= original.updated_at


def test_same_external_id_from_another_source_is_a_new_record(tmp_path: Path) -> None:
    repo, _, worker, run_id = setup(tmp_path, 2)
    worker.process_batch(BatchWorkItem(jobs=[mkjob("a")], source_key=SOURCE_URL, run_id=run_id))
    result = worker.process_batch(BatchWorkItem(jobs=[mkjob("a")], source_key="https://other.example.com", run_id=run_id))
    assert result.new_count == 1
    assert len(repo.list_jobs()) == 2


def test_storage_failure_propagates_as_infrastructure_error(tmp_path: Path) -> None:
    repo, ledger, worker, run_id = setup(tmp_path, 1)

    def broken_upsert(job, source):
        raise sqlite3.OperationalError("database is locked")

    repo.upsert_job = broken_upsert  # type: ignore[method-assign]
    with pytest.raises(InfrastructureError):
        worker.process_batch(BatchWorkItem(jobs=[mkjob("a")], source_key=SOURCE_URL, run_id=run_id))
    assert ledger.get_run(run_id).processed == 0


def test_ledger_failure_does_not_fail_the_batch(tmp_path: Path) -> None:
    _, _, worker, _ = setup(tmp_path, 1)
    result = worker.process_batch(BatchWorkItem(jobs=[mkjob("a")], source_key=SOURCE_URL, run_id=9999))
    assert result.new_count == 1


def test_exhausted_batch_counts_every_job_as_failed(tmp_path: Path) -> None:
    _, ledger, worker, run_id = setup(tmp_path, 5)
    worker.process_batch(BatchWorkItem(jobs=[mkjob("a"), mkjob("b")], source_key=SOURCE_URL, run_id=run_id))

    stuck = BatchWorkItem(jobs=[mkjob("c"), mkjob("d"), mkjob("")], source_key=SOURCE_URL, run_id=run_id)
    worker.on_exhausted(stuck, "InfrastructureError: database is locked")

    run = ledger.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert (run.new_count, run.failed_count) == (2, 3)
    assert [f.job_ref for f in run.failure_reasons] == ["c", "d", "unknown"]
    assert {f.reason for f in run.failure_reasons} == {EXHAUSTED_REASON}
    assert run.failure_reasons[0].detail == "InfrastructureError: database is locked"
