from __future__ import annotations

import json
import logging
from pathlib import Path

import httpx
from openpyxl import load_workbook

from jobimport.core.app import build_pipeline
from jobimport.core.cli import main
from jobimport.core.models import RunStatus
from jobimport.export.history_report import RUN_COLUMNS, HistoryExport
from jobimport.sources.normalizer import FeedNormalizer
from jobimport.utils.config import build_config

JSON_FEED = "https://api.example.com/jobs"
RSS_FEED = "https://rss.example.com/feed"
DEAD_FEED = "https://dead.example.com/feed"


def make_config(tmp_path: Path) -> dict:
    return build_config(
        {
            "database_path": str(tmp_path / "jobs.db"),
            "log_dir": str(tmp_path / "logs"),
            "history_export_path": str(tmp_path / "history.xlsx"),
            "import": {"batch_size": 100, "worker_concurrency": 2, "source_fan_out": 3},
            "queue": {"path": str(tmp_path / "queue.db"), "max_attempts": 2, "backoff_seconds": 0, "poll_interval_seconds": 0.01},
            "schedule": {"cron": "0 * * * *", "sweep_on_start": False},
            "sources": [{"url": JSON_FEED}, {"url": RSS_FEED}, {"url": DEAD_FEED}],
        },
        environ={},
    )


def json_jobs(n: int, missing_title: frozenset[int] = frozenset()) -> str:
    jobs = []
    for i in range(n):
        entry = {"id": f"api-{i}", "title": f"Engineer {i}", "company": "Acme"}
        if i in missing_title:
            del entry["title"]
        jobs.append(entry)
    return json.dumps({"jobs": jobs})


RSS_BODY = """<rss version="2.0"><channel>
<item><title>Librarian</title><link>https://rss.example.com/1</link><guid>r1</guid></item>
<item><title>Registrar</title><link>https://rss.example.com/2</link></item>
</channel></rss>"""


def make_transport(bodies: dict[str, str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url not in bodies:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text=bodies[url])

    return httpx.MockTransport(handler)


def test_sweep_imports_feeds_and_closes_runs(tmp_path: Path) -> None:
    config = make_config(tmp_path)
    transport = make_transport({JSON_FEED: json_jobs(250, missing_title={10, 120, 249}), RSS_FEED: RSS_BODY})
    pipeline = build_pipeline(config, normalizer=FeedNormalizer(transport=transport))
    try:
        pipeline.coordinator.seed_sources(config["sources"])
        report = pipeline.scheduler.trigger_now()
        pipeline.pool.drain(max_wait_seconds=10)

        runs = {run.source_url: run for run in pipeline.repository.list_runs()}
        assert sorted(report.runs) == sorted(run.id for run in runs.values())

        api = runs[JSON_FEED]
        assert api.status is RunStatus.COMPLETED
        assert (api.total_fetched, api.new_count, api.updated_count, api.failed_count) == (250, 247, 0, 3)
        assert {f.reason for f in api.failure_reasons} == {"Missing title"}

        rss = runs[RSS_FEED]
        assert rss.status is RunStatus.COMPLETED
        assert rss.new_count == 2

        dead = runs[DEAD_FEED]
        assert dead.status is RunStatus.FAILED
        assert len(dead.failure_reasons) == 1

        assert len(pipeline.repository.list_jobs(source=JSON_FEED)) == 247
        assert pipeline.queue.counts() == {"done": 4}
    finally:
        pipeline.close()


def test_second_sweep_classifies_existing_jobs_as_updated(tmp_path: Path) -> None:
    config = make_config(tmp_path)
    transport = make_transport({JSON_FEED: json_jobs(5), RSS_FEED: RSS_BODY})
    pipeline = build_pipeline(config, normalizer=FeedNormalizer(transport=transport))
    try:
        pipeline.coordinator.seed_sources(config["sources"])
        pipeline.coordinator.request_sweep()
        pipeline.pool.drain(max_wait_seconds=10)
        second = pipeline.coordinator.request_sweep()
        pipeline.pool.drain(max_wait_seconds=10)

        latest = [pipeline.repository.get_run(run_id) for run_id in second.dispatched]
        by_url = {run.source_url: run for run in latest}
        assert (by_url[JSON_FEED].new_count, by_url[JSON_FEED].updated_count) == (0, 5)
        assert by_url[RSS_FEED].updated_count == 2
        assert len(pipeline.repository.list_jobs()) == 7
        assert pipeline.repository.run_summary()["total_imports"] == 6
    finally:
        pipeline.close()


def test_history_export_writes_runs_and_failures(tmp_path: Path) -> None:
    config = make_config(tmp_path)
    transport = make_transport({JSON_FEED: json_jobs(4, missing_title={0}), RSS_FEED: RSS_BODY})
    pipeline = build_pipeline(config, normalizer=FeedNormalizer(transport=transport))
    try:
        pipeline.coordinator.seed_sources(config["sources"])
        pipeline.coordinator.request_sweep()
        pipeline.pool.drain(max_wait_seconds=10)
        exported = HistoryExport(config["history_export_path"]).write(pipeline.repository.list_runs())
    finally:
        pipeline.close()

    assert exported == 3
    wb = load_workbook(config["history_export_path"])
    runs_ws = wb["Runs"]
    assert [runs_ws.cell(1, i).value for i in range(1, len(RUN_COLUMNS) + 1)] == RUN_COLUMNS
    statuses = sorted(runs_ws.cell(row, 6).value for row in range(2, runs_ws.max_row + 1))
    assert statuses == ["completed", "completed", "failed"]
    reasons = [wb["Failures"].cell(row, 3).value for row in range(2, wb["Failures"].max_row + 1)]
    assert sorted(reasons) == ["Missing title", "Source fetch failed"]


def test_cli_seed_and_runs(tmp_path: Path, capsys) -> None:
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        f"""
database_path: {tmp_path / "jobs.db"}
log_dir: {tmp_path / "logs"}
queue:
  path: {tmp_path / "queue.db"}
sources:
  - url: https://jobicy.com/?feed=job_feed
  - url: https://www.higheredjobs.com/rss/articleFeed.cfm
""",
        encoding="utf-8",
    )
    root_handlers = logging.getLogger().handlers[:]
    try:
        main(["--config", str(cfg), "seed"])
        assert "Sources added: 2" in capsys.readouterr().out

        main(["--config", str(cfg), "runs"])
        assert "total_imports" in capsys.readouterr().out
    finally:
        logging.getLogger().handlers = root_handlers
