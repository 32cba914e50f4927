from __future__ import annotations

import argparse
import threading

from jobimport.core.app import Pipeline, build_pipeline
from jobimport.core.models import RunStatus
from jobimport.export.history_report import HistoryExport
from jobimport.utils.config import load_config
from jobimport.utils.logging_utils import setup_logging


def _print_runs(pipeline: Pipeline, run_ids: list[int]) -> None:
    for run_id in run_ids:
        run = pipeline.ledger.get_run(run_id)
        print(
            f"#{run.id} {run.source_name}: status={run.status.value} fetched={run.total_fetched} "
            f"new={run.new_count} updated={run.updated_count} failed={run.failed_count}"
        )


def serve(pipeline: Pipeline) -> None:
    pipeline.coordinator.seed_sources(pipeline.config["sources"])
    pipeline.queue.recover_stale(pipeline.config["queue"]["stale_after_seconds"])
    pipeline.pool.start()
    pipeline.scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("Shutting down")


def sweep(pipeline: Pipeline) -> None:
    pipeline.coordinator.seed_sources(pipeline.config["sources"])
    report = pipeline.scheduler.trigger_now()
    if report is None:
        print("A sweep is already running")
        return
    pipeline.pool.drain()
    _print_runs(pipeline, report.runs)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Harvest job feeds into the local job store")
    parser.add_argument("--config", default="config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="seed sources, start workers and the hourly scheduler")
    sub.add_parser("sweep", help="run one sweep now and process its batches")
    sub.add_parser("seed", help="ensure configured sources exist")
    runs_parser = sub.add_parser("runs", help="list recent import runs")
    runs_parser.add_argument("--limit", type=int, default=20)
    runs_parser.add_argument("--status", choices=[s.value for s in RunStatus])
    sub.add_parser("export-history", help="write the import history workbook")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config["log_dir"], config["log_level"])
    pipeline = build_pipeline(config)
    try:
        if args.command == "serve":
            serve(pipeline)
        elif args.command == "sweep":
            sweep(pipeline)
        elif args.command == "seed":
            added = pipeline.coordinator.seed_sources(config["sources"])
            print(f"Sources added: {added}")
        elif args.command == "runs":
            status = RunStatus(args.status) if args.status else None
            runs = pipeline.repository.list_runs(limit=args.limit, status=status)
            _print_runs(pipeline, [run.id for run in runs])
            print("Totals:", pipeline.repository.run_summary())
        elif args.command == "export-history":
            exported = HistoryExport(config["history_export_path"]).write(pipeline.repository.list_runs())
            print(f"Exported {exported} runs to {config['history_export_path']}")
    finally:
        pipeline.close()


if __name__ == "__main__":
    main()
