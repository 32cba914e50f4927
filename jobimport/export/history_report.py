from __future__ import annotations

from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Font

from jobimport.core.models import ImportRun

RUN_COLUMNS = [
    "Run ID",
    "Source",
    "Feed URL",
    "Started",
    "Finished",
    "Status",
    "Fetched",
    "Imported",
    "New",
    "Updated",
    "Failed",
    "Processing ms",
]
FAILURE_COLUMNS = ["Run ID", "Job", "Reason", "Detail"]

RUN_WIDTHS = [8, 24, 60, 32, 32, 12, 9, 9, 9, 9, 9, 14]
FAILURE_WIDTHS = [8, 40, 28, 60]


class HistoryExport:
    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, runs: list[ImportRun]) -> int:
        wb = Workbook()
        runs_ws = wb.active
        runs_ws.title = "Runs"
        self._header(runs_ws, RUN_COLUMNS, RUN_WIDTHS)
        failures_ws = wb.create_sheet("Failures")
        self._header(failures_ws, FAILURE_COLUMNS, FAILURE_WIDTHS)

        for run in runs:
            runs_ws.append(
                [
                    run.id,
                    run.source_name,
                    run.source_url,
                    run.started_at,
                    run.finished_at or "",
                    run.status.value,
                    run.total_fetched if run.total_fetched is not None else "",
                    run.total_imported,
                    run.new_count,
                    run.updated_count,
                    run.failed_count,
                    run.processing_time_ms if run.processing_time_ms is not None else "",
                ]
            )
            link_cell = runs_ws.cell(runs_ws.max_row, 3)
            link_cell.hyperlink = run.source_url
            link_cell.style = "Hyperlink"
            for failure in run.failure_reasons:
                failures_ws.append([run.id, failure.job_ref, failure.reason, failure.detail])

        wb.save(self.path)
        return len(runs)

    @staticmethod
    def _header(ws, columns: list[str], widths: list[int]) -> None:
        ws.append(columns)
        ws.freeze_panes = "A2"
        ws.auto_filter.ref = f"A1:{chr(64 + len(columns))}1"
        for idx, width in enumerate(widths, start=1):
            ws.cell(1, idx).font = Font(bold=True)
            ws.column_dimensions[chr(64 + idx)].width = width
