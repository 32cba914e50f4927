from __future__ import annotations

import threading

from jobimport.core.coordinator import SweepReport
from jobimport.core.scheduler import SweepScheduler


class FakeCoordinator:
    def __init__(self) -> None:
        self.sweeps = 0
        self.swept = threading.Event()

    def request_sweep(self) -> SweepReport:
        self.sweeps += 1
        self.swept.set()
        return SweepReport(completed=[self.sweeps])


def test_start_registers_cron_job_and_sweeps_once() -> None:
    coordinator = FakeCoordinator()
    scheduler = SweepScheduler(coordinator, cron="0 * * * *", sweep_on_start=True)
    scheduler.start()
    try:
        assert coordinator.swept.wait(5)
        job = scheduler.scheduler.get_job("sweep")
        assert job is not None
        assert job.next_run_time.minute == 0
    finally:
        scheduler.shutdown()
    assert not scheduler.scheduler.running


def test_trigger_now_runs_the_same_entry_point() -> None:
    coordinator = FakeCoordinator()
    scheduler = SweepScheduler(coordinator, sweep_on_start=False)
    report = scheduler.trigger_now()
    assert report is not None and report.completed == [1]
    assert coordinator.sweeps == 1
