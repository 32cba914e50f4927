from __future__ import annotations

import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from jobimport.core.coordinator import SourceCoordinator, SweepReport

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Fires coordinator sweeps on a cron cadence and on demand."""

    def __init__(self, coordinator: SourceCoordinator, cron: str = "0 * * * *", sweep_on_start: bool = True) -> None:
        self.coordinator = coordinator
        self.cron = cron
        self.sweep_on_start = sweep_on_start
        self.scheduler = BackgroundScheduler(job_defaults={"max_instances": 1, "coalesce": True})

    def start(self) -> None:
        self.scheduler.add_job(
            self.coordinator.request_sweep,
            CronTrigger.from_crontab(self.cron),
            id="sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("scheduler_started", extra={"extra_fields": {"cron": self.cron}})
        if self.sweep_on_start:
            threading.Thread(target=self.coordinator.request_sweep, name="initial-sweep", daemon=True).start()

    def trigger_now(self) -> SweepReport | None:
        return self.coordinator.request_sweep()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
