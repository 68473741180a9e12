import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from errors import LedgerError
from recurrence import MaterializationScope
from services import LedgerService
from store import LedgerStore


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self, store: LedgerStore, scheduler: Optional[BackgroundScheduler] = None
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.ledger = LedgerService(store)
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        try:
            result = self.ledger.run_recurring_materialization(
                MaterializationScope.all_users()
            )
        except LedgerError as exc:
            # The next trigger re-evaluates which rules are still due.
            logger.error(f"scheduler_run: source={source} failed error={exc}")
            return 0
        logger.info(
            f"scheduler_run: source={source}"
            f" transactions_created={result.transactions_created}"
        )
        return result.transactions_created

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.scheduler_hour, minute=self.settings.scheduler_minute
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily"
            f" {self.settings.scheduler_hour:02d}:{self.settings.scheduler_minute:02d}"
            " and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
