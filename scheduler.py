import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from budgets import BudgetAlerts
from config import get_settings
from database import session_scope
from periods import local_today


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Re-evaluates every active budget as days pass.

    Approved expenses dated in the future only enter a budget window once
    their date arrives, so no lifecycle event would raise those alerts.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        today = local_today()
        logger.info(f"scheduler_run: source={source} as_of={today}")
        with session_scope() as session:
            raised = BudgetAlerts(session).check_all(today)
        logger.info(f"scheduler_run: source={source} alerts_raised={raised}")
        return raised

    def start(self) -> None:
        self._run_job("startup")

        hour = self.settings.alert_sweep_hour
        minute = self.settings.alert_sweep_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="budget_alerts_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="budget_alerts_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {hour:02d}:{minute:02d} and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
