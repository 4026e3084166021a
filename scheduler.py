import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from delivery import warn_if_log_only
from executor import ScheduledReportExecutor


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            executor = ScheduledReportExecutor(session, settings=self.settings)
            executions = executor.run_due(
                budget_seconds=self.settings.report_run_budget_secs
            )
            failed = sum(1 for e in executions if e.status.value == "failed")
            logger.info(
                f"scheduler_run: source={source} executed={len(executions)} failed={failed}"
            )

    def start(self) -> None:
        warn_if_log_only(self.settings)
        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.settings.report_poll_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="scheduled_reports",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with report discovery every "
            f"{self.settings.report_poll_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
