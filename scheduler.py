import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from insights import InsightService, default_insight_generator
from jobs import BudgetMonitor, MonthlyReportGenerator, RecurringSweep
from notifications import Mailer, SmtpMailer


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        *,
        mailer: Optional[Mailer] = None,
        insight_service: Optional[InsightService] = None,
        session_factory=None,
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        mailer = mailer or SmtpMailer(settings)
        insight_service = insight_service or InsightService(default_insight_generator())
        self.recurring = RecurringSweep(session_factory=session_factory)
        self.budgets = BudgetMonitor(mailer, session_factory=session_factory)
        self.reports = MonthlyReportGenerator(
            mailer, insight_service, session_factory=session_factory
        )
        self.jobs: dict[str, Callable[[], object]] = {
            "recurring": self._run_recurring,
            "budget_alerts": self._run_budget_alerts,
            "monthly_reports": self._run_monthly_reports,
        }

    def _run_recurring(self, source: str = "manual"):
        logger.info(f"scheduler_run: job=recurring source={source}")
        report = self.recurring.run()
        logger.info(
            f"scheduler_run: job=recurring source={source}"
            f" processed={len(report.succeeded)} failed={len(report.failed)}"
        )
        return report

    def _run_budget_alerts(self, source: str = "manual"):
        logger.info(f"scheduler_run: job=budget_alerts source={source}")
        return self.budgets.run()

    def _run_monthly_reports(self, source: str = "manual"):
        logger.info(f"scheduler_run: job=monthly_reports source={source}")
        return self.reports.run()

    def run_job(self, name: str):
        try:
            job = self.jobs[name]
        except KeyError:
            raise ValueError(f"Unknown job: {name}") from None
        return job()

    def start(self) -> None:
        self._run_recurring("startup")

        self.scheduler.add_job(
            self._run_recurring,
            CronTrigger(hour=0, minute=0),
            args=["daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._run_budget_alerts,
            CronTrigger(hour="*/6", minute=0),
            args=["every_6h"],
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=1800,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._run_monthly_reports,
            CronTrigger(day=1, hour=0, minute=0),
            args=["monthly"],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily recurring sweep, 6-hourly budget check"
            " and monthly reports"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
