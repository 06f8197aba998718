import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from jobs import JobQueue, JobWorker
from rate_limit import get_rate_limiter
from recurrence import RecurringEngine, local_now
from services import BudgetEvaluator, MonthlyReporter


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.worker = JobWorker()

    def _scan_recurring(self, source: str = "manual") -> None:
        with session_scope() as session:
            count = RecurringEngine(session).enqueue_due(JobQueue(session))
        logger.info(f"recurring_scan: source={source} queued={count}")

    def _drain_jobs(self) -> None:
        processed = self.worker.run_pending()
        if processed:
            logger.info(f"job_drain: processed={processed}")

    def _check_budgets(self) -> None:
        with session_scope() as session:
            alerts = BudgetEvaluator(session).run()
        logger.info(f"budget_scan: alerts_queued={alerts}")

    def _monthly_reports(self) -> None:
        with session_scope() as session:
            MonthlyReporter(session).run()

    def _housekeeping(self) -> None:
        cutoff = local_now() - timedelta(days=get_settings().job_retention_days)
        with session_scope() as session:
            jobs_pruned = JobQueue(session).prune_finished(cutoff)
        buckets_pruned = get_rate_limiter().prune()
        logger.info(
            f"housekeeping: jobs_pruned={jobs_pruned} buckets_pruned={buckets_pruned}"
        )

    def start(self) -> None:
        self._scan_recurring("startup")

        self.scheduler.add_job(
            self._scan_recurring,
            CronTrigger(hour=0, minute=0),
            args=["daily_00:00"],
            id="recurring_scan",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._drain_jobs,
            IntervalTrigger(minutes=1),
            id="job_worker",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._check_budgets,
            CronTrigger(hour="*/6", minute=0),
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._monthly_reports,
            CronTrigger(day=1, hour=6, minute=0),
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )
        self.scheduler.add_job(
            self._housekeeping,
            IntervalTrigger(hours=1),
            id="housekeeping",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily recurrence scan and job worker")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
