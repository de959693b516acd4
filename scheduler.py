import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from reconciler import prune_events, resync_every_user


logger = logging.getLogger(__name__)


class SchedulerManager:
    """Nightly job: rebuild drifted ``spent`` values and prune stale event rows."""

    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            corrected = resync_every_user(session)
            pruned = prune_events(session)
        logger.info(
            f"scheduler_run: source={source} budgets_corrected={corrected} "
            f"events_pruned={pruned}"
        )
        return corrected

    def start(self) -> None:
        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="budget_resync_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 budget resync")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
