import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from web_sessions import SessionRegistry


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, registry: SessionRegistry) -> None:
        settings = get_settings()
        self.registry = registry
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        removed = self.registry.sweep_idle()
        logger.info(
            f"scheduler_run: source={source} sessions_removed={removed} "
            f"sessions_active={len(self.registry)}"
        )
        return removed

    def start(self) -> None:
        trigger = IntervalTrigger(minutes=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["idle_session_sweep"],
            id="idle_session_sweep",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with 15 minute idle session sweep")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
