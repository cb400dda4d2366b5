import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from auto_scheduler import AutoSchedulerRunner
from clock import Clock, SystemClock
from config import get_settings
from notifications import NotificationSystem, SchedulerNotificationChannel
from rollover import RolloverResult
from services import get_current_user_id
from stores import SqlExpenseInstanceStore, SqlRecurringTemplateStore, StoreUnavailable


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        notifications: Optional[NotificationSystem] = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock or SystemClock(settings.timezone)
        self.scheduler = AsyncIOScheduler(timezone=settings.timezone)
        self.notifications = notifications or NotificationSystem(
            SchedulerNotificationChannel(self.scheduler, clock=self.clock),
            clock=self.clock,
        )
        self._runners: dict[int, AutoSchedulerRunner] = {}

    def runner_for(self, user_id: Optional[int] = None) -> AutoSchedulerRunner:
        user_id = user_id or get_current_user_id()
        runner = self._runners.get(user_id)
        if runner is None:
            runner = AutoSchedulerRunner(
                SqlRecurringTemplateStore(self.session_factory, user_id=user_id),
                SqlExpenseInstanceStore(self.session_factory, user_id=user_id),
                clock=self.clock,
            )
            self._runners[user_id] = runner
        return runner

    async def _run_job(
        self, source: str = "manual", user_id: Optional[int] = None
    ) -> Optional[RolloverResult]:
        logger.info(f"scheduler_run: source={source}")
        runner = self.runner_for(user_id)
        try:
            result = await runner.run()
            pending = await runner.instances.list_pending()
        except StoreUnavailable as exc:
            logger.warning(f"scheduler_run: source={source} store_unavailable={exc}")
            return None
        reminders = await self.notifications.schedule_reminders(pending)
        logger.info(
            f"scheduler_run: source={source} year_month={result.year_month} "
            f"is_new_month={result.is_new_month} reminders={reminders}"
        )
        return result

    async def start(self) -> None:
        await self.notifications.initialize()
        await self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.settings.scheduler_interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="recurring_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            "Scheduler started with "
            f"{self.settings.scheduler_interval_minutes}-minute reconciliation"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
