"""Best-effort payment reminders.

``NotificationSystem`` is created once per process and owns the lifecycle
Uninitialized -> Initializing -> Ready | Failed. Nothing in here raises into the
caller: when the delivery channel cannot be set up the system stays Failed and
the rest of the application carries on without reminders.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger

from clock import Clock, SystemClock
from config import get_settings
from models import InstanceStatus

logger = logging.getLogger(__name__)


class NotificationInitError(RuntimeError):
    pass


class NotificationState(str, Enum):
    uninitialized = "uninitialized"
    initializing = "initializing"
    ready = "ready"
    failed = "failed"


@dataclass(frozen=True)
class RegistrationResult:
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def ready(cls) -> "RegistrationResult":
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> "RegistrationResult":
        return cls(ok=False, reason=reason)


class NotificationChannel(ABC):
    @abstractmethod
    async def register(self) -> RegistrationResult:
        """Check delivery capability and set the channel up."""

    @abstractmethod
    async def schedule(self, reminder_id: str, when_due: datetime, message: str) -> None:
        """Schedule (or replace) the reminder stored under ``reminder_id``."""

    @abstractmethod
    async def cancel(self, reminder_id: str) -> None:
        """Drop the reminder stored under ``reminder_id`` if there is one."""


class DueInstance(Protocol):
    id: int
    name: str
    due_date: date
    status: InstanceStatus


@dataclass(frozen=True)
class NotificationStats:
    overdue_count: int = 0
    due_today_count: int = 0
    due_soon_count: int = 0
    total_pending: int = 0


def reminder_id_for(instance_id: int) -> str:
    return f"instance-{instance_id}"


def check_due_items(
    instances: Iterable[DueInstance], today: date, lookahead_days: int = 3
) -> NotificationStats:
    horizon = today + timedelta(days=lookahead_days)
    overdue = due_today = due_soon = pending = 0
    for inst in instances:
        if inst.status != InstanceStatus.pending:
            continue
        pending += 1
        if inst.due_date < today:
            overdue += 1
        elif inst.due_date == today:
            due_today += 1
        elif inst.due_date <= horizon:
            due_soon += 1
    return NotificationStats(
        overdue_count=overdue,
        due_today_count=due_today,
        due_soon_count=due_soon,
        total_pending=pending,
    )


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def notification_message(stats: NotificationStats) -> Optional[str]:
    if stats.overdue_count:
        n = stats.overdue_count
        return f"You have {n} overdue {_plural(n, 'payment', 'payments')}"
    if stats.due_today_count:
        n = stats.due_today_count
        return f"You have {n} {_plural(n, 'payment', 'payments')} due today"
    if stats.due_soon_count:
        n = stats.due_soon_count
        return f"You have {n} {_plural(n, 'payment', 'payments')} coming up"
    return None


def reminder_message(instance: DueInstance, today: date) -> str:
    days = (instance.due_date - today).days
    if days < 0:
        return f"{instance.name} is overdue (due {instance.due_date.isoformat()})"
    if days == 0:
        return f"{instance.name} is due today"
    return f"{instance.name} is due in {days} {_plural(days, 'day', 'days')}"


class NotificationSystem:
    def __init__(
        self,
        channel: NotificationChannel,
        clock: Optional[Clock] = None,
        lookahead_days: Optional[int] = None,
        reminder_hour: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.channel = channel
        self.clock = clock or SystemClock()
        self.lookahead_days = (
            settings.reminder_lookahead_days if lookahead_days is None else lookahead_days
        )
        self.reminder_hour = (
            settings.reminder_hour if reminder_hour is None else reminder_hour
        )
        self.state = NotificationState.uninitialized
        self.failure_reason: Optional[str] = None
        self._scheduled: dict[str, datetime] = {}

    @property
    def notifications_initialized(self) -> bool:
        return self.state == NotificationState.ready

    @property
    def scheduled_ids(self) -> list[str]:
        return sorted(self._scheduled)

    async def initialize(self) -> None:
        if self.state in (NotificationState.ready, NotificationState.initializing):
            return
        # Set before the first await so concurrent callers see the latch.
        self.state = NotificationState.initializing
        try:
            result = await self.channel.register()
        except Exception as exc:
            self._fail(str(exc) or exc.__class__.__name__)
            return
        if not result.ok:
            self._fail(result.reason or "registration refused")
            return
        self.state = NotificationState.ready
        self.failure_reason = None
        logger.info("notifications_ready")

    def _fail(self, reason: str) -> None:
        self.state = NotificationState.failed
        self.failure_reason = reason
        logger.warning(f"notifications_failed: reason={reason}")

    def stats(self, instances: Iterable[DueInstance]) -> NotificationStats:
        return check_due_items(
            instances, self.clock.now().date(), lookahead_days=self.lookahead_days
        )

    async def schedule_reminders(self, instances: Iterable[DueInstance]) -> int:
        """Sync reminders with the full set of pending instances.

        Pending instances due within the lookahead window, or already overdue,
        get a reminder keyed by instance id. Reminders whose instance has been
        paid or has left the set are cancelled.
        """
        if self.state != NotificationState.ready:
            logger.debug(f"reminders_skipped: state={self.state.value}")
            return 0

        now = self.clock.now()
        today = now.date()
        horizon = today + timedelta(days=self.lookahead_days)
        eligible: dict[str, tuple[datetime, str]] = {}
        for inst in instances:
            if inst.status != InstanceStatus.pending or inst.due_date > horizon:
                continue
            when_due = datetime.combine(
                inst.due_date, time(hour=self.reminder_hour), tzinfo=now.tzinfo
            )
            eligible[reminder_id_for(inst.id)] = (
                when_due,
                reminder_message(inst, today),
            )

        scheduled = 0
        for reminder_id, (when_due, message) in eligible.items():
            if self._scheduled.get(reminder_id) == when_due:
                continue
            try:
                await self.channel.schedule(reminder_id, when_due, message)
            except Exception as exc:
                logger.warning(f"reminder_schedule_failed: id={reminder_id} error={exc}")
                continue
            self._scheduled[reminder_id] = when_due
            scheduled += 1

        for reminder_id in [rid for rid in self._scheduled if rid not in eligible]:
            try:
                await self.channel.cancel(reminder_id)
            except Exception as exc:
                logger.warning(f"reminder_cancel_failed: id={reminder_id} error={exc}")
                continue
            del self._scheduled[reminder_id]

        if scheduled:
            logger.info(f"reminders_scheduled: count={scheduled}")
        return scheduled


class SchedulerNotificationChannel(NotificationChannel):
    """Delivers reminders as one-shot jobs on an APScheduler scheduler."""

    def __init__(
        self,
        scheduler: BaseScheduler,
        clock: Optional[Clock] = None,
        enabled: Optional[bool] = None,
        on_deliver: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.enabled = enabled
        self.on_deliver = on_deliver

    @staticmethod
    def job_id(reminder_id: str) -> str:
        return f"reminder:{reminder_id}"

    async def register(self) -> RegistrationResult:
        enabled = (
            get_settings().notifications_enabled if self.enabled is None else self.enabled
        )
        if not enabled:
            return RegistrationResult.failed("notifications disabled")
        if not self.scheduler.running:
            try:
                self.scheduler.start()
            except Exception as exc:
                raise NotificationInitError(
                    f"background scheduler unavailable: {exc}"
                ) from exc
        return RegistrationResult.ready()

    async def schedule(self, reminder_id: str, when_due: datetime, message: str) -> None:
        now = self.clock.now()
        run_date = when_due if when_due > now else now
        self.scheduler.add_job(
            self._deliver,
            DateTrigger(run_date=run_date),
            args=[reminder_id, message],
            id=self.job_id(reminder_id),
            replace_existing=True,
            misfire_grace_time=3600,
        )

    async def cancel(self, reminder_id: str) -> None:
        try:
            self.scheduler.remove_job(self.job_id(reminder_id))
        except JobLookupError:
            logger.debug(f"reminder_not_found: id={reminder_id}")

    def _deliver(self, reminder_id: str, message: str) -> None:
        logger.info(f"reminder_delivered: id={reminder_id} message={message}")
        if self.on_deliver is not None:
            self.on_deliver(reminder_id, message)
