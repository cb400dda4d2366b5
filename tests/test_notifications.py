import asyncio
from datetime import date, datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from clock import FixedClock
from models import InstanceStatus
from notifications import (
    NotificationInitError,
    NotificationState,
    NotificationStats,
    NotificationSystem,
    RegistrationResult,
    SchedulerNotificationChannel,
    check_due_items,
    notification_message,
)
from schemas import ExpenseInstanceOut
from tests.fakes import RecordingChannel


def _clock() -> FixedClock:
    return FixedClock(datetime(2025, 10, 5, 8, 0, tzinfo=timezone.utc))


def _instance(
    instance_id: int, due: date, status: InstanceStatus = InstanceStatus.pending
) -> ExpenseInstanceOut:
    return ExpenseInstanceOut(
        id=instance_id,
        template_id=instance_id,
        year_month=f"{due.year:04d}-{due.month:02d}",
        name=f"Item {instance_id}",
        category="servicios",
        amount_cents=1000,
        due_date=due,
        status=status,
    )


def _system(channel=None) -> NotificationSystem:
    return NotificationSystem(
        channel or RecordingChannel(),
        clock=_clock(),
        lookahead_days=3,
        reminder_hour=9,
    )


def _ready(system: NotificationSystem) -> NotificationSystem:
    asyncio.run(system.initialize())
    assert system.state == NotificationState.ready
    return system


def test_concurrent_initialize_registers_once():
    channel = RecordingChannel()
    system = _system(channel)

    async def scenario():
        await asyncio.gather(
            system.initialize(), system.initialize(), system.initialize()
        )

    asyncio.run(scenario())
    asyncio.run(system.initialize())

    assert channel.register_calls == 1
    assert system.state == NotificationState.ready
    assert system.notifications_initialized is True


def test_refused_registration_marks_failed_without_raising():
    channel = RecordingChannel(result=RegistrationResult.failed("permission denied"))
    system = _system(channel)

    asyncio.run(system.initialize())

    assert system.state == NotificationState.failed
    assert system.failure_reason == "permission denied"
    assert system.notifications_initialized is False
    assert asyncio.run(system.schedule_reminders([_instance(1, date(2025, 10, 1))])) == 0
    assert channel.scheduled == {}


def test_registration_error_is_recovered_and_retried():
    channel = RecordingChannel(error=NotificationInitError("no background channel"))
    system = _system(channel)

    asyncio.run(system.initialize())
    assert system.state == NotificationState.failed
    assert system.failure_reason == "no background channel"

    channel.error = None
    asyncio.run(system.initialize())
    assert system.state == NotificationState.ready
    assert channel.register_calls == 2


def test_schedules_overdue_and_upcoming_pending_instances():
    channel = RecordingChannel()
    system = _ready(_system(channel))
    instances = [
        _instance(1, date(2025, 10, 1)),
        _instance(2, date(2025, 10, 5)),
        _instance(3, date(2025, 10, 8)),
        _instance(4, date(2025, 10, 20)),
        _instance(5, date(2025, 10, 2), status=InstanceStatus.paid),
    ]

    count = asyncio.run(system.schedule_reminders(instances))

    assert count == 3
    assert sorted(channel.scheduled) == ["instance-1", "instance-2", "instance-3"]
    when_due, message = channel.scheduled["instance-3"]
    assert when_due == datetime(2025, 10, 8, 9, 0, tzinfo=timezone.utc)
    assert message == "Item 3 is due in 3 days"
    assert channel.scheduled["instance-1"][1].startswith("Item 1 is overdue")


def test_rescheduling_same_instances_does_not_duplicate():
    channel = RecordingChannel()
    system = _ready(_system(channel))
    instances = [_instance(1, date(2025, 10, 1)), _instance(2, date(2025, 10, 6))]

    asyncio.run(system.schedule_reminders(instances))
    again = asyncio.run(system.schedule_reminders(instances))

    assert again == 0
    assert channel.schedule_calls == ["instance-1", "instance-2"]


def test_paid_instance_reminder_is_cancelled():
    channel = RecordingChannel()
    system = _ready(_system(channel))
    pending = _instance(1, date(2025, 10, 4))
    asyncio.run(system.schedule_reminders([pending]))

    paid = pending.model_copy(update={"status": InstanceStatus.paid})
    asyncio.run(system.schedule_reminders([paid]))

    assert channel.cancelled == ["instance-1"]
    assert system.scheduled_ids == []


def test_check_due_items_and_message():
    today = date(2025, 10, 5)
    instances = [
        _instance(1, date(2025, 10, 1)),
        _instance(2, date(2025, 10, 5)),
        _instance(3, date(2025, 10, 5)),
        _instance(4, date(2025, 10, 7)),
        _instance(5, date(2025, 11, 1)),
        _instance(6, date(2025, 10, 1), status=InstanceStatus.paid),
    ]

    stats = check_due_items(instances, today, lookahead_days=3)

    assert stats == NotificationStats(
        overdue_count=1, due_today_count=2, due_soon_count=1, total_pending=5
    )
    assert notification_message(stats) == "You have 1 overdue payment"
    assert (
        notification_message(NotificationStats(due_today_count=2, total_pending=2))
        == "You have 2 payments due today"
    )
    assert notification_message(NotificationStats()) is None


def test_scheduler_channel_replaces_jobs_by_reminder_id():
    delivered = []

    async def scenario():
        scheduler = AsyncIOScheduler(timezone="UTC")
        channel = SchedulerNotificationChannel(
            scheduler,
            clock=_clock(),
            enabled=True,
            on_deliver=lambda rid, msg: delivered.append(rid),
        )
        try:
            result = await channel.register()
            assert result.ok
            assert scheduler.running

            far_future = datetime(2099, 1, 1, 9, 0, tzinfo=timezone.utc)
            await channel.schedule("instance-1", far_future, "Rent is due")
            await channel.schedule("instance-1", far_future, "Rent is due today")
            jobs = scheduler.get_jobs()
            assert [job.id for job in jobs] == ["reminder:instance-1"]
            assert tuple(jobs[0].args) == ("instance-1", "Rent is due today")

            await channel.cancel("instance-1")
            await channel.cancel("instance-1")
            assert scheduler.get_jobs() == []
        finally:
            scheduler.shutdown(wait=False)

    asyncio.run(scenario())
    assert delivered == []


def test_scheduler_channel_refuses_when_disabled():
    scheduler = AsyncIOScheduler(timezone="UTC")
    channel = SchedulerNotificationChannel(scheduler, enabled=False)

    result = asyncio.run(channel.register())

    assert result == RegistrationResult.failed("notifications disabled")
    assert not scheduler.running
