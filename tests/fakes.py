import asyncio
from collections import Counter
from typing import Iterable, Optional

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base, build_engine, make_session_factory
from models import InstanceStatus
from notifications import NotificationChannel, RegistrationResult
from schemas import ExpenseInstanceIn, ExpenseInstanceOut, RecurringTemplateOut
from stores import (
    DuplicateKeyError,
    ExpenseInstanceStore,
    RecurringTemplateStore,
    StoreUnavailable,
)


def memory_session_factory() -> sessionmaker:
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return make_session_factory(engine)


class InMemoryTemplateStore(RecurringTemplateStore):
    def __init__(self, templates: Iterable[RecurringTemplateOut] = ()) -> None:
        self.templates = list(templates)
        self.calls: Counter = Counter()
        self.unavailable = False

    async def list_active(self) -> list[RecurringTemplateOut]:
        self.calls["list_active"] += 1
        await asyncio.sleep(0)
        if self.unavailable:
            raise StoreUnavailable("offline")
        return [t for t in self.templates if t.active]


class InMemoryInstanceStore(ExpenseInstanceStore):
    """Enforces the (template_id, year_month) key the way a real store would.

    ``raced_templates`` simulates another session creating the row between our
    read and our write: the row appears and the create reports a duplicate.
    ``gate`` holds ``list_for_month`` until released.
    """

    def __init__(self, instances: Iterable[ExpenseInstanceOut] = ()) -> None:
        self.rows = list(instances)
        self.calls: Counter = Counter()
        self.fail_on: set[str] = set()
        self.raced_templates: set[int] = set()
        self.gate: Optional[asyncio.Event] = None
        self._next_id = max((r.id for r in self.rows), default=0) + 1

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        await asyncio.sleep(0)
        if name in self.fail_on:
            raise StoreUnavailable(f"{name} offline")

    async def list_for_month(self, year_month: str) -> list[ExpenseInstanceOut]:
        await self._enter("list_for_month")
        if self.gate is not None:
            await self.gate.wait()
        return [r for r in self.rows if r.year_month == year_month]

    async def list_all(self) -> list[ExpenseInstanceOut]:
        await self._enter("list_all")
        return list(self.rows)

    async def list_pending(self) -> list[ExpenseInstanceOut]:
        await self._enter("list_pending")
        return [r for r in self.rows if r.status == InstanceStatus.pending]

    async def create(self, instance: ExpenseInstanceIn) -> ExpenseInstanceOut:
        await self._enter("create")
        if instance.template_id in self.raced_templates:
            self.raced_templates.discard(instance.template_id)
            self._insert(instance)
            raise DuplicateKeyError(instance.template_id, instance.year_month)
        for row in self.rows:
            if (
                instance.template_id is not None
                and row.template_id == instance.template_id
                and row.year_month == instance.year_month
            ):
                raise DuplicateKeyError(instance.template_id, instance.year_month)
        return self._insert(instance)

    async def bulk_set_status(self, year_month: str, status: InstanceStatus) -> int:
        await self._enter("bulk_set_status")
        updated = 0
        for i, row in enumerate(self.rows):
            if row.year_month == year_month and row.status != status:
                paid_at = None if status == InstanceStatus.pending else row.paid_at
                self.rows[i] = row.model_copy(
                    update={"status": status, "paid_at": paid_at}
                )
                updated += 1
        return updated

    def _insert(self, instance: ExpenseInstanceIn) -> ExpenseInstanceOut:
        row = ExpenseInstanceOut(id=self._next_id, **instance.model_dump())
        self._next_id += 1
        self.rows.append(row)
        return row

    def for_key(self, template_id: int, year_month: str) -> list[ExpenseInstanceOut]:
        return [
            r
            for r in self.rows
            if r.template_id == template_id and r.year_month == year_month
        ]


class RecordingChannel(NotificationChannel):
    def __init__(
        self, result: Optional[RegistrationResult] = None, error: Optional[Exception] = None
    ) -> None:
        self.result = result or RegistrationResult.ready()
        self.error = error
        self.register_calls = 0
        self.scheduled: dict[str, tuple] = {}
        self.schedule_calls: list[str] = []
        self.cancelled: list[str] = []

    async def register(self) -> RegistrationResult:
        self.register_calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result

    async def schedule(self, reminder_id, when_due, message) -> None:
        self.schedule_calls.append(reminder_id)
        self.scheduled[reminder_id] = (when_due, message)

    async def cancel(self, reminder_id) -> None:
        self.cancelled.append(reminder_id)
        self.scheduled.pop(reminder_id, None)
