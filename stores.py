"""Storage contracts used by the auto-scheduler and their SQL implementations.

The scheduler only ever talks to the abstract stores, so tests can hand it
in-memory fakes and the HTTP layer can hand it the SQL-backed ones. The SQL
stores run each call in a worker thread so a slow database never stalls the
event loop, and they return detached pydantic snapshots instead of ORM rows.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from database import session_scope
from models import ExpenseInstance, InstanceStatus, RecurringTemplate
from schemas import ExpenseInstanceIn, ExpenseInstanceOut, RecurringTemplateOut

logger = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """The backing store could not be reached. Transient; retry later."""


class DuplicateKeyError(ValueError):
    def __init__(self, template_id: Optional[int], year_month: str) -> None:
        super().__init__(
            f"Instance already exists for template {template_id} in {year_month}"
        )
        self.template_id = template_id
        self.year_month = year_month


class RecurringTemplateStore(ABC):
    @abstractmethod
    async def list_active(self) -> list[RecurringTemplateOut]:
        """
        Return every template with ``active`` set.

        Raises:
            StoreUnavailable: If the store cannot be reached
        """


class ExpenseInstanceStore(ABC):
    @abstractmethod
    async def list_for_month(self, year_month: str) -> list[ExpenseInstanceOut]:
        """Return the instances belonging to ``year_month`` (``YYYY-MM``)."""

    @abstractmethod
    async def list_all(self) -> list[ExpenseInstanceOut]:
        """Return every instance visible to the user, across all months."""

    @abstractmethod
    async def list_pending(self) -> list[ExpenseInstanceOut]:
        """Return every instance still waiting to be paid."""

    @abstractmethod
    async def create(self, instance: ExpenseInstanceIn) -> ExpenseInstanceOut:
        """
        Persist a new instance.

        Raises:
            DuplicateKeyError: If ``(template_id, year_month)`` already exists
            StoreUnavailable: If the store cannot be reached
        """

    @abstractmethod
    async def bulk_set_status(self, year_month: str, status: InstanceStatus) -> int:
        """Move every instance of ``year_month`` to ``status``; return rows changed."""


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return (
        "UNIQUE constraint failed" in message
        or "uq_instance_template_month" in message
        or "duplicate key" in message
    )


@contextmanager
def _translate_store_errors(
    key: Optional[tuple[Optional[int], str]] = None,
) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        if key is not None and _is_unique_violation(exc):
            raise DuplicateKeyError(*key) from exc
        raise
    except (OperationalError, DisconnectionError) as exc:
        logger.warning(f"store_unavailable: error={exc}")
        raise StoreUnavailable(str(exc)) from exc


class SqlRecurringTemplateStore(RecurringTemplateStore):
    def __init__(
        self, session_factory: Optional[sessionmaker] = None, user_id: int = 1
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id

    async def list_active(self) -> list[RecurringTemplateOut]:
        return await asyncio.to_thread(self._list_active)

    def _list_active(self) -> list[RecurringTemplateOut]:
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.user_id == self.user_id,
                RecurringTemplate.active.is_(True),
            )
            .order_by(RecurringTemplate.day_of_month, RecurringTemplate.id)
        )
        with _translate_store_errors(), session_scope(self.session_factory) as session:
            return [
                RecurringTemplateOut.model_validate(row)
                for row in session.scalars(stmt)
            ]


class SqlExpenseInstanceStore(ExpenseInstanceStore):
    def __init__(
        self, session_factory: Optional[sessionmaker] = None, user_id: int = 1
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id

    async def list_for_month(self, year_month: str) -> list[ExpenseInstanceOut]:
        return await asyncio.to_thread(
            self._select, ExpenseInstance.year_month == year_month
        )

    async def list_all(self) -> list[ExpenseInstanceOut]:
        return await asyncio.to_thread(self._select)

    async def list_pending(self) -> list[ExpenseInstanceOut]:
        return await asyncio.to_thread(
            self._select, ExpenseInstance.status == InstanceStatus.pending
        )

    async def create(self, instance: ExpenseInstanceIn) -> ExpenseInstanceOut:
        return await asyncio.to_thread(self._create, instance)

    async def bulk_set_status(self, year_month: str, status: InstanceStatus) -> int:
        return await asyncio.to_thread(self._bulk_set_status, year_month, status)

    def _select(self, *criteria) -> list[ExpenseInstanceOut]:
        stmt = (
            select(ExpenseInstance)
            .where(ExpenseInstance.user_id == self.user_id, *criteria)
            .order_by(
                ExpenseInstance.year_month,
                ExpenseInstance.due_date,
                ExpenseInstance.id,
            )
        )
        with _translate_store_errors(), session_scope(self.session_factory) as session:
            return [
                ExpenseInstanceOut.model_validate(row) for row in session.scalars(stmt)
            ]

    def _create(self, instance: ExpenseInstanceIn) -> ExpenseInstanceOut:
        key = (instance.template_id, instance.year_month)
        with _translate_store_errors(key), session_scope(
            self.session_factory
        ) as session:
            row = ExpenseInstance(user_id=self.user_id, **instance.model_dump())
            session.add(row)
            session.flush()
            return ExpenseInstanceOut.model_validate(row)

    def _bulk_set_status(self, year_month: str, status: InstanceStatus) -> int:
        if status == InstanceStatus.paid:
            values = {"status": status, "paid_at": datetime.utcnow()}
        else:
            values = {"status": status, "paid_at": None}
        stmt = (
            update(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == self.user_id,
                ExpenseInstance.year_month == year_month,
                ExpenseInstance.status != status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with _translate_store_errors(), session_scope(self.session_factory) as session:
            result = session.execute(stmt)
            return int(result.rowcount or 0)
