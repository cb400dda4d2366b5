import asyncio
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import session_scope
from models import ExpenseInstance, InstanceStatus, RecurringTemplate
from schemas import ExpenseInstanceIn
from stores import (
    DuplicateKeyError,
    SqlExpenseInstanceStore,
    SqlRecurringTemplateStore,
    StoreUnavailable,
)
from tests.fakes import memory_session_factory


def _planned(template_id, year_month="2025-10", name="Rent") -> ExpenseInstanceIn:
    return ExpenseInstanceIn(
        template_id=template_id,
        year_month=year_month,
        name=name,
        category="hogar",
        amount_cents=1000,
        due_date=date.fromisoformat(f"{year_month}-01"),
    )


def test_list_active_filters_by_user_and_flag():
    factory = memory_session_factory()
    with session_scope(factory) as session:
        session.add_all(
            [
                RecurringTemplate(
                    name="Rent", category="hogar", amount_cents=1000, day_of_month=1
                ),
                RecurringTemplate(
                    name="Paused",
                    category="otros",
                    amount_cents=200,
                    day_of_month=3,
                    active=False,
                ),
                RecurringTemplate(
                    user_id=2,
                    name="Someone else",
                    category="otros",
                    amount_cents=200,
                    day_of_month=3,
                ),
            ]
        )

    templates = asyncio.run(SqlRecurringTemplateStore(factory).list_active())

    assert [t.name for t in templates] == ["Rent"]


def test_create_rejects_second_instance_for_same_template_and_month():
    factory = memory_session_factory()
    with session_scope(factory) as session:
        session.add(
            RecurringTemplate(
                name="Rent", category="hogar", amount_cents=1000, day_of_month=1
            )
        )
    store = SqlExpenseInstanceStore(factory)

    created = asyncio.run(store.create(_planned(1)))
    with pytest.raises(DuplicateKeyError) as excinfo:
        asyncio.run(store.create(_planned(1)))

    assert created.status == InstanceStatus.pending
    assert excinfo.value.template_id == 1
    assert excinfo.value.year_month == "2025-10"
    assert len(asyncio.run(store.list_for_month("2025-10"))) == 1
    asyncio.run(store.create(_planned(1, year_month="2025-11")))
    assert len(asyncio.run(store.list_all())) == 2


def test_ad_hoc_instances_are_not_keyed():
    store = SqlExpenseInstanceStore(memory_session_factory())

    asyncio.run(store.create(_planned(None, name="Plumber")))
    asyncio.run(store.create(_planned(None, name="Locksmith")))

    assert len(asyncio.run(store.list_for_month("2025-10"))) == 2


def test_bulk_set_status_resets_only_the_given_month():
    factory = memory_session_factory()
    with session_scope(factory) as session:
        template = RecurringTemplate(
            name="Rent", category="hogar", amount_cents=1000, day_of_month=1
        )
        session.add(template)
        session.flush()
        for year_month, status in [
            ("2025-09", InstanceStatus.paid),
            ("2025-10", InstanceStatus.paid),
        ]:
            session.add(
                ExpenseInstance(
                    template_id=template.id,
                    year_month=year_month,
                    name="Rent",
                    category="hogar",
                    amount_cents=1000,
                    due_date=date.fromisoformat(f"{year_month}-01"),
                    status=status,
                    paid_at=datetime(2025, 10, 1, 12, 0),
                )
            )
        session.add(
            ExpenseInstance(
                template_id=None,
                year_month="2025-10",
                name="Plumber",
                category="hogar",
                amount_cents=500,
                due_date=date(2025, 10, 3),
                status=InstanceStatus.pending,
            )
        )
    store = SqlExpenseInstanceStore(factory)

    updated = asyncio.run(store.bulk_set_status("2025-10", InstanceStatus.pending))

    assert updated == 1
    october = asyncio.run(store.list_for_month("2025-10"))
    assert {i.status for i in october} == {InstanceStatus.pending}
    assert all(i.paid_at is None for i in october)
    september = asyncio.run(store.list_for_month("2025-09"))
    assert september[0].status == InstanceStatus.paid
    assert [i.name for i in asyncio.run(store.list_pending())] == ["Rent", "Plumber"]


def test_database_errors_surface_as_store_unavailable():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    factory = sessionmaker(bind=engine)

    with pytest.raises(StoreUnavailable):
        asyncio.run(SqlRecurringTemplateStore(factory).list_active())
    with pytest.raises(StoreUnavailable):
        asyncio.run(SqlExpenseInstanceStore(factory).list_for_month("2025-10"))
