from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Protocol, Union

from models import InstanceStatus
from periods import year_month_of


class PaymentRecord(Protocol):
    year_month: str
    status: InstanceStatus
    amount_cents: int


@dataclass(frozen=True)
class MonthTotals:
    total_paid: int = 0
    total_pending: int = 0
    total_expenses: int = 0


@dataclass(frozen=True)
class RolloverResult:
    year_month: str
    is_new_month: bool
    totals: MonthTotals = field(default_factory=MonthTotals)
    lagging_months: tuple[str, ...] = ()


def detect_month_rollover(
    now: Union[date, datetime], instances: Iterable[PaymentRecord]
) -> RolloverResult:
    """Decide whether a reset prompt is due and total the current month.

    A paid record from any month other than the current one means the user has
    not rolled over yet. ``lagging_months`` lists those months so callers can
    tell a single missed rollover from several.
    """
    current = year_month_of(now)
    paid = 0
    pending = 0
    lagging: set[str] = set()
    for record in instances:
        if record.year_month != current:
            if record.status == InstanceStatus.paid:
                lagging.add(record.year_month)
            continue
        if record.status == InstanceStatus.paid:
            paid += record.amount_cents
        else:
            pending += record.amount_cents
    return RolloverResult(
        year_month=current,
        is_new_month=bool(lagging),
        totals=MonthTotals(
            total_paid=paid, total_pending=pending, total_expenses=paid + pending
        ),
        lagging_months=tuple(sorted(lagging)),
    )
