import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from models import InstanceStatus
from periods import YearMonth, due_date_in
from schemas import ExpenseInstanceIn, ExpenseInstanceOut
from stores import DuplicateKeyError, ExpenseInstanceStore

logger = logging.getLogger(__name__)


class TemplateLike(Protocol):
    id: int
    name: str
    category: str
    amount_cents: int
    day_of_month: int
    active: bool


class InstanceLike(Protocol):
    template_id: Optional[int]


@dataclass
class CommitReport:
    created: list[ExpenseInstanceOut] = field(default_factory=list)
    already_present: list[ExpenseInstanceIn] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)


def reconcile(
    templates: Iterable[TemplateLike],
    existing_for_month: Iterable[InstanceLike],
    year_month: str,
) -> list[ExpenseInstanceIn]:
    """Plan the instances missing for ``year_month``.

    One pending instance per active template that has none yet. Name, category
    and amount are copied as they are now; later template edits do not touch
    instances that already exist. Nothing is written here.
    """
    target = str(YearMonth.parse(year_month))
    seen = {
        inst.template_id
        for inst in existing_for_month
        if inst.template_id is not None
    }
    plan: list[ExpenseInstanceIn] = []
    for template in templates:
        if not template.active or template.id in seen:
            continue
        seen.add(template.id)
        plan.append(
            ExpenseInstanceIn(
                template_id=template.id,
                year_month=target,
                name=template.name,
                category=template.category,
                amount_cents=template.amount_cents,
                due_date=due_date_in(target, template.day_of_month),
                status=InstanceStatus.pending,
            )
        )
    return plan


async def commit_plan(
    store: ExpenseInstanceStore, plan: Iterable[ExpenseInstanceIn]
) -> CommitReport:
    report = CommitReport()
    for instance in plan:
        try:
            created = await store.create(instance)
        except DuplicateKeyError:
            # Another session got there first.
            logger.info(
                f"instance_exists: template_id={instance.template_id} "
                f"year_month={instance.year_month}"
            )
            report.already_present.append(instance)
            continue
        report.created.append(created)
    return report
