from __future__ import annotations

from datetime import timezone
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from clock import Clock, SystemClock
from models import ExpenseInstance, InstanceStatus, RecurringTemplate
from periods import YearMonth
from schemas import RecurringTemplateIn


def get_current_user_id() -> int:
    return 1


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, template_id: int) -> RecurringTemplate:
        template = self.session.get(RecurringTemplate, template_id)
        if not template or template.user_id != self.user_id:
            raise ValueError("Template not found")
        return template

    def list(self, include_inactive: bool = True) -> list[RecurringTemplate]:
        stmt = select(RecurringTemplate).where(
            RecurringTemplate.user_id == self.user_id
        )
        if not include_inactive:
            stmt = stmt.where(RecurringTemplate.active.is_(True))
        stmt = stmt.order_by(RecurringTemplate.day_of_month, RecurringTemplate.id)
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringTemplateIn) -> RecurringTemplate:
        template = RecurringTemplate(
            user_id=self.user_id,
            name=data.name.strip(),
            category=data.category.strip(),
            amount_cents=data.amount_cents,
            day_of_month=data.day_of_month,
            active=data.active,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def update(self, template_id: int, data: RecurringTemplateIn) -> RecurringTemplate:
        # Instances already generated keep the values they were created with.
        template = self.get(template_id)
        template.name = data.name.strip()
        template.category = data.category.strip()
        template.amount_cents = data.amount_cents
        template.day_of_month = data.day_of_month
        template.active = data.active
        self.session.commit()
        self.session.refresh(template)
        return template

    def toggle_active(self, template_id: int, active: bool) -> None:
        template = self.get(template_id)
        template.active = active
        self.session.commit()

    def delete(self, template_id: int) -> dict[str, int]:
        """Remove a template along with its unpaid instances.

        Paid instances are history: they stay, detached from the template.
        """
        template = self.get(template_id)
        removed = self.session.execute(
            delete(ExpenseInstance).where(
                ExpenseInstance.user_id == self.user_id,
                ExpenseInstance.template_id == template.id,
                ExpenseInstance.status == InstanceStatus.pending,
            )
        ).rowcount
        detached = self.session.execute(
            update(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == self.user_id,
                ExpenseInstance.template_id == template.id,
            )
            .values(template_id=None)
        ).rowcount
        self.session.delete(template)
        self.session.commit()
        return {"removed_pending": removed, "kept_paid": detached}

    def get_statistics(self) -> dict[str, object]:
        templates = self.list()
        active = [t for t in templates if t.active]
        monthly_total = sum(t.amount_cents for t in active)

        by_category: dict[str, int] = {}
        for template in active:
            by_category[template.category] = (
                by_category.get(template.category, 0) + template.amount_cents
            )
        breakdown = [
            {
                "category": name,
                "amount_cents": amount,
                "percent": (amount / monthly_total * 100) if monthly_total > 0 else 0,
            }
            for name, amount in sorted(
                by_category.items(), key=lambda x: x[1], reverse=True
            )
        ]

        status_counts = dict(
            self.session.execute(
                select(ExpenseInstance.status, func.count(ExpenseInstance.id))
                .where(
                    ExpenseInstance.user_id == self.user_id,
                    ExpenseInstance.template_id.is_not(None),
                )
                .group_by(ExpenseInstance.status)
            ).all()
        )

        return {
            "total_templates": len(templates),
            "active_templates": len(active),
            "monthly_total_cents": monthly_total,
            "category_breakdown": breakdown,
            "instance_counts": {
                "pending": int(status_counts.get(InstanceStatus.pending, 0)),
                "paid": int(status_counts.get(InstanceStatus.paid, 0)),
            },
        }


class ExpenseInstanceService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.clock = clock or SystemClock()

    def get(self, instance_id: int) -> ExpenseInstance:
        instance = self.session.get(ExpenseInstance, instance_id)
        if not instance or instance.user_id != self.user_id:
            raise ValueError("Instance not found")
        return instance

    def list_for_month(self, year_month: str) -> list[ExpenseInstance]:
        target = str(YearMonth.parse(year_month))
        stmt = (
            select(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == self.user_id,
                ExpenseInstance.year_month == target,
            )
            .order_by(ExpenseInstance.due_date, ExpenseInstance.id)
        )
        return self.session.scalars(stmt).all()

    def mark_paid(self, instance_id: int) -> ExpenseInstance:
        instance = self.get(instance_id)
        if instance.status == InstanceStatus.paid:
            return instance
        paid_at = self.clock.now().astimezone(timezone.utc).replace(tzinfo=None)
        instance.status = InstanceStatus.paid
        instance.paid_at = paid_at
        self.session.commit()
        self.session.refresh(instance)
        return instance

    def available_months(self) -> list[str]:
        """Months holding at least one paid instance, newest first."""
        stmt = (
            select(ExpenseInstance.year_month)
            .where(
                ExpenseInstance.user_id == self.user_id,
                ExpenseInstance.status == InstanceStatus.paid,
            )
            .distinct()
            .order_by(ExpenseInstance.year_month.desc())
        )
        return list(self.session.scalars(stmt).all())
