from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class InstanceStatus(str, Enum):
    pending = "pending"
    paid = "paid"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class RecurringTemplate(Base, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(60), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    instances: Mapped[list["ExpenseInstance"]] = relationship(
        "ExpenseInstance", back_populates="template"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        CheckConstraint(
            "day_of_month BETWEEN 1 AND 31", name="ck_template_day_of_month"
        ),
        Index("ix_recurring_templates_user_active", "user_id", "active"),
    )


class ExpenseInstance(Base, TimestampMixin):
    __tablename__ = "expense_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_templates.id")
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(60), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[InstanceStatus] = mapped_column(
        SAEnum(InstanceStatus), nullable=False, default=InstanceStatus.pending
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    template: Mapped[Optional["RecurringTemplate"]] = relationship(
        "RecurringTemplate", back_populates="instances"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "template_id",
            "year_month",
            name="uq_instance_template_month",
        ),
        Index("ix_expense_instances_user_month", "user_id", "year_month"),
        Index("ix_expense_instances_user_status", "user_id", "status"),
        CheckConstraint("amount_cents >= 0", name="ck_instance_amount_positive"),
    )
