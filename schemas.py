from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import InstanceStatus


class RecurringTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category: str = Field(..., min_length=1, max_length=60)
    amount_cents: int = Field(..., ge=0)
    day_of_month: int = Field(..., ge=1, le=31)
    active: bool = True


class RecurringTemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    name: str
    category: str
    amount_cents: int = Field(..., ge=0)
    day_of_month: int = Field(..., ge=1, le=31)
    active: bool = True


class ExpenseInstanceIn(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: Optional[int]
    year_month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    name: str
    category: str
    amount_cents: int = Field(..., ge=0)
    due_date: date
    status: InstanceStatus = InstanceStatus.pending


class ExpenseInstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    template_id: Optional[int] = None
    year_month: str
    name: str
    category: str
    amount_cents: int
    due_date: date
    status: InstanceStatus = InstanceStatus.pending
    paid_at: Optional[datetime] = None
