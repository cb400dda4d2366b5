import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Union

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True, order=True)
class YearMonth:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @classmethod
    def parse(cls, value: str) -> "YearMonth":
        match = _YEAR_MONTH_RE.match(value.strip())
        if not match:
            raise ValueError(f"Expected YYYY-MM, got {value!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def of(cls, moment: Union[date, datetime]) -> "YearMonth":
        return cls(moment.year, moment.month)

    def add_months(self, count: int) -> "YearMonth":
        total = self.year * 12 + (self.month - 1) + count
        return YearMonth(total // 12, total % 12 + 1)

    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def last_day(self) -> date:
        return date(self.year, self.month, days_in_month(self.year, self.month))


def year_month_of(moment: Union[date, datetime]) -> str:
    return str(YearMonth.of(moment))


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamp_day(year: int, month: int, day: int) -> int:
    if day < 1:
        raise ValueError(f"Invalid day of month: {day}")
    return min(day, days_in_month(year, month))


def due_date_in(year_month: Union[str, YearMonth], day_of_month: int) -> date:
    """Due date of a monthly item; days past the month end snap to its last day."""
    ym = YearMonth.parse(year_month) if isinstance(year_month, str) else year_month
    return date(ym.year, ym.month, clamp_day(ym.year, ym.month, day_of_month))
