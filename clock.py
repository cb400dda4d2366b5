from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from config import get_settings


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def __init__(self, tz_name: Optional[str] = None) -> None:
        self.tz = ZoneInfo(tz_name or get_settings().timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock:
    """Clock pinned to a settable instant. Naive instants are treated as UTC."""

    def __init__(self, instant: datetime) -> None:
        self._instant = _aware(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = _aware(instant)

    def advance(self, **kwargs: float) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant


def _aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant
