from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import FrozenSet, List, Optional
import calendar

from atelier.core.slots import Slot, at_minute, day_of_week


@dataclass(frozen=True)
class ExpansionPolicy:
    """
    How many weekly occurrences a slot yields inside one month.

    Every weekday except the uncapped ones stops after ``weekday_cap``
    occurrences even when a fifth date still falls inside the month.
    Sundays (0) are never capped.
    """
    weekday_cap: Optional[int] = 4
    uncapped_days: FrozenSet[int] = field(default_factory=lambda: frozenset({0}))

    def limit_for(self, dow: int) -> Optional[int]:
        if dow in self.uncapped_days:
            return None
        return self.weekday_cap


DEFAULT_POLICY = ExpansionPolicy()


@dataclass(frozen=True)
class OccurrenceWindow:
    start: datetime
    end: datetime

    @property
    def day(self) -> date:
        return self.start.date()


def dates_for_weekday_in_month(
    year: int,
    month: int,
    dow: int,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> List[date]:
    """
    All dates of the month falling on ``dow`` (0=Sunday), honouring the policy cap.

    Logic:
    1. Find the first day of the month with that weekday
    2. Step by 7 days until the month ends or the cap is reached
    """
    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])
    offset = (dow - day_of_week(first) + 7) % 7
    current = first + timedelta(days=offset)

    limit = policy.limit_for(dow)
    result: List[date] = []
    while current <= last:
        result.append(current)
        if limit is not None and len(result) >= limit:
            break
        current += timedelta(days=7)
    return result


def expand_slot(
    slot: Slot,
    year: int,
    month: int,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> List[OccurrenceWindow]:
    """Concrete start/end instants of a weekly slot inside one month, ascending."""
    return [
        OccurrenceWindow(
            start=at_minute(day, slot.start_minute),
            end=at_minute(day, slot.end_minute),
        )
        for day in dates_for_weekday_in_month(year, month, slot.day_of_week, policy)
    ]
