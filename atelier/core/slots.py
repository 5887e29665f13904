"""
Weekly slot value type and the calendar helpers shared by the engine.

Day-of-week numbering follows the stored data: 0 = Sunday ... 6 = Saturday.
Python's ``date.weekday()`` counts Monday as 0, so always go through
``day_of_week()`` instead of calling it directly.
"""
import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True, order=True)
class Slot:
    day_of_week: int
    start_minute: int
    end_minute: int

    def validate(self) -> Optional[str]:
        """Return an error message, or None when the slot is well formed."""
        if not 0 <= self.day_of_week <= 6:
            return "day_of_week must be between 0 (Sunday) and 6 (Saturday)"
        if not 0 <= self.start_minute < MINUTES_PER_DAY:
            return "start_minute out of range"
        if not 0 < self.end_minute <= MINUTES_PER_DAY:
            return "end_minute out of range"
        if self.start_minute >= self.end_minute:
            return "start_minute must be before end_minute"
        return None

    def overlaps(self, other: "Slot") -> bool:
        return (
            self.day_of_week == other.day_of_week
            and self.start_minute < other.end_minute
            and other.start_minute < self.end_minute
        )

    def to_dict(self) -> dict:
        return {
            "day_of_week": self.day_of_week,
            "start_minute": self.start_minute,
            "end_minute": self.end_minute,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        return cls(
            int(data["day_of_week"]),
            int(data["start_minute"]),
            int(data["end_minute"]),
        )

    @property
    def label(self) -> str:
        return f"{DAY_NAMES[self.day_of_week]} {min_to_hhmm(self.start_minute)}-{min_to_hhmm(self.end_minute)}"


DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def slot_key(professor_id: str, slot: Slot) -> str:
    """Stable "professor-dow-start-end" identifier of a professor's slot."""
    return f"{professor_id}-{slot.day_of_week}-{slot.start_minute}-{slot.end_minute}"


def parse_slot_key(key: str) -> Tuple[str, Slot]:
    # professor ids are uuids and contain dashes themselves
    parts = str(key).rsplit("-", 3)
    if len(parts) != 4 or not parts[0]:
        raise ValueError(f"Malformed slot key: {key!r}")
    professor_id, dow, start, end = parts
    slot = Slot(int(dow), int(start), int(end))
    error = slot.validate()
    if error:
        raise ValueError(error)
    return professor_id, slot


def min_to_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def day_of_week(day: date) -> int:
    return (day.weekday() + 1) % 7


def date_only(instant: datetime) -> date:
    if isinstance(instant, datetime):
        return instant.date()
    return instant


def at_minute(day: date, minutes: int) -> datetime:
    return datetime.combine(day, time()) + timedelta(minutes=minutes)


def month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1)


def month_end(year: int, month: int) -> datetime:
    """Last representable instant of the month (inclusive upper bound)."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, last_day, 23, 59, 59, 999999)


def utc_now() -> datetime:
    """Current instant in the naive stored clock."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
