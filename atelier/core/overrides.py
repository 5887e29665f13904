"""
Per-day deltas applied on top of the monthly enrollment counts.

Every map is keyed by ``(day, slot_key)`` where ``day`` is the calendar date of
the occurrence and ``slot_key`` the "professor-dow-start-end" identifier.
Building the index is a pure function of the reschedules and attendance rows
handed in; the ``load_*`` helpers only fetch those rows for a scope.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from atelier.core.errors import store_errors
from atelier.core.slots import date_only, month_end, month_start, slot_key
from atelier.models import (
    AttendanceOrigin, AttendanceRecord, RecordState, RescheduleRequest
)

OverrideKey = Tuple[date, str]


@dataclass
class OverrideIndex:
    moved_out: Counter = field(default_factory=Counter)
    moved_in: Counter = field(default_factory=Counter)
    adhoc_in: Counter = field(default_factory=Counter)
    explicitly_removed: Counter = field(default_factory=Counter)

    def delta(self, key: OverrideKey) -> int:
        return (
            self.moved_in[key]
            + self.adhoc_in[key]
            - self.moved_out[key]
            - self.explicitly_removed[key]
        )

    def superseded(self, key: OverrideKey) -> bool:
        """The base occurrence at ``key`` was moved away or cancelled."""
        return self.moved_out[key] > 0 or self.explicitly_removed[key] > 0


def _in_range(instant: Optional[datetime], start: datetime, end: datetime) -> bool:
    return instant is not None and start <= instant <= end


def build_override_index(
    reschedules: Iterable[RescheduleRequest],
    records: Iterable[AttendanceRecord],
    range_start: datetime,
    range_end: datetime,
    professor_id: Optional[str] = None
) -> OverrideIndex:
    """
    Fold reschedules and attendance rows into the four delta maps.

    Only instants inside ``[range_start, range_end]`` count. With
    ``professor_id`` set, only deltas on that professor's slots are kept:
    a reschedule between two professors is an outflow for one and an inflow
    for the other.
    """
    index = OverrideIndex()

    for r in reschedules:
        if _in_range(r.from_date, range_start, range_end) and r.slot_from:
            if professor_id is None or r.from_professor_id == professor_id:
                key = (date_only(r.from_date), slot_key(r.from_professor_id, r.slot_from_value))
                index.moved_out[key] += 1
        if _in_range(r.to_date, range_start, range_end) and r.slot_to:
            if professor_id is None or r.to_professor_id == professor_id:
                key = (date_only(r.to_date), slot_key(r.to_professor_id, r.slot_to_value))
                index.moved_in[key] += 1

    for record in records:
        if not record.slot_snapshot or not _in_range(record.date, range_start, range_end):
            continue
        if professor_id is not None and record.professor_id != professor_id:
            continue
        key = (date_only(record.date), slot_key(record.professor_id, record.slot))
        if record.origin == AttendanceOrigin.ADHOC:
            if not record.removed:
                index.adhoc_in[key] += 1
        elif record.removed:
            index.explicitly_removed[key] += 1

    return index


def _override_records(db: Session, start: datetime, end: datetime):
    # removed regular rows are cancellations, removed adhoc rows are ignored later
    return db.query(AttendanceRecord).filter(
        AttendanceRecord.date >= start,
        AttendanceRecord.date <= end,
        AttendanceRecord.slot_snapshot.isnot(None),
        or_(
            AttendanceRecord.origin == AttendanceOrigin.ADHOC,
            AttendanceRecord.state == RecordState.REMOVED,
        ),
    )


def _reschedules_touching(db: Session, start: datetime, end: datetime):
    return db.query(RescheduleRequest).filter(
        or_(
            RescheduleRequest.from_date.between(start, end),
            RescheduleRequest.to_date.between(start, end),
        )
    )


def professor_override_rows(db: Session, professor_id: str, year: int, month: int):
    start, end = month_start(year, month), month_end(year, month)
    with store_errors("load professor overrides"):
        reschedules = _reschedules_touching(db, start, end).filter(
            or_(
                RescheduleRequest.from_professor_id == professor_id,
                RescheduleRequest.to_professor_id == professor_id,
            )
        ).all()
        records = _override_records(db, start, end).filter(
            AttendanceRecord.professor_id == professor_id
        ).all()
    return reschedules, records


def load_professor_overrides(db: Session, professor_id: str, year: int, month: int) -> OverrideIndex:
    reschedules, records = professor_override_rows(db, professor_id, year, month)
    return build_override_index(
        reschedules, records, month_start(year, month), month_end(year, month),
        professor_id=professor_id,
    )


def student_override_rows(db: Session, student_id: str, year: int, month: int):
    start, end = month_start(year, month), month_end(year, month)
    with store_errors("load student overrides"):
        reschedules = _reschedules_touching(db, start, end).filter(
            RescheduleRequest.student_id == student_id
        ).all()
        records = _override_records(db, start, end).filter(
            AttendanceRecord.student_id == student_id
        ).all()
    return reschedules, records


def load_student_overrides(db: Session, student_id: str, year: int, month: int) -> OverrideIndex:
    reschedules, records = student_override_rows(db, student_id, year, month)
    return build_override_index(reschedules, records, month_start(year, month), month_end(year, month))
