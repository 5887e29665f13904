"""
Occurrence resolution: the concrete classes of a month with live occupancy.

Occupancy of one occurrence::

    taken = max(0, base - moved_out + moved_in + adhoc_in - explicitly_removed)
    capacity_left = max(0, capacity - taken)

``base`` is the number of active, assigned enrollments holding the slot for
the month; the other terms come from the override index for that day.

When several candidates describe the same (day, slot key) only the one with
the highest ``OccurrenceOrigin`` survives. In the student view, base
occurrences that were moved away or explicitly cancelled are dropped before
that merge. The professor view keeps them: the seat freed by one student does
not remove the class for everybody else.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.core.disabled_classes import disabled_keys
from atelier.core.errors import store_errors
from atelier.core.expander import DEFAULT_POLICY, ExpansionPolicy, expand_slot
from atelier.core.overrides import (
    OverrideIndex, build_override_index, load_professor_overrides, student_override_rows
)
from atelier.core.records import active_records
from atelier.core.schedule_store import find_for_month
from atelier.core.slots import (
    Slot, at_minute, date_only, month_end, month_start, parse_slot_key, slot_key
)
from atelier.models import (
    AdhocSession, AttendanceOrigin, AttendanceRecord, Enrollment, EnrollmentSlot,
    EnrollmentState, RecordState, User, WeeklyScheduleVersion
)

logger = logging.getLogger(__name__)

AVAILABLE = "available"
FULL = "full"


class OccurrenceOrigin(IntEnum):
    BASE = 1
    ADHOC = 2
    RESCHEDULE_IN = 3

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


def taken_for_day(base: int, overrides: OverrideIndex, key) -> int:
    return max(0, base + overrides.delta(key))


def capacity_left(capacity: int, taken: int) -> int:
    return max(0, capacity - taken)


def occupancy_status(left: int) -> str:
    return AVAILABLE if left > 0 else FULL


@dataclass
class Occurrence:
    start: datetime
    end: datetime
    professor_id: str
    slot: Slot
    origin: OccurrenceOrigin
    capacity: int = 0
    taken: int = 0
    enrollment_id: Optional[str] = None
    reschedule_id: Optional[str] = None
    adhoc_session_id: Optional[str] = None
    attendance_id: Optional[str] = None
    attendance_status: Optional[str] = None
    disabled: bool = False

    @property
    def day(self) -> date:
        return self.start.date()

    @property
    def slot_key(self) -> str:
        return slot_key(self.professor_id, self.slot)

    @property
    def key(self):
        return self.day, self.slot_key

    @property
    def capacity_left(self) -> int:
        return capacity_left(self.capacity, self.taken)

    @property
    def status(self) -> str:
        return occupancy_status(self.capacity_left)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "title": self.slot.label,
            "professor_id": self.professor_id,
            "slot_key": self.slot_key,
            "day_of_week": self.slot.day_of_week,
            "origin": self.origin.label,
            "capacity": self.capacity,
            "taken": self.taken,
            "capacity_left": self.capacity_left,
            "status": self.status,
            "enrollment_id": self.enrollment_id,
            "reschedule_id": self.reschedule_id,
            "adhoc_session_id": self.adhoc_session_id,
            "attendance_id": self.attendance_id,
            "attendance_status": self.attendance_status,
            "disabled": self.disabled,
        }


def merge_occurrences(
    candidates: Iterable[Occurrence],
    overrides: Optional[OverrideIndex] = None
) -> List[Occurrence]:
    """
    Keep one occurrence per (day, slot key), the highest origin winning.

    With ``overrides`` given, base candidates superseded by a reschedule or an
    explicit cancellation are discarded first.
    """
    by_key: Dict = {}
    for occurrence in candidates:
        if (
            overrides is not None
            and occurrence.origin == OccurrenceOrigin.BASE
            and overrides.superseded(occurrence.key)
        ):
            continue
        current = by_key.get(occurrence.key)
        if current is None or occurrence.origin > current.origin:
            by_key[occurrence.key] = occurrence
    return sorted(by_key.values(), key=lambda o: (o.start, o.slot_key))


def professor_capacity(db: Session, professor_id: str) -> int:
    with store_errors("load professor capacity"):
        capacity = db.query(User.capacity).filter(User.id == professor_id).scalar()
    if capacity is None:
        capacity = settings.DEFAULT_PROFESSOR_CAPACITY
    return max(1, int(capacity))


def base_occupancy(
    db: Session,
    professor_id: str,
    year: int,
    month: int,
    exclude_enrollment_id: Optional[str] = None
) -> Counter:
    """Active, assigned enrollments per slot key for the month, independent of day."""
    with store_errors("count base occupancy"):
        query = db.query(
            EnrollmentSlot.day_of_week,
            EnrollmentSlot.start_minute,
            EnrollmentSlot.end_minute,
            func.count(EnrollmentSlot.id),
        ).join(Enrollment, Enrollment.id == EnrollmentSlot.enrollment_id).filter(
            Enrollment.professor_id == professor_id,
            Enrollment.year == year,
            Enrollment.month == month,
            Enrollment.state == EnrollmentState.ACTIVE,
            Enrollment.assigned.is_(True),
        )
        if exclude_enrollment_id:
            query = query.filter(Enrollment.id != exclude_enrollment_id)
        rows = query.group_by(
            EnrollmentSlot.day_of_week,
            EnrollmentSlot.start_minute,
            EnrollmentSlot.end_minute,
        ).all()

    counts = Counter()
    for dow, start, end, total in rows:
        counts[slot_key(professor_id, Slot(dow, start, end))] = total
    return counts


def adhoc_sessions_for_month(db: Session, professor_id: str, year: int, month: int) -> List[AdhocSession]:
    with store_errors("load adhoc sessions"):
        return db.query(AdhocSession).filter(
            AdhocSession.professor_id == professor_id,
            AdhocSession.state == RecordState.ACTIVE,
            AdhocSession.date >= month_start(year, month).date(),
            AdhocSession.date <= month_end(year, month).date(),
        ).order_by(AdhocSession.date, AdhocSession.start_minute).all()


def session_taken(db: Session, sessions: List[AdhocSession]) -> Dict[str, int]:
    """Seats used per session: linked live attendance, or the participant list when longer."""
    if not sessions:
        return {}
    with store_errors("count adhoc participants"):
        rows = active_records(db).with_entities(
            AttendanceRecord.adhoc_session_id, func.count(AttendanceRecord.id)
        ).filter(
            AttendanceRecord.adhoc_session_id.in_([s.id for s in sessions])
        ).group_by(AttendanceRecord.adhoc_session_id).all()
    linked = dict(rows)
    return {
        s.id: max(linked.get(s.id, 0), len(s.participants or []))
        for s in sessions
    }


@dataclass
class ProfessorMonthView:
    """Everything needed to price any occurrence of one professor in one month."""
    professor_id: str
    year: int
    month: int
    capacity: int
    version: Optional[WeeklyScheduleVersion]
    base: Counter
    overrides: OverrideIndex
    sessions: List[AdhocSession] = field(default_factory=list)
    sessions_taken: Dict[str, int] = field(default_factory=dict)
    disabled: Set = field(default_factory=set)

    def taken(self, day: date, slot: Slot) -> int:
        key = slot_key(self.professor_id, slot)
        return taken_for_day(self.base[key], self.overrides, (day, key))

    def capacity_left(self, day: date, slot: Slot) -> int:
        return capacity_left(self.capacity, self.taken(day, slot))

    def session(self, session_id: str) -> Optional[AdhocSession]:
        for s in self.sessions:
            if s.id == session_id:
                return s
        return None

    def price(self, occurrence: Occurrence) -> Occurrence:
        session = self.session(occurrence.adhoc_session_id) if occurrence.adhoc_session_id else None
        if session is not None:
            occurrence.capacity = session.capacity
            occurrence.taken = self.sessions_taken.get(session.id, 0)
        else:
            occurrence.capacity = self.capacity
            occurrence.taken = self.taken(occurrence.day, occurrence.slot)
        occurrence.disabled = occurrence.key in self.disabled
        return occurrence


def load_professor_view(
    db: Session,
    professor_id: str,
    year: int,
    month: int,
    exclude_enrollment_id: Optional[str] = None
) -> ProfessorMonthView:
    sessions = adhoc_sessions_for_month(db, professor_id, year, month)
    return ProfessorMonthView(
        professor_id=professor_id,
        year=year,
        month=month,
        capacity=professor_capacity(db, professor_id),
        version=find_for_month(db, professor_id, year, month),
        base=base_occupancy(db, professor_id, year, month, exclude_enrollment_id),
        overrides=load_professor_overrides(db, professor_id, year, month),
        sessions=sessions,
        sessions_taken=session_taken(db, sessions),
        disabled=disabled_keys(db, professor_id, year, month),
    )


def professor_candidates(
    view: ProfessorMonthView,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> List[Occurrence]:
    candidates: List[Occurrence] = []

    for slot in view.version.slot_values():
        for window in expand_slot(slot, view.year, view.month, policy):
            candidates.append(Occurrence(
                start=window.start,
                end=window.end,
                professor_id=view.professor_id,
                slot=slot,
                origin=OccurrenceOrigin.BASE,
            ))

    for (day, key), count in view.overrides.moved_in.items():
        if count <= 0:
            continue
        _, slot = parse_slot_key(key)
        candidates.append(Occurrence(
            start=at_minute(day, slot.start_minute),
            end=at_minute(day, slot.end_minute),
            professor_id=view.professor_id,
            slot=slot,
            origin=OccurrenceOrigin.RESCHEDULE_IN,
        ))

    for session in view.sessions:
        candidates.append(Occurrence(
            start=at_minute(session.date, session.start_minute),
            end=at_minute(session.date, session.end_minute),
            professor_id=view.professor_id,
            slot=session.slot,
            origin=OccurrenceOrigin.ADHOC,
            adhoc_session_id=session.id,
        ))

    return [view.price(c) for c in candidates]


def resolve_professor_month(
    db: Session,
    professor_id: str,
    year: int,
    month: int,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> List[Occurrence]:
    """Every class the professor gives in the month, with occupancy."""
    view = load_professor_view(db, professor_id, year, month)
    if view.version is None:
        logger.info("No schedule for professor %s in %s-%02d", professor_id, year, month)
        return []
    return merge_occurrences(professor_candidates(view, policy))


def resolve_student_month(
    db: Session,
    student_id: str,
    year: int,
    month: int,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> List[Occurrence]:
    """
    The classes a student attends in the month.

    Base occurrences come from every active enrollment of the month; moves and
    walk-ins come from the student's own reschedules and adhoc attendance.
    Capacity is read from each professor's view so a student sees the same
    numbers as staff.
    """
    start_of_month, end_of_month = month_start(year, month), month_end(year, month)

    with store_errors("load student month"):
        enrollments = db.query(Enrollment).filter(
            Enrollment.student_id == student_id,
            Enrollment.year == year,
            Enrollment.month == month,
            Enrollment.state == EnrollmentState.ACTIVE,
        ).all()
        attendance = active_records(db).filter(
            AttendanceRecord.student_id == student_id,
            AttendanceRecord.date >= start_of_month,
            AttendanceRecord.date <= end_of_month,
        ).all()

    reschedules, override_rows = student_override_rows(db, student_id, year, month)
    overrides = build_override_index(reschedules, override_rows, start_of_month, end_of_month)

    candidates: List[Occurrence] = []
    for enrollment in enrollments:
        for slot in enrollment.slot_values():
            for window in expand_slot(slot, year, month, policy):
                candidates.append(Occurrence(
                    start=window.start,
                    end=window.end,
                    professor_id=enrollment.professor_id,
                    slot=slot,
                    origin=OccurrenceOrigin.BASE,
                    enrollment_id=enrollment.id,
                ))

    for r in reschedules:
        if not (start_of_month <= r.to_date <= end_of_month):
            continue
        slot = r.slot_to_value
        day = date_only(r.to_date)
        candidates.append(Occurrence(
            start=at_minute(day, slot.start_minute),
            end=at_minute(day, slot.end_minute),
            professor_id=r.to_professor_id,
            slot=slot,
            origin=OccurrenceOrigin.RESCHEDULE_IN,
            enrollment_id=r.enrollment_id,
            reschedule_id=r.id,
        ))

    for record in attendance:
        if record.origin != AttendanceOrigin.ADHOC or record.slot is None:
            continue
        slot = record.slot
        day = date_only(record.date)
        candidates.append(Occurrence(
            start=at_minute(day, slot.start_minute),
            end=at_minute(day, slot.end_minute),
            professor_id=record.professor_id,
            slot=slot,
            origin=OccurrenceOrigin.ADHOC,
            adhoc_session_id=record.adhoc_session_id,
        ))

    occurrences = merge_occurrences(candidates, overrides)

    views: Dict[str, ProfessorMonthView] = {}
    by_key = {
        (date_only(r.date), slot_key(r.professor_id, r.slot)): r
        for r in attendance if r.slot is not None
    }
    for occurrence in occurrences:
        view = views.get(occurrence.professor_id)
        if view is None:
            view = views[occurrence.professor_id] = load_professor_view(
                db, occurrence.professor_id, year, month
            )
        view.price(occurrence)
        record = by_key.get(occurrence.key)
        if record is not None:
            occurrence.attendance_id = record.id
            occurrence.attendance_status = record.status.value

    return occurrences
