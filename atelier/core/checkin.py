"""
QR check-in.

A class key is an HS256-signed JWT over ``{b, st, sl, e?}``: branch id,
occurrence start (ISO), slot key and an optional enrollment id. The student
scanning it is authorised when the scan falls inside the check-in window and
the first of these matches:

1. an attendance row already scheduled for that exact start
2. an active assigned enrollment holding the slot that month
3. a reschedule landing on that slot at that exact start

(2) and (3) also require the slot to be part of the professor's schedule for
the month. Every success writes exactly one attendance row, so scanning twice
is harmless.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from jose import JWTError, jwt
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.records import active_records, upsert_record
from atelier.core.schedule_store import require_slot
from atelier.core.slots import Slot, parse_slot_key, slot_key, utc_now
from atelier.models import (
    AttendanceOrigin, AttendanceRecord, AttendanceStatus, Enrollment, EnrollmentSlot,
    EnrollmentState, RecordState, RescheduleRequest
)

logger = logging.getLogger(__name__)


class CheckInOutcomeKind(str, Enum):
    PRE_SCHEDULED = "PreScheduled"
    REGULAR = "Regular"
    RESCHEDULE = "Reschedule"


@dataclass(frozen=True)
class ClassKey:
    branch_id: str
    start: datetime
    professor_id: str
    slot: Slot
    enrollment_id: Optional[str] = None


@dataclass(frozen=True)
class CheckInOutcome:
    outcome: CheckInOutcomeKind
    attendance_id: str

    def to_dict(self) -> dict:
        return {"outcome": self.outcome.value, "attendance_id": self.attendance_id}


@dataclass(frozen=True)
class CheckInWindow:
    open_offset: timedelta
    close_offset: timedelta

    @classmethod
    def from_settings(cls) -> "CheckInWindow":
        return cls(
            open_offset=timedelta(minutes=settings.CHECKIN_OPEN_OFFSET_MINUTES),
            close_offset=timedelta(minutes=settings.CHECKIN_CLOSE_OFFSET_MINUTES),
        )

    def contains(self, start: datetime, now: datetime) -> bool:
        # half-open: the closing instant itself is already late
        return start + self.open_offset <= now < start + self.close_offset


def build_class_key(
    branch_id: str,
    start: datetime,
    professor_id: str,
    slot: Slot,
    enrollment_id: Optional[str] = None
) -> str:
    claims = {
        "b": branch_id,
        "st": start.replace(tzinfo=None).isoformat(),
        "sl": slot_key(professor_id, slot),
    }
    if enrollment_id:
        claims["e"] = enrollment_id
    return jwt.encode(claims, settings.CLASS_KEY_SECRET, algorithm=settings.ALGORITHM)


def decode_class_key(token: str) -> Union[ClassKey, Rejected]:
    try:
        claims = jwt.decode(token, settings.CLASS_KEY_SECRET, algorithms=[settings.ALGORITHM])
    except JWTError:
        return Rejected(ErrorKind.INVALID_TOKEN, "Class key is not valid")

    branch_id = claims.get("b")
    raw_start = claims.get("st")
    raw_slot = claims.get("sl")
    if not branch_id or not raw_start or not raw_slot:
        return Rejected(ErrorKind.INVALID_TOKEN, "Class key is missing fields")
    try:
        start = datetime.fromisoformat(str(raw_start)).replace(tzinfo=None)
        professor_id, slot = parse_slot_key(raw_slot)
    except ValueError:
        return Rejected(ErrorKind.INVALID_TOKEN, "Class key is malformed")

    return ClassKey(
        branch_id=str(branch_id),
        start=start,
        professor_id=professor_id,
        slot=slot,
        enrollment_id=claims.get("e"),
    )


def _mark_present(db: Session, lookup: dict, key: ClassKey, student_id: str, now: datetime, **extra):
    values = {
        "student_id": student_id,
        "professor_id": key.professor_id,
        "branch_id": key.branch_id,
        "status": AttendanceStatus.PRESENT,
        "origin": AttendanceOrigin.REGULAR,
        "adhoc_marker": None,
        "state": RecordState.ACTIVE,
        "slot_snapshot": key.slot.to_dict(),
        "marked_by": student_id,
        "marked_at": now,
    }
    values.update(extra)
    record, _ = upsert_record(db, lookup, values)
    return record


def check_in(
    db: Session,
    token: str,
    student_id: str,
    now: Optional[datetime] = None,
    window: Optional[CheckInWindow] = None
) -> Union[CheckInOutcome, Rejected]:
    """
    Authorise and record one scan. Nothing is committed here.

    Logic:
    1. Decode the class key
    2. Check the scan time against the window
    3. Pre-scheduled row, then schedule existence, enrollment and reschedule
    """
    key = decode_class_key(token)
    if isinstance(key, Rejected):
        logger.info("Check-in with an invalid class key by %s", student_id)
        return key

    now = now or utc_now()
    window = window or CheckInWindow.from_settings()
    if not window.contains(key.start, now):
        logger.info("Check-in out of window for %s at %s (class %s)", student_id, now, key.start)
        return Rejected(ErrorKind.OUT_OF_WINDOW, "Check-in is not open for this class")

    with store_errors("check in"):
        scheduled = active_records(db).filter(
            AttendanceRecord.student_id == student_id,
            AttendanceRecord.professor_id == key.professor_id,
            AttendanceRecord.branch_id == key.branch_id,
            AttendanceRecord.date == key.start,
        ).first()
        if scheduled is not None:
            scheduled.status = AttendanceStatus.PRESENT
            scheduled.marked_by = student_id
            scheduled.marked_at = now
            scheduled.notes = None
            if not scheduled.slot_snapshot:
                scheduled.slot_snapshot = key.slot.to_dict()
            db.flush()
            return CheckInOutcome(CheckInOutcomeKind.PRE_SCHEDULED, scheduled.id)

        year, month = key.start.year, key.start.month
        found = require_slot(db, key.professor_id, key.slot, year, month)
        if isinstance(found, Rejected):
            return Rejected(ErrorKind.SLOT_NOT_IN_SCHEDULE, found.detail)

        enrollment = db.query(Enrollment).join(
            EnrollmentSlot, EnrollmentSlot.enrollment_id == Enrollment.id
        ).filter(
            Enrollment.student_id == student_id,
            Enrollment.branch_id == key.branch_id,
            Enrollment.professor_id == key.professor_id,
            Enrollment.year == year,
            Enrollment.month == month,
            Enrollment.state == EnrollmentState.ACTIVE,
            Enrollment.assigned.is_(True),
            EnrollmentSlot.day_of_week == key.slot.day_of_week,
            EnrollmentSlot.start_minute == key.slot.start_minute,
            EnrollmentSlot.end_minute == key.slot.end_minute,
        ).first()
        if enrollment is not None:
            record = _mark_present(
                db, {"enrollment_id": enrollment.id, "date": key.start}, key, student_id, now
            )
            return CheckInOutcome(CheckInOutcomeKind.REGULAR, record.id)

        reschedules = db.query(RescheduleRequest).filter(
            RescheduleRequest.student_id == student_id,
            RescheduleRequest.branch_id == key.branch_id,
            RescheduleRequest.to_professor_id == key.professor_id,
            RescheduleRequest.to_date == key.start,
        ).all()
        for reschedule in reschedules:
            if reschedule.slot_to_value != key.slot:
                continue
            record = _mark_present(
                db,
                {"enrollment_id": reschedule.enrollment_id, "date": key.start},
                key, student_id, now,
                reschedule_id=reschedule.id,
            )
            return CheckInOutcome(CheckInOutcomeKind.RESCHEDULE, record.id)

    logger.info("Check-in by %s matched no class on %s", student_id, key.slot.label)
    return Rejected(ErrorKind.NOT_ENROLLED, "You are not enrolled in this class")
