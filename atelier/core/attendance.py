import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union

from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.core.enrollments import get_enrollment
from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.records import active_records, upsert_record
from atelier.core.reschedules import delete_reschedule, infer_slot_from
from atelier.core.slots import Slot, utc_now
from atelier.models import (
    AttendanceOrigin, AttendanceRecord, AttendanceStatus, Enrollment, RecordState,
    RescheduleRequest
)

logger = logging.getLogger(__name__)

STAFF_STATUSES = (AttendanceStatus.PRESENT, AttendanceStatus.ABSENT, AttendanceStatus.EXCUSED)


def _occurrence_of(db: Session, enrollment: Enrollment, start: datetime) -> Optional[Tuple[str, Slot, Optional[str]]]:
    """(professor_id, slot, reschedule_id) of the enrollment's class starting at ``start``."""
    moved = db.query(RescheduleRequest).filter(
        RescheduleRequest.enrollment_id == enrollment.id,
        RescheduleRequest.to_date == start,
    ).first()
    if moved is not None:
        return moved.to_professor_id, moved.slot_to_value, moved.id
    if (start.year, start.month) != (enrollment.year, enrollment.month):
        return None
    slot = infer_slot_from(enrollment, start)
    if slot is None:
        return None
    return enrollment.professor_id, slot, None


def mark_attendance(
    db: Session,
    enrollment_id: str,
    start: datetime,
    status: AttendanceStatus,
    marked_by: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None
) -> Union[AttendanceRecord, Rejected]:
    """Staff marking of one regular class; rewrites a cancelled row as live."""
    if status not in STAFF_STATUSES:
        return Rejected(ErrorKind.INVALID_INPUT, f"Status {status.value} cannot be set by hand")
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment

    with store_errors("mark attendance"):
        occurrence = _occurrence_of(db, enrollment, start)
        if occurrence is None:
            return Rejected(ErrorKind.INVALID_INPUT, "The enrollment has no class at that time")
        professor_id, slot, reschedule_id = occurrence

        record, _ = upsert_record(
            db,
            {"enrollment_id": enrollment.id, "date": start},
            {
                "student_id": enrollment.student_id,
                "professor_id": professor_id,
                "branch_id": enrollment.branch_id,
                "status": status,
                "origin": AttendanceOrigin.REGULAR,
                "adhoc_marker": None,
                "state": RecordState.ACTIVE,
                "slot_snapshot": slot.to_dict(),
                "reschedule_id": reschedule_id,
                "marked_by": marked_by,
                "marked_at": now or utc_now(),
                "notes": notes,
            },
        )
    return record


def cancel_occurrence(
    db: Session,
    enrollment_id: str,
    start: datetime,
    marked_by: str,
    now: Optional[datetime] = None
) -> Union[AttendanceRecord, Rejected]:
    """
    Cancel one base class of an enrollment.

    The row is kept as removed with its slot snapshot, which is what frees the
    seat for that day and hides the class from the student.
    """
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    slot = infer_slot_from(enrollment, start)
    if slot is None or (start.year, start.month) != (enrollment.year, enrollment.month):
        return Rejected(ErrorKind.INVALID_INPUT, "The enrollment has no class at that time")

    with store_errors("cancel occurrence"):
        record, _ = upsert_record(
            db,
            {"enrollment_id": enrollment.id, "date": start},
            {
                "student_id": enrollment.student_id,
                "professor_id": enrollment.professor_id,
                "branch_id": enrollment.branch_id,
                "status": AttendanceStatus.EXCUSED,
                "origin": AttendanceOrigin.REGULAR,
                "adhoc_marker": None,
                "state": RecordState.REMOVED,
                "slot_snapshot": slot.to_dict(),
                "marked_by": marked_by,
                "marked_at": now or utc_now(),
            },
        )
    logger.info("Class of enrollment %s at %s cancelled by %s", enrollment.id, start, marked_by)
    return record


def remove_occurrence(
    db: Session,
    enrollment_id: str,
    origin: str,
    attendance_id: Optional[str] = None,
    reschedule_id: Optional[str] = None
) -> Union[Dict, Rejected]:
    """Undo an extra class of a student: an adhoc attendance or a reschedule-in."""
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment

    if origin == "adhoc":
        if not attendance_id:
            return Rejected(ErrorKind.INVALID_INPUT, "attendance_id is required")
        with store_errors("remove adhoc occurrence"):
            record = active_records(db).filter(
                AttendanceRecord.id == attendance_id,
                AttendanceRecord.student_id == enrollment.student_id,
            ).first()
            if record is None:
                return Rejected(ErrorKind.NOT_FOUND, "Attendance not found")
            record.state = RecordState.REMOVED
            if record.adhoc_session is not None:
                record.adhoc_session.drop_participant(record.student_id)
            db.flush()
        return {"origin": origin, "updated": 1}

    if origin == "reschedule-in":
        if not reschedule_id:
            return Rejected(ErrorKind.INVALID_INPUT, "reschedule_id is required")
        removed = delete_reschedule(db, reschedule_id, enrollment_id=enrollment.id)
        if isinstance(removed, Rejected):
            return removed
        return {"origin": origin, "deleted": 1}

    return Rejected(ErrorKind.INVALID_INPUT, f"Unsupported origin: {origin}")


def class_status(
    db: Session,
    student_id: str,
    professor_id: str,
    branch_id: str,
    start: datetime,
    now: Optional[datetime] = None
) -> Dict:
    now = now or utc_now()
    with store_errors("class status"):
        record = active_records(db).filter(
            AttendanceRecord.student_id == student_id,
            AttendanceRecord.professor_id == professor_id,
            AttendanceRecord.branch_id == branch_id,
            AttendanceRecord.date == start,
        ).first()

    attended = record is not None and record.status == AttendanceStatus.PRESENT
    too_old = now > start + timedelta(days=settings.RESCHEDULE_STATUS_MAX_AGE_DAYS)
    return {
        "attended": attended,
        "too_old": too_old,
        "reschedulable": not attended and not too_old,
        "origin": record.origin.value if record is not None else None,
        "now": now.isoformat(),
    }


def record_to_dict(record: AttendanceRecord) -> Dict:
    return {
        "id": record.id,
        "enrollment_id": record.enrollment_id,
        "adhoc_session_id": record.adhoc_session_id,
        "student_id": record.student_id,
        "professor_id": record.professor_id,
        "date": record.date.isoformat(),
        "status": record.status.value,
        "origin": record.origin.value,
        "state": record.state.value,
        "slot": record.slot_snapshot,
        "reschedule_id": record.reschedule_id,
    }
