import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.core.admission import reserve
from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.schedule_store import require_slot, validate_slots
from atelier.core.slots import Slot, month_end, utc_now
from atelier.models import (
    ACTIVE_MARKER, Enrollment, EnrollmentSlot, EnrollmentState
)

logger = logging.getLogger(__name__)

MAX_CHOSEN_SLOTS = 2


def _check_chosen(slots: Sequence[Slot]) -> Optional[Rejected]:
    if not 1 <= len(slots) <= MAX_CHOSEN_SLOTS:
        return Rejected(ErrorKind.INVALID_INPUT, f"Choose between 1 and {MAX_CHOSEN_SLOTS} slots")
    if len(set(slots)) != len(slots):
        return Rejected(ErrorKind.INVALID_INPUT, "The same slot was chosen twice")
    error = validate_slots(slots)
    if error:
        return Rejected(ErrorKind.INVALID_INPUT, error)
    return None


def _slot_rows(slots: Sequence[Slot]) -> List[EnrollmentSlot]:
    return [
        EnrollmentSlot(
            day_of_week=s.day_of_week,
            start_minute=s.start_minute,
            end_minute=s.end_minute,
        )
        for s in sorted(slots)
    ]


def _replace_slots(enrollment: Enrollment, slots: Sequence[Slot]):
    # existing rows are kept so the unique slot index never sees a duplicate
    wanted = set(slots)
    kept = [row for row in enrollment.chosen_slots if row.as_slot() in wanted]
    present = {row.as_slot() for row in kept}
    enrollment.chosen_slots = kept + _slot_rows([s for s in slots if s not in present])


def get_enrollment(db: Session, enrollment_id: str) -> Union[Enrollment, Rejected]:
    with store_errors("load enrollment"):
        enrollment = db.query(Enrollment).filter(Enrollment.id == enrollment_id).first()
    if enrollment is None:
        return Rejected(ErrorKind.NOT_FOUND, "Enrollment not found")
    return enrollment


def create_enrollment(
    db: Session,
    student_id: str,
    professor_id: str,
    branch_id: str,
    year: int,
    month: int,
    slots: Sequence[Slot],
    created_by: Optional[str] = None,
    payment: Optional[Dict] = None,
    assigned: bool = True
) -> Union[Enrollment, Rejected]:
    """
    Enroll a student with a professor for one month.

    Every chosen slot is admitted for the whole month before the row is
    written. An unassigned enrollment holds no seats, so its slots are only
    checked against the schedule. The caller commits.
    """
    invalid = _check_chosen(slots)
    if invalid:
        return invalid

    with store_errors("create enrollment"):
        existing = db.query(Enrollment).filter(
            Enrollment.student_id == student_id,
            Enrollment.professor_id == professor_id,
            Enrollment.year == year,
            Enrollment.month == month,
            Enrollment.active_marker == ACTIVE_MARKER,
        ).first()
        if existing is not None:
            return Rejected(
                ErrorKind.DUPLICATE_ENROLLMENT,
                "Student already has an active enrollment with this professor for the month",
                data={"enrollment_id": existing.id},
            )

        for slot in slots:
            if assigned:
                decision = reserve(db, professor_id, slot, year, month)
            else:
                decision = require_slot(db, professor_id, slot, year, month)
            if isinstance(decision, Rejected):
                return decision

        enrollment = Enrollment(
            student_id=student_id,
            professor_id=professor_id,
            branch_id=branch_id,
            year=year,
            month=month,
            state=EnrollmentState.ACTIVE,
            active_marker=ACTIVE_MARKER,
            assigned=assigned,
            payment=payment,
            created_by=created_by,
            chosen_slots=_slot_rows(slots),
        )
        try:
            with db.begin_nested():
                db.add(enrollment)
        except IntegrityError:
            logger.warning(
                "Concurrent enrollment of %s with %s for %s-%02d",
                student_id, professor_id, year, month,
            )
            return Rejected(
                ErrorKind.DUPLICATE_ENROLLMENT,
                "Student already has an active enrollment with this professor for the month",
            )

    logger.info("Enrolled student %s with professor %s for %s-%02d", student_id, professor_id, year, month)
    return enrollment


def change_enrollment_slots(db: Session, enrollment_id: str, slots: Sequence[Slot]) -> Union[Enrollment, Rejected]:
    """Replace the chosen slots; only slots the enrollment did not hold yet are admitted."""
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    if not enrollment.is_active:
        return Rejected(ErrorKind.INVALID_INPUT, "Enrollment is cancelled")
    invalid = _check_chosen(slots)
    if invalid:
        return invalid

    held = set(enrollment.slot_values()) if enrollment.assigned else set()
    with store_errors("change enrollment slots"):
        for slot in slots:
            if slot in held:
                continue
            decision = reserve(
                db, enrollment.professor_id, slot, enrollment.year, enrollment.month,
                exclude_enrollment_id=enrollment.id,
            )
            if isinstance(decision, Rejected):
                return decision

        _replace_slots(enrollment, slots)
        enrollment.assigned = True
        db.flush()
    return enrollment


def upsert_month_enrollment(
    db: Session,
    student_id: str,
    professor_id: str,
    branch_id: str,
    year: int,
    month: int,
    slots: Sequence[Slot],
    assign_now: bool = True,
    as_student: bool = False,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None
) -> Union[Enrollment, Rejected]:
    """
    Set the slots a student keeps with a professor for a month.

    Logic:
    1. Students act only on next month, during the last days of the current one
    2. An active enrollment gets its slots replaced; seats are admitted when
       it is assigned or ``assign_now`` is set
    3. Otherwise a new enrollment is created, assigned when ``assign_now``
    """
    if as_student:
        now = now or utc_now()
        if month_end(now.year, now.month) - now > timedelta(days=settings.SELF_ENROLL_DAYS):
            return Rejected(
                ErrorKind.FORBIDDEN,
                f"Next month can only be changed during the last {settings.SELF_ENROLL_DAYS} days of the month",
            )
        following = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        if (year, month) != following:
            return Rejected(ErrorKind.FORBIDDEN, "Only next month can be changed")

    with store_errors("find month enrollment"):
        existing = db.query(Enrollment).filter(
            Enrollment.student_id == student_id,
            Enrollment.professor_id == professor_id,
            Enrollment.year == year,
            Enrollment.month == month,
            Enrollment.active_marker == ACTIVE_MARKER,
        ).first()
    if existing is None:
        return create_enrollment(
            db, student_id, professor_id, branch_id, year, month, slots,
            created_by=created_by, assigned=assign_now,
        )
    if existing.assigned or assign_now:
        return change_enrollment_slots(db, existing.id, slots)

    invalid = _check_chosen(slots)
    if invalid:
        return invalid
    with store_errors("replace enrollment slots"):
        for slot in slots:
            found = require_slot(db, professor_id, slot, year, month)
            if isinstance(found, Rejected):
                return found
        _replace_slots(existing, slots)
        db.flush()
    logger.info("Slots of unassigned enrollment %s replaced", existing.id)
    return existing


def unassign_enrollment(db: Session, enrollment_id: str) -> Union[Enrollment, Rejected]:
    """Keep the enrollment but stop it from holding seats."""
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    with store_errors("unassign enrollment"):
        enrollment.assigned = False
        db.flush()
    return enrollment


def cancel_enrollment(db: Session, enrollment_id: str) -> Union[Enrollment, Rejected]:
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    with store_errors("cancel enrollment"):
        enrollment.set_state(EnrollmentState.CANCELLED)
        db.flush()
    logger.info("Cancelled enrollment %s", enrollment_id)
    return enrollment


def list_enrollments(
    db: Session,
    branch_id: str,
    year: int,
    month: int,
    professor_id: Optional[str] = None,
    student_id: Optional[str] = None
) -> List[Enrollment]:
    with store_errors("list enrollments"):
        query = db.query(Enrollment).filter(
            Enrollment.branch_id == branch_id,
            Enrollment.year == year,
            Enrollment.month == month,
        )
        if professor_id:
            query = query.filter(Enrollment.professor_id == professor_id)
        if student_id:
            query = query.filter(Enrollment.student_id == student_id)
        return query.order_by(Enrollment.created_at).all()


def enrollment_to_dict(enrollment: Enrollment) -> Dict:
    return {
        "id": enrollment.id,
        "student_id": enrollment.student_id,
        "professor_id": enrollment.professor_id,
        "branch_id": enrollment.branch_id,
        "year": enrollment.year,
        "month": enrollment.month,
        "state": enrollment.state.value,
        "assigned": enrollment.assigned,
        "chosen_slots": [s.to_dict() for s in enrollment.slot_values()],
        "payment": enrollment.payment,
    }
