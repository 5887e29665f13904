"""
Versioned weekly schedules.

History is append-only: changing a professor's slots from some month closes
the version that covers that month and opens a new one. A version that
already starts exactly at the new date is closed to a zero-length interval
instead of being edited.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.slots import Slot, month_start
from atelier.models import (
    Enrollment, EnrollmentState, ScheduleSlot, WeeklyScheduleVersion
)

logger = logging.getLogger(__name__)


def find_active_for_date(db: Session, professor_id: str, instant: datetime) -> Optional[WeeklyScheduleVersion]:
    """The version whose [effective_from, effective_to) covers ``instant``."""
    with store_errors("find schedule version"):
        return db.query(WeeklyScheduleVersion).filter(
            WeeklyScheduleVersion.professor_id == professor_id,
            WeeklyScheduleVersion.effective_from <= instant,
            or_(
                WeeklyScheduleVersion.effective_to.is_(None),
                WeeklyScheduleVersion.effective_to > instant,
            ),
        ).order_by(WeeklyScheduleVersion.effective_from.desc()).first()


def find_for_month(db: Session, professor_id: str, year: int, month: int) -> Optional[WeeklyScheduleVersion]:
    return find_active_for_date(db, professor_id, month_start(year, month))


def list_versions(db: Session, professor_id: str) -> List[WeeklyScheduleVersion]:
    with store_errors("list schedule versions"):
        return db.query(WeeklyScheduleVersion).filter(
            WeeklyScheduleVersion.professor_id == professor_id
        ).order_by(
            WeeklyScheduleVersion.effective_from,
            WeeklyScheduleVersion.created_at,
        ).all()


def validate_slots(slots: Sequence[Slot]) -> Optional[str]:
    """Each slot well formed, no two slots of the same weekday overlapping."""
    for slot in slots:
        error = slot.validate()
        if error:
            return error
    ordered = sorted(slots)
    for i, slot in enumerate(ordered):
        for other in ordered[i + 1:]:
            if slot.overlaps(other):
                return f"Slots overlap: {slot.label} and {other.label}"
    return None


def require_slot(
    db: Session,
    professor_id: str,
    slot: Slot,
    year: int,
    month: int
) -> Union[WeeklyScheduleVersion, Rejected]:
    """The version valid for the month, provided it contains ``slot``."""
    version = find_for_month(db, professor_id, year, month)
    if version is None:
        return Rejected(
            ErrorKind.SCHEDULE_NOT_FOUND,
            f"Professor has no schedule for {year}-{month:02d}",
        )
    if slot not in version.slot_values():
        return Rejected(
            ErrorKind.SLOT_NOT_IN_SCHEDULE,
            f"{slot.label} is not part of the schedule for {year}-{month:02d}",
        )
    return version


def apply_schedule_from_month(
    db: Session,
    professor_id: str,
    branch_id: str,
    year: int,
    month: int,
    slots: Sequence[Slot]
) -> Union[Dict, Rejected]:
    """
    Open a new schedule version from the first day of ``year-month``.

    Logic:
    1. Close the version covering that instant at the new start
    2. Bound the new version by the next later version, if any
    3. Intersect the month's enrollments with the new slot set

    Runs inside the caller's transaction; nothing is committed here.
    """
    error = validate_slots(slots)
    if error:
        return Rejected(ErrorKind.INVALID_INPUT, error)

    apply_from = month_start(year, month)
    current = find_active_for_date(db, professor_id, apply_from)

    with store_errors("apply schedule"):
        if current is not None:
            # a version starting at apply_from ends up zero-length here
            current.effective_to = apply_from
            logger.info(
                "Closing schedule %s of professor %s at %s",
                current.id, professor_id, apply_from.date(),
            )

        later = db.query(WeeklyScheduleVersion).filter(
            WeeklyScheduleVersion.professor_id == professor_id,
            WeeklyScheduleVersion.effective_from > apply_from,
        ).order_by(WeeklyScheduleVersion.effective_from).first()

        version = WeeklyScheduleVersion(
            professor_id=professor_id,
            branch_id=branch_id,
            effective_from=apply_from,
            effective_to=later.effective_from if later else None,
            slots=[
                ScheduleSlot(
                    day_of_week=s.day_of_week,
                    start_minute=s.start_minute,
                    end_minute=s.end_minute,
                )
                for s in sorted(set(slots))
            ],
        )
        db.add(version)
        db.flush()

        changes = intersect_enrollments(db, professor_id, branch_id, year, month, slots)

    return {"version": version, "changes": changes}


def intersect_enrollments(
    db: Session,
    professor_id: str,
    branch_id: str,
    year: int,
    month: int,
    slots: Sequence[Slot]
) -> List[Dict]:
    """Drop chosen slots that vanished from the schedule; unassign when none remain."""
    allowed = set(slots)
    enrollments = db.query(Enrollment).filter(
        Enrollment.professor_id == professor_id,
        Enrollment.branch_id == branch_id,
        Enrollment.year == year,
        Enrollment.month == month,
        Enrollment.state == EnrollmentState.ACTIVE,
    ).all()

    changes = []
    for enrollment in enrollments:
        before = enrollment.slot_values()
        kept = [s for s in enrollment.chosen_slots if s.as_slot() in allowed]
        if len(kept) == len(before):
            continue
        enrollment.chosen_slots = kept
        if not kept:
            enrollment.assigned = False
        changes.append({
            "enrollment_id": enrollment.id,
            "before": [s.to_dict() for s in before],
            "after": [s.as_slot().to_dict() for s in kept],
            "assigned": enrollment.assigned,
        })

    if changes:
        logger.info(
            "Schedule change for professor %s in %s-%02d touched %d enrollment(s)",
            professor_id, year, month, len(changes),
        )
    db.flush()
    return changes
