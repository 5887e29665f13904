"""
Single-occurrence moves.

A reschedule shifts one dated class of an enrollment to another date/slot,
possibly with another professor. Students get one per enrollment and month
(the month of the class being moved); staff may overwrite it.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.core.admission import reserve
from atelier.core.enrollments import get_enrollment
from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.expander import DEFAULT_POLICY, ExpansionPolicy, dates_for_weekday_in_month
from atelier.core.resolver import Occurrence, OccurrenceOrigin, ProfessorMonthView, load_professor_view
from atelier.core.slots import Slot, at_minute, day_of_week, utc_now
from atelier.models import Enrollment, EnrollmentState, RescheduleRequest, User, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RescheduleResult:
    reschedule: RescheduleRequest
    created: bool


def nearest_date_for_slot(from_date: datetime, slot: Slot, window_days: int = 7) -> datetime:
    """
    The start of ``slot`` closest to ``from_date`` within +/- ``window_days``.

    Falls back to ``from_date`` when no day in the window has the slot's weekday.
    """
    base = from_date.date()
    best, best_gap = None, None
    for delta in range(-window_days, window_days + 1):
        candidate_day = base + timedelta(days=delta)
        if day_of_week(candidate_day) != slot.day_of_week:
            continue
        candidate = at_minute(candidate_day, slot.start_minute)
        gap = abs(candidate - from_date)
        if best_gap is None or gap < best_gap:
            best, best_gap = candidate, gap
    return best or from_date


def infer_slot_from(enrollment: Enrollment, from_date: datetime) -> Optional[Slot]:
    """The chosen slot whose weekday and start minute match ``from_date``."""
    start_minute = from_date.hour * 60 + from_date.minute
    for slot in enrollment.slot_values():
        if slot.day_of_week == day_of_week(from_date.date()) and slot.start_minute == start_minute:
            return slot
    return None


def create_reschedule(
    db: Session,
    branch_id: str,
    enrollment_id: str,
    from_date: datetime,
    slot_to: Slot,
    actor_id: str,
    actor_role: UserRole,
    to_date: Optional[datetime] = None,
    to_professor_id: Optional[str] = None,
    slot_from: Optional[Slot] = None,
    reason: Optional[str] = None
) -> Union[RescheduleResult, Rejected]:
    """
    Move the class of ``enrollment_id`` starting at ``from_date``.

    Logic:
    1. One per (enrollment, month) for students
    2. Explicit ``to_date`` must be within 7 days of ``from_date``; a missing
       one is inferred on slot_to's weekday
    3. slot_to must exist and have room in the destination month
    4. Insert, or update when staff overwrite an existing move
    """
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    if not enrollment.is_active:
        return Rejected(ErrorKind.INVALID_INPUT, "Enrollment is cancelled")
    error = slot_to.validate()
    if error:
        return Rejected(ErrorKind.INVALID_INPUT, error)

    is_student = actor_role == UserRole.STUDENT
    if is_student and enrollment.student_id != actor_id:
        return Rejected(ErrorKind.FORBIDDEN, "Students can only move their own classes")

    year, month = from_date.year, from_date.month
    with store_errors("find reschedule"):
        existing = db.query(RescheduleRequest).filter(
            RescheduleRequest.enrollment_id == enrollment.id,
            RescheduleRequest.year == year,
            RescheduleRequest.month == month,
        ).first()
    if is_student and existing is not None:
        return Rejected(
            ErrorKind.DUPLICATE_RESCHEDULE,
            "Only one class can be rescheduled per month",
            data={"reschedule_id": existing.id},
        )

    window = timedelta(days=settings.RESCHEDULE_WINDOW_DAYS)
    if to_date is not None:
        if abs(to_date - from_date) > window:
            return Rejected(
                ErrorKind.INVALID_INPUT,
                f"The new date must be within {settings.RESCHEDULE_WINDOW_DAYS} days of the original class",
            )
        if day_of_week(to_date.date()) != slot_to.day_of_week:
            return Rejected(ErrorKind.INVALID_INPUT, f"{to_date.date().isoformat()} is not a {slot_to.label} date")
        to_date = at_minute(to_date.date(), slot_to.start_minute)
    else:
        to_date = nearest_date_for_slot(from_date, slot_to, settings.RESCHEDULE_WINDOW_DAYS)

    if slot_from is None:
        slot_from = infer_slot_from(enrollment, from_date)
        if slot_from is None:
            return Rejected(
                ErrorKind.INVALID_INPUT,
                "fromDate does not match any class of the enrollment",
            )

    to_professor_id = to_professor_id or enrollment.professor_id
    decision = reserve(
        db, to_professor_id, slot_to, to_date.year, to_date.month, day=to_date.date()
    )
    if isinstance(decision, Rejected):
        return decision

    values = {
        "student_id": enrollment.student_id,
        "branch_id": branch_id,
        "from_professor_id": enrollment.professor_id,
        "to_professor_id": to_professor_id,
        "from_date": from_date,
        "to_date": to_date,
        "slot_from": slot_from.to_dict(),
        "slot_to": slot_to.to_dict(),
        "reason": reason,
        "created_by": actor_id,
    }

    with store_errors("save reschedule"):
        if existing is not None:
            _apply(existing, values)
            db.flush()
            logger.info("Reschedule %s overwritten by %s", existing.id, actor_id)
            return RescheduleResult(existing, created=False)

        reschedule = RescheduleRequest(
            enrollment_id=enrollment.id, year=year, month=month, **values
        )
        try:
            with db.begin_nested():
                db.add(reschedule)
        except IntegrityError:
            logger.warning("Reschedule insert raced for enrollment %s in %s-%02d", enrollment.id, year, month)
            winner = db.query(RescheduleRequest).filter(
                RescheduleRequest.enrollment_id == enrollment.id,
                RescheduleRequest.year == year,
                RescheduleRequest.month == month,
            ).first()
            if winner is None:
                raise
            if is_student:
                return Rejected(
                    ErrorKind.DUPLICATE_RESCHEDULE,
                    "Only one class can be rescheduled per month",
                    data={"reschedule_id": winner.id},
                )
            _apply(winner, values)
            db.flush()
            return RescheduleResult(winner, created=False)

    logger.info(
        "Class of enrollment %s moved from %s to %s",
        enrollment.id, from_date, to_date,
    )
    return RescheduleResult(reschedule, created=True)


def _apply(reschedule: RescheduleRequest, values: Dict):
    for field, value in values.items():
        setattr(reschedule, field, value)


def delete_reschedule(
    db: Session,
    reschedule_id: str,
    enrollment_id: Optional[str] = None
) -> Union[RescheduleRequest, Rejected]:
    """Drop a move; the original class shows up again."""
    with store_errors("delete reschedule"):
        query = db.query(RescheduleRequest).filter(RescheduleRequest.id == reschedule_id)
        if enrollment_id:
            query = query.filter(RescheduleRequest.enrollment_id == enrollment_id)
        reschedule = query.first()
        if reschedule is None:
            return Rejected(ErrorKind.NOT_FOUND, "Reschedule not found")
        db.delete(reschedule)
        db.flush()
    logger.info("Reschedule %s deleted", reschedule_id)
    return reschedule


def list_reschedules(
    db: Session,
    branch_id: str,
    year: int,
    month: int,
    student_id: Optional[str] = None
) -> List[RescheduleRequest]:
    with store_errors("list reschedules"):
        query = db.query(RescheduleRequest).filter(
            RescheduleRequest.branch_id == branch_id,
            RescheduleRequest.year == year,
            RescheduleRequest.month == month,
        )
        if student_id:
            query = query.filter(RescheduleRequest.student_id == student_id)
        return query.order_by(RescheduleRequest.from_date).all()


def reschedule_to_dict(reschedule: RescheduleRequest) -> Dict:
    return {
        "id": reschedule.id,
        "enrollment_id": reschedule.enrollment_id,
        "student_id": reschedule.student_id,
        "from_professor_id": reschedule.from_professor_id,
        "to_professor_id": reschedule.to_professor_id,
        "year": reschedule.year,
        "month": reschedule.month,
        "from_date": reschedule.from_date.isoformat(),
        "to_date": reschedule.to_date.isoformat(),
        "slot_from": reschedule.slot_from,
        "slot_to": reschedule.slot_to,
        "reason": reschedule.reason,
    }


def reschedule_options(
    db: Session,
    branch_id: str,
    enrollment_id: str,
    from_date: datetime,
    actor_id: str,
    actor_role: UserRole,
    now: Optional[datetime] = None,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> Union[List[Dict], Rejected]:
    """
    Classes of the branch the class at ``from_date`` could be moved to.

    Candidates lie within the reschedule window on either side of
    ``from_date`` and come with the same occupancy the calendars show.
    Classes already started, dates past the monthly cap and slots the
    student already holds in those months are left out.
    """
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    if enrollment.branch_id != branch_id:
        return Rejected(ErrorKind.NOT_FOUND, "Enrollment not found")
    if actor_role == UserRole.STUDENT and enrollment.student_id != actor_id:
        return Rejected(ErrorKind.FORBIDDEN, "Students can only move their own classes")

    now = now or utc_now()
    window = settings.RESCHEDULE_WINDOW_DAYS
    first_day = from_date.date() - timedelta(days=window)
    days = [first_day + timedelta(days=i) for i in range(2 * window + 1)]
    months = sorted({(d.year, d.month) for d in days})

    with store_errors("load reschedule options"):
        professors = db.query(User.id).filter(
            User.branch_id == branch_id,
            User.role == UserRole.PROFESSOR,
            User.is_active == True
        ).order_by(User.fullname).all()
        held_enrollments = db.query(Enrollment).filter(
            Enrollment.student_id == enrollment.student_id,
            Enrollment.state == EnrollmentState.ACTIVE,
            Enrollment.assigned.is_(True),
            Enrollment.year.in_(sorted({y for y, _ in months})),
            Enrollment.month.in_(sorted({m for _, m in months})),
        ).all()
    held = {
        (e.professor_id, slot)
        for e in held_enrollments if (e.year, e.month) in months
        for slot in e.slot_values()
    }

    options: List[Dict] = []
    for year, month in months:
        in_month = [d for d in days if (d.year, d.month) == (year, month)]
        for (professor_id,) in professors:
            view = load_professor_view(db, professor_id, year, month)
            if view.version is None:
                continue
            for slot in view.version.slot_values():
                if (professor_id, slot) in held:
                    continue
                allowed = set(dates_for_weekday_in_month(year, month, slot.day_of_week, policy))
                for day in in_month:
                    if day not in allowed:
                        continue
                    option = _option(view, day, slot)
                    if option.start <= now:
                        continue
                    options.append(_option_to_dict(option))

    options.sort(key=lambda o: (o["to"], o["professor_id"]))
    return options


def _option(view: ProfessorMonthView, day: date, slot: Slot) -> Occurrence:
    return view.price(Occurrence(
        start=at_minute(day, slot.start_minute),
        end=at_minute(day, slot.end_minute),
        professor_id=view.professor_id,
        slot=slot,
        origin=OccurrenceOrigin.BASE,
    ))


def _option_to_dict(option: Occurrence) -> Dict:
    return {
        "to": option.start.isoformat(),
        "end": option.end.isoformat(),
        "professor_id": option.professor_id,
        "slot_to": option.slot.to_dict(),
        "slot_key": option.slot_key,
        "capacity": option.capacity,
        "capacity_left": option.capacity_left,
        "status": option.status,
        "disabled": option.disabled,
    }
