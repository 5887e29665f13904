import logging
from datetime import date, datetime
from typing import Dict, Optional, Set, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.slots import at_minute, date_only, day_of_week, month_end, month_start, parse_slot_key
from atelier.models import DisabledClass

logger = logging.getLogger(__name__)


def disabled_keys(db: Session, professor_id: str, year: int, month: int) -> Set[Tuple[date, str]]:
    """(day, slot key) of every disabled class of the professor in the month."""
    with store_errors("load disabled classes"):
        rows = db.query(DisabledClass.start, DisabledClass.slot_key).filter(
            DisabledClass.professor_id == professor_id,
            DisabledClass.start >= month_start(year, month),
            DisabledClass.start <= month_end(year, month),
        ).all()
    return {(date_only(start), key) for start, key in rows}


def toggle_disabled_class(
    db: Session,
    branch_id: str,
    start: datetime,
    key: str,
    enrollment_id: Optional[str] = None,
    actor_id: Optional[str] = None
) -> Union[Dict, Rejected]:
    """
    Flip the disabled flag of the class at ``start`` in slot ``key``.

    A disabled class stays in every calendar with ``disabled`` set; its
    seats are counted as before.
    """
    try:
        professor_id, slot = parse_slot_key(key)
    except ValueError as e:
        return Rejected(ErrorKind.INVALID_INPUT, str(e))
    if day_of_week(start.date()) != slot.day_of_week or at_minute(start.date(), slot.start_minute) != start:
        return Rejected(ErrorKind.INVALID_INPUT, f"{start.isoformat()} is not a {slot.label} class")

    with store_errors("toggle disabled class"):
        existing = db.query(DisabledClass).filter(
            DisabledClass.slot_key == key,
            DisabledClass.start == start,
        ).first()
        if existing is not None:
            db.delete(existing)
            db.flush()
            logger.info("Class %s at %s enabled again", key, start)
            return {"slot_key": key, "start": start.isoformat(), "disabled": False}

        try:
            with db.begin_nested():
                db.add(DisabledClass(
                    professor_id=professor_id,
                    branch_id=branch_id,
                    enrollment_id=enrollment_id,
                    slot_key=key,
                    start=start,
                    created_by=actor_id,
                ))
        except IntegrityError:
            # a concurrent toggle disabled it first
            logger.warning("Class %s at %s was already disabled", key, start)

    logger.info("Class %s at %s disabled by %s", key, start, actor_id)
    return {"slot_key": key, "start": start.isoformat(), "disabled": True}
