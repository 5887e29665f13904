import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.core.admission import claim, open_ticket, read_ledger_version
from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.records import active_records, upsert_record
from atelier.core.resolver import adhoc_sessions_for_month, session_taken
from atelier.core.slots import Slot, at_minute, day_of_week, slot_key, utc_now
from atelier.models import (
    ACTIVE_MARKER, ADHOC_MARKER, AdhocSession, AttendanceOrigin, AttendanceRecord,
    AttendanceStatus, RecordState
)

logger = logging.getLogger(__name__)


def create_adhoc_session(
    db: Session,
    professor_id: str,
    branch_id: str,
    day: date,
    start_minute: int,
    end_minute: int,
    capacity: int = 10,
    notes: Optional[str] = None,
    created_by: Optional[str] = None
) -> Union[AdhocSession, Rejected]:
    slot = Slot(day_of_week(day), start_minute, end_minute)
    error = slot.validate()
    if error:
        return Rejected(ErrorKind.INVALID_INPUT, error)
    if capacity < 1:
        return Rejected(ErrorKind.INVALID_INPUT, "Capacity must be at least 1")

    session = AdhocSession(
        professor_id=professor_id,
        branch_id=branch_id,
        date=day,
        day_of_week=slot.day_of_week,
        start_minute=slot.start_minute,
        end_minute=slot.end_minute,
        capacity=capacity,
        participants=[],
        notes=notes,
        state=RecordState.ACTIVE,
        active_marker=ACTIVE_MARKER,
        created_by=created_by,
    )
    with store_errors("create adhoc session"):
        try:
            with db.begin_nested():
                db.add(session)
        except IntegrityError:
            return Rejected(ErrorKind.INVALID_INPUT, f"An extra class already exists on {day} at {slot.label}")
    logger.info("Adhoc class %s created for professor %s on %s", session.id, professor_id, day)
    return session


def get_adhoc_session(db: Session, session_id: str) -> Union[AdhocSession, Rejected]:
    with store_errors("load adhoc session"):
        session = db.query(AdhocSession).filter(
            AdhocSession.id == session_id,
            AdhocSession.state == RecordState.ACTIVE,
        ).first()
    if session is None:
        return Rejected(ErrorKind.NOT_FOUND, "Extra class not found or already removed")
    return session


def list_adhoc_sessions(
    db: Session,
    professor_id: str,
    branch_id: str,
    year: int,
    month: int
) -> List[AdhocSession]:
    return [
        s for s in adhoc_sessions_for_month(db, professor_id, year, month)
        if s.branch_id == branch_id
    ]


def remove_adhoc_session(db: Session, session_id: str) -> Union[Dict, Rejected]:
    """Soft-remove the session together with every live attendance row it owns."""
    session = get_adhoc_session(db, session_id)
    if isinstance(session, Rejected):
        return session
    with store_errors("remove adhoc session"):
        session.remove()
        records = active_records(db).filter(AttendanceRecord.adhoc_session_id == session.id).all()
        for record in records:
            record.state = RecordState.REMOVED
        db.flush()
    logger.info("Adhoc class %s removed with %d attendance row(s)", session_id, len(records))
    return {"id": session.id, "removed_attendance": len(records)}


def register_walk_in(
    db: Session,
    session_id: str,
    student_id: str,
    marked_by: Optional[str] = None,
    now: Optional[datetime] = None
) -> Union[AttendanceRecord, Rejected]:
    """
    Book a student into an extra class.

    The row starts as absent and becomes present on check-in. Registering the
    same student twice returns the existing row.
    """
    session = get_adhoc_session(db, session_id)
    if isinstance(session, Rejected):
        return session
    start = at_minute(session.date, session.start_minute)

    with store_errors("register walk-in"):
        existing = active_records(db).filter(
            AttendanceRecord.adhoc_session_id == session.id,
            AttendanceRecord.student_id == student_id,
        ).first()
        if existing is not None:
            return existing

        key = slot_key(session.professor_id, session.slot)
        version = read_ledger_version(
            db, session.professor_id, key, session.date.year, session.date.month
        )
        taken = session_taken(db, [session])[session.id]
        if student_id in (session.participants or []):
            taken -= 1
        left = session.capacity - taken
        if left <= 0:
            logger.info("Extra class %s is full", session.id)
            return Rejected(
                ErrorKind.CAPACITY_EXCEEDED,
                "No seats left in this extra class",
                data={"capacity": session.capacity},
            )

        ticket = open_ticket(
            session.professor_id, key, session.date.year, session.date.month, version, left
        )
        decision = claim(db, ticket)
        if isinstance(decision, Rejected):
            return decision

        record, _ = upsert_record(
            db,
            {
                "student_id": student_id,
                "professor_id": session.professor_id,
                "branch_id": session.branch_id,
                "date": start,
                "adhoc_marker": ADHOC_MARKER,
            },
            {
                "adhoc_session_id": session.id,
                "enrollment_id": None,
                "status": AttendanceStatus.ABSENT,
                "origin": AttendanceOrigin.ADHOC,
                "state": RecordState.ACTIVE,
                "slot_snapshot": session.slot.to_dict(),
                "marked_by": marked_by,
                "marked_at": now or utc_now(),
            },
        )
        if student_id not in (session.participants or []):
            session.participants = list(session.participants or []) + [student_id]
        db.flush()

    logger.info("Student %s registered into extra class %s", student_id, session.id)
    return record


def session_to_dict(session: AdhocSession, taken: int = 0) -> Dict:
    return {
        "id": session.id,
        "professor_id": session.professor_id,
        "branch_id": session.branch_id,
        "date": session.date.isoformat(),
        "slot": session.slot.to_dict(),
        "capacity": session.capacity,
        "taken": taken,
        "participants": list(session.participants or []),
        "notes": session.notes,
    }
