"""
Attendance record access shared by the engine.

Soft-deleted rows keep their data (slot snapshot included) because the
occupancy math reads them back as explicit cancellations. Anything that wants
"live" attendance goes through ``active_records`` instead of filtering on
``state`` by hand.
"""
import logging
from typing import Dict, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.models import AttendanceRecord, RecordState

logger = logging.getLogger(__name__)


def active_records(db: Session):
    return db.query(AttendanceRecord).filter(AttendanceRecord.state == RecordState.ACTIVE)


def upsert_record(db: Session, lookup: Dict, values: Dict) -> Tuple[AttendanceRecord, bool]:
    """
    Update the record matching ``lookup`` or insert a new one.

    ``lookup`` must be one of the unique tuples of the table, so a concurrent
    insert of the same occurrence surfaces as IntegrityError. The insert runs
    inside a savepoint; when it loses that race the winner is re-read and
    updated, so the caller always ends with exactly one row.

    Returns (record, created).
    """
    query = db.query(AttendanceRecord).filter_by(**lookup)
    record = query.first()
    if record is None:
        record = AttendanceRecord(**lookup, **values)
        try:
            with db.begin_nested():
                db.add(record)
            return record, True
        except IntegrityError:
            logger.warning("Attendance insert raced on %s, updating the existing row", lookup)
            record = query.first()
            if record is None:
                raise

    for field, value in values.items():
        setattr(record, field, value)
    db.flush()
    return record, False
