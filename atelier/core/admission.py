"""
Capacity gate for new commitments on a professor slot.

``reserve`` prices the destination against the store as it is now, then
claims the month's ``SlotLedger`` row with a compare-and-swap on its version.
Two admissions that priced the slot from the same ledger version cannot both
claim it; the loser is rejected with CAPACITY_EXCEEDED and nothing is retried.
The artifact itself (enrollment, reschedule, attendance) is written by the
caller in the same transaction.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atelier.core.errors import ErrorKind, Rejected, store_errors
from atelier.core.expander import DEFAULT_POLICY, ExpansionPolicy, expand_slot
from atelier.core.resolver import load_professor_view
from atelier.core.schedule_store import require_slot
from atelier.core.slots import Slot, day_of_week, slot_key
from atelier.models import SlotLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionTicket:
    professor_id: str
    slot_key: str
    year: int
    month: int
    ledger_version: Optional[int]
    capacity_left: int


@dataclass(frozen=True)
class Ok:
    professor_id: str
    slot_key: str
    year: int
    month: int
    version: int
    capacity_left: int


def evaluate(
    db: Session,
    professor_id: str,
    slot: Slot,
    year: int,
    month: int,
    day: Optional[date] = None,
    exclude_enrollment_id: Optional[str] = None,
    policy: ExpansionPolicy = DEFAULT_POLICY
) -> Union[AdmissionTicket, Rejected]:
    """
    Price one more seat on ``slot`` without writing anything.

    With ``day`` the check covers that single date. Without it every
    occurrence of the slot in the month must have room, which is what a
    monthly enrollment needs.
    """
    found = require_slot(db, professor_id, slot, year, month)
    if isinstance(found, Rejected):
        return found

    if day is not None:
        if (day.year, day.month) != (year, month) or day_of_week(day) != slot.day_of_week:
            return Rejected(
                ErrorKind.INVALID_INPUT,
                f"{day.isoformat()} is not a {slot.label} date of {year}-{month:02d}",
            )
        days = [day]
    else:
        days = [window.day for window in expand_slot(slot, year, month, policy)]

    key = slot_key(professor_id, slot)
    # read before occupancy: an admission committed in between fails the claim
    version = read_ledger_version(db, professor_id, key, year, month)

    view = load_professor_view(db, professor_id, year, month, exclude_enrollment_id)
    left = min((view.capacity_left(d, slot) for d in days), default=view.capacity)
    if left <= 0:
        logger.info("Admission refused on %s for %s-%02d: slot is full", key, year, month)
        return Rejected(
            ErrorKind.CAPACITY_EXCEEDED,
            f"No seats left on {slot.label}",
            data={"slot_key": key, "capacity": view.capacity},
        )

    return open_ticket(professor_id, key, year, month, version, left)


def read_ledger_version(
    db: Session,
    professor_id: str,
    key: str,
    year: int,
    month: int
) -> Optional[int]:
    """Current version of the slot ledger row, None while nobody claimed it."""
    with store_errors("read slot ledger"):
        return db.query(SlotLedger.version).filter(
            SlotLedger.professor_id == professor_id,
            SlotLedger.slot_key == key,
            SlotLedger.year == year,
            SlotLedger.month == month,
        ).scalar()


def open_ticket(
    professor_id: str,
    key: str,
    year: int,
    month: int,
    ledger_version: Optional[int],
    capacity_left: int
) -> AdmissionTicket:
    """Remember the ledger version a capacity decision was based on."""
    return AdmissionTicket(
        professor_id=professor_id,
        slot_key=key,
        year=year,
        month=month,
        ledger_version=ledger_version,
        capacity_left=capacity_left,
    )


def _lost_race(ticket: AdmissionTicket) -> Rejected:
    logger.warning(
        "Admission on %s for %s-%02d lost a concurrent claim",
        ticket.slot_key, ticket.year, ticket.month,
    )
    return Rejected(
        ErrorKind.CAPACITY_EXCEEDED,
        "The slot changed while admitting, please try again",
        data={"slot_key": ticket.slot_key},
    )


def claim(db: Session, ticket: AdmissionTicket) -> Union[Ok, Rejected]:
    """Compare-and-swap the ledger row priced by ``ticket``."""
    with store_errors("claim slot ledger"):
        if ticket.ledger_version is None:
            try:
                with db.begin_nested():
                    db.add(SlotLedger(
                        professor_id=ticket.professor_id,
                        slot_key=ticket.slot_key,
                        year=ticket.year,
                        month=ticket.month,
                        version=1,
                    ))
            except IntegrityError:
                return _lost_race(ticket)
            new_version = 1
        else:
            updated = db.query(SlotLedger).filter(
                SlotLedger.professor_id == ticket.professor_id,
                SlotLedger.slot_key == ticket.slot_key,
                SlotLedger.year == ticket.year,
                SlotLedger.month == ticket.month,
                SlotLedger.version == ticket.ledger_version,
            ).update(
                {SlotLedger.version: SlotLedger.version + 1},
                synchronize_session=False,
            )
            if updated != 1:
                return _lost_race(ticket)
            new_version = ticket.ledger_version + 1

    return Ok(
        professor_id=ticket.professor_id,
        slot_key=ticket.slot_key,
        year=ticket.year,
        month=ticket.month,
        version=new_version,
        capacity_left=ticket.capacity_left - 1,
    )


def reserve(
    db: Session,
    professor_id: str,
    slot: Slot,
    year: int,
    month: int,
    day: Optional[date] = None,
    exclude_enrollment_id: Optional[str] = None
) -> Union[Ok, Rejected]:
    ticket = evaluate(db, professor_id, slot, year, month, day, exclude_enrollment_id)
    if isinstance(ticket, Rejected):
        return ticket
    return claim(db, ticket)
