from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel, validator

from atelier.core.admission import reserve
from atelier.core.errors import InfrastructureError
from atelier.core.utils.customize_response import (
    commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import require_staff, check_branch, get_branch_member
from atelier.database import get_db
from atelier.endpoints.schemas import SlotIn
from atelier.models import UserRole


router = APIRouter(
    prefix="/api/{branch_id}/slots",
    tags=["Slot Reservation"]
)


class ReserveSlotRequest(BaseModel):
    professor_id: str
    slot: SlotIn
    year: int
    month: int
    day: Optional[date] = None

    @validator('month')
    def validate_month(cls, v):
        if not 1 <= v <= 12:
            raise ValueError('month must be between 1 and 12')
        return v


@router.post("/reserve")
def reserve_slot(
    branch_id: str,
    body: ReserveSlotRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """
    Admission decision for one more seat on a professor slot.

    Without ``day`` every class of the slot in the month must have room.
    A successful call bumps the slot ledger so concurrent admissions on the
    same slot cannot both pass; it does not create any enrollment.
    """
    check_branch(current_user, branch_id)
    try:
        get_branch_member(db, body.professor_id, branch_id, UserRole.PROFESSOR)
        decision = reserve(
            db, body.professor_id, body.slot.to_slot(), body.year, body.month, day=body.day
        )
        return commit_or_reject(
            db, "reserve slot", decision,
            "Slot reserved", "Slot cannot be reserved",
            lambda ok: {
                "slot_key": ok.slot_key,
                "year": ok.year,
                "month": ok.month,
                "capacity_left": ok.capacity_left,
            },
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to reserve slot")
