from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, validator

from atelier.core.attendance import class_status
from atelier.core.checkin import build_class_key
from atelier.core.disabled_classes import toggle_disabled_class
from atelier.core.errors import InfrastructureError, Rejected
from atelier.core.schedule_store import require_slot
from atelier.core.slots import at_minute, slot_key
from atelier.core.utils.customize_response import (
    success_response, rejection_response, commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import (
    get_current_user, require_staff, check_branch, get_branch_member, parse_instant, STAFF_ROLES
)
from atelier.database import get_db
from atelier.endpoints.schemas import SlotIn
from atelier.models import UserRole


router = APIRouter(
    prefix="/api/{branch_id}/classes",
    tags=["Class Management"]
)


# =========================================================
# 🔹 REQUEST SCHEMA
# =========================================================

class ClassKeyRequest(BaseModel):
    professor_id: str
    start: str
    slot: SlotIn
    enrollment_id: Optional[str] = None

    @validator('start')
    def validate_start(cls, v):
        if not v.strip():
            raise ValueError('start cannot be empty')
        return v.strip()


# =========================================================
# 🔹 CLASS KEY (QR) API
# =========================================================

@router.post("/key")
def issue_class_key(
    branch_id: str,
    body: ClassKeyRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """
    Signed class key for the QR shown in the classroom.

    The slot must belong to the professor's schedule for that month and the
    start must be one of its times.
    """
    check_branch(current_user, branch_id)
    role = current_user["role"]
    if role not in STAFF_ROLES and not (
        role == UserRole.PROFESSOR and current_user["user_id"] == body.professor_id
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only staff or the class professor can issue class keys"
        )

    start = parse_instant(body.start, "start")
    slot = body.slot.to_slot()
    if at_minute(start.date(), slot.start_minute) != start or start.isoweekday() % 7 != slot.day_of_week:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start does not match the slot"
        )
    try:
        found = require_slot(db, body.professor_id, slot, start.year, start.month)
        if isinstance(found, Rejected):
            return rejection_response("Class key not issued", found)
        key = build_class_key(branch_id, start, body.professor_id, slot, body.enrollment_id)
        return success_response(
            message="Class key issued",
            data={"class_key": key, "start": start.isoformat()}
        )
    except InfrastructureError:
        return server_error_response("Failed to issue class key")


@router.get("/status")
def get_class_status(
    branch_id: str,
    student_id: str = Query(...),
    professor_id: str = Query(...),
    start: str = Query(...),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Whether a class was attended and can still be rescheduled."""
    check_branch(current_user, branch_id)
    if current_user["role"] == UserRole.STUDENT and current_user["user_id"] != student_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Students can only see their own classes"
        )
    start_at = parse_instant(start, "start")
    try:
        return success_response(
            message="Class status retrieved",
            data=class_status(db, student_id, professor_id, branch_id, start_at)
        )
    except InfrastructureError:
        return server_error_response("Failed to load class status")


# =========================================================
# 🔹 DISABLE CLASS API
# =========================================================

@router.patch("/disable")
def toggle_class(
    branch_id: str,
    body: ClassKeyRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """
    Disable one class, or enable it again when it already is.

    Calendars keep showing the class with ``disabled`` set.
    """
    check_branch(current_user, branch_id)
    start = parse_instant(body.start, "start")
    try:
        get_branch_member(db, body.professor_id, branch_id, UserRole.PROFESSOR)
        result = toggle_disabled_class(
            db, branch_id, start,
            slot_key(body.professor_id, body.slot.to_slot()),
            enrollment_id=body.enrollment_id,
            actor_id=current_user["user_id"],
        )
        return commit_or_reject(
            db, "toggle disabled class", result,
            "Class updated", "Class not updated",
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to update class")
