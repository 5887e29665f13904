from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel

from atelier.core.errors import InfrastructureError, Rejected
from atelier.core.reschedules import (
    create_reschedule, delete_reschedule, list_reschedules, reschedule_options, reschedule_to_dict
)
from atelier.core.utils.customize_response import (
    success_response, rejection_response, commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import (
    get_current_user, require_staff, check_branch, get_branch_member, parse_instant
)
from atelier.database import get_db
from atelier.endpoints.schemas import SlotIn
from atelier.models import UserRole


router = APIRouter(
    prefix="/api/{branch_id}/reschedules",
    tags=["Reschedule Management"]
)


class RescheduleCreateRequest(BaseModel):
    enrollment_id: str
    from_date: str
    slot_to: SlotIn
    to_date: Optional[str] = None
    to_professor_id: Optional[str] = None
    slot_from: Optional[SlotIn] = None
    reason: Optional[str] = None


@router.post("")
def move_class(
    branch_id: str,
    body: RescheduleCreateRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """
    Move one class of an enrollment to another slot.

    Students get one move per enrollment and month. Staff may overwrite an
    existing move; the response says whether a new one was created.
    """
    check_branch(current_user, branch_id)
    role = current_user["role"]
    if role == UserRole.PROFESSOR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Professors cannot reschedule classes"
        )

    from_date = parse_instant(body.from_date, "from_date")
    to_date = parse_instant(body.to_date, "to_date") if body.to_date else None
    try:
        if body.to_professor_id:
            get_branch_member(db, body.to_professor_id, branch_id, UserRole.PROFESSOR)
        result = create_reschedule(
            db,
            branch_id=branch_id,
            enrollment_id=body.enrollment_id,
            from_date=from_date,
            slot_to=body.slot_to.to_slot(),
            actor_id=current_user["user_id"],
            actor_role=role,
            to_date=to_date,
            to_professor_id=body.to_professor_id,
            slot_from=body.slot_from.to_slot() if body.slot_from else None,
            reason=body.reason,
        )
        return commit_or_reject(
            db, "create reschedule", result,
            "Class rescheduled successfully", "Class not rescheduled",
            lambda moved: {
                "reschedule": reschedule_to_dict(moved.reschedule),
                "created": moved.created,
            },
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to reschedule class")


@router.delete("/{reschedule_id}")
def undo_move(
    branch_id: str,
    reschedule_id: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    check_branch(current_user, branch_id)
    try:
        result = delete_reschedule(db, reschedule_id)
        return commit_or_reject(
            db, "delete reschedule", result,
            "Reschedule deleted", "Reschedule not deleted",
            lambda deleted: {"id": deleted.id},
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to delete reschedule")


@router.get("")
def get_reschedules(
    branch_id: str,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    student_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    check_branch(current_user, branch_id)
    if current_user["role"] == UserRole.STUDENT:
        student_id = current_user["user_id"]
    try:
        reschedules = list_reschedules(db, branch_id, year, month, student_id=student_id)
        return success_response(
            message="Reschedules retrieved successfully",
            data=[reschedule_to_dict(r) for r in reschedules]
        )
    except InfrastructureError:
        return server_error_response("Failed to load reschedules")


@router.get("/options")
def get_reschedule_options(
    branch_id: str,
    enrollment_id: str = Query(...),
    from_date: str = Query(...),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Free classes of the branch near ``from_date`` the class could move to."""
    check_branch(current_user, branch_id)
    role = current_user["role"]
    if role == UserRole.PROFESSOR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Professors cannot reschedule classes"
        )
    start = parse_instant(from_date, "from_date")
    try:
        result = reschedule_options(
            db, branch_id, enrollment_id, start,
            actor_id=current_user["user_id"], actor_role=role,
        )
        if isinstance(result, Rejected):
            return rejection_response("Reschedule options not available", result)
        return success_response(
            message="Reschedule options retrieved successfully",
            data=result
        )
    except InfrastructureError:
        return server_error_response("Failed to load reschedule options")
