from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, validator

from atelier.core.adhoc_sessions import (
    create_adhoc_session, get_adhoc_session, list_adhoc_sessions,
    register_walk_in, remove_adhoc_session, session_to_dict
)
from atelier.core.attendance import record_to_dict
from atelier.core.errors import ErrorKind, InfrastructureError, Rejected
from atelier.core.resolver import session_taken
from atelier.core.utils.customize_response import (
    success_response, commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import (
    get_current_user, require_staff, check_branch, get_branch_member, STAFF_ROLES
)
from atelier.database import get_db
from atelier.models import UserRole


router = APIRouter(
    prefix="/api/{branch_id}/adhoc-sessions",
    tags=["Adhoc Sessions"]
)


# =========================================================
# 🔹 REQUEST SCHEMAS
# =========================================================

class AdhocSessionCreateRequest(BaseModel):
    professor_id: str
    day: date
    start_minute: int
    end_minute: int
    capacity: int = 10
    notes: Optional[str] = None

    @validator('capacity')
    def validate_capacity(cls, v):
        if v < 1:
            raise ValueError('capacity must be at least 1')
        return v


class WalkInRequest(BaseModel):
    student_id: str


def _session_in_branch(db: Session, session_id: str, branch_id: str):
    session = get_adhoc_session(db, session_id)
    if isinstance(session, Rejected):
        return session
    if session.branch_id != branch_id:
        return Rejected(ErrorKind.NOT_FOUND, "Extra class not found or already removed")
    return session


# =========================================================
# 🔹 ADHOC SESSION APIs
# =========================================================

@router.post("")
def open_session(
    branch_id: str,
    body: AdhocSessionCreateRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Extra class outside the weekly schedule, with its own capacity."""
    check_branch(current_user, branch_id)
    role = current_user["role"]
    if role not in STAFF_ROLES and not (
        role == UserRole.PROFESSOR and current_user["user_id"] == body.professor_id
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only staff or the professor can open an extra class"
        )
    try:
        get_branch_member(db, body.professor_id, branch_id, UserRole.PROFESSOR)
        result = create_adhoc_session(
            db,
            professor_id=body.professor_id,
            branch_id=branch_id,
            day=body.day,
            start_minute=body.start_minute,
            end_minute=body.end_minute,
            capacity=body.capacity,
            notes=body.notes,
            created_by=current_user["user_id"],
        )
        return commit_or_reject(
            db, "create adhoc session", result,
            "Extra class created", "Extra class not created",
            session_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to create extra class")


@router.get("")
def get_sessions(
    branch_id: str,
    professor_id: str = Query(...),
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    check_branch(current_user, branch_id)
    try:
        sessions = list_adhoc_sessions(db, professor_id, branch_id, year, month)
        taken = session_taken(db, sessions)
        return success_response(
            message="Extra classes retrieved successfully",
            data=[session_to_dict(s, taken.get(s.id, 0)) for s in sessions]
        )
    except InfrastructureError:
        return server_error_response("Failed to load extra classes")


@router.delete("/{session_id}")
def close_session(
    branch_id: str,
    session_id: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """Remove an extra class and every attendance registered into it."""
    check_branch(current_user, branch_id)
    try:
        result = _session_in_branch(db, session_id, branch_id)
        if not isinstance(result, Rejected):
            result = remove_adhoc_session(db, session_id)
        return commit_or_reject(
            db, "remove adhoc session", result,
            "Extra class removed", "Extra class not removed",
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to remove extra class")


@router.post("/{session_id}/participants")
def add_walk_in(
    branch_id: str,
    session_id: str,
    body: WalkInRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    check_branch(current_user, branch_id)
    try:
        get_branch_member(db, body.student_id, branch_id, UserRole.STUDENT)
        result = _session_in_branch(db, session_id, branch_id)
        if not isinstance(result, Rejected):
            result = register_walk_in(
                db, session_id, body.student_id, marked_by=current_user["user_id"]
            )
        return commit_or_reject(
            db, "register walk-in", result,
            "Student registered into the extra class", "Student not registered",
            record_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to register student")
