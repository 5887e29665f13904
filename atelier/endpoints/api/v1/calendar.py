from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from atelier.core.errors import InfrastructureError
from atelier.core.resolver import resolve_professor_month, resolve_student_month
from atelier.core.utils.customize_response import success_response, server_error_response
from atelier.core.utils.helpers import get_current_user, check_branch, get_branch_member
from atelier.database import get_db
from atelier.models import UserRole


router = APIRouter(
    prefix="/api/{branch_id}/calendar",
    tags=["Calendar"]
)


@router.get("/professor/{professor_id}")
def professor_calendar(
    branch_id: str,
    professor_id: str,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """
    Every class of a professor in the month with live occupancy.

    Months without a schedule return an empty list.
    """
    check_branch(current_user, branch_id)
    try:
        professor = get_branch_member(db, professor_id, branch_id, UserRole.PROFESSOR)
        occurrences = resolve_professor_month(db, professor.id, year, month)
        return success_response(
            message="Calendar retrieved successfully",
            data=[o.to_dict() for o in occurrences]
        )
    except InfrastructureError:
        return server_error_response("Failed to load calendar")


@router.get("/student/{student_id}")
def student_calendar(
    branch_id: str,
    student_id: str,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Classes of a student in the month, with the student's attendance on each."""
    check_branch(current_user, branch_id)
    if current_user["role"] == UserRole.STUDENT and current_user["user_id"] != student_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Students can only see their own calendar"
        )
    try:
        student = get_branch_member(db, student_id, branch_id, UserRole.STUDENT)
        occurrences = resolve_student_month(db, student.id, year, month)
        return success_response(
            message="Calendar retrieved successfully",
            data=[o.to_dict() for o in occurrences]
        )
    except InfrastructureError:
        return server_error_response("Failed to load calendar")
