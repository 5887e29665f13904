from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, validator

from atelier.core.attendance import cancel_occurrence, record_to_dict, remove_occurrence
from atelier.core.enrollments import (
    cancel_enrollment, change_enrollment_slots, create_enrollment, enrollment_to_dict,
    get_enrollment, list_enrollments, unassign_enrollment, upsert_month_enrollment
)
from atelier.core.errors import ErrorKind, InfrastructureError, Rejected
from atelier.core.utils.customize_response import (
    success_response, commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import (
    get_current_user, require_staff, check_branch, get_branch_member, parse_instant
)
from atelier.database import get_db
from atelier.endpoints.schemas import SlotIn, to_slots
from atelier.models import UserRole


router = APIRouter(
    prefix="/api/{branch_id}/enrollments",
    tags=["Enrollment Management"]
)


# =========================================================
# 🔹 REQUEST SCHEMAS
# =========================================================

class EnrollmentCreateRequest(BaseModel):
    student_id: str
    professor_id: str
    year: int
    month: int
    slots: List[SlotIn]
    payment: Optional[Dict[str, Any]] = None

    @validator('month')
    def validate_month(cls, v):
        if not 1 <= v <= 12:
            raise ValueError('month must be between 1 and 12')
        return v

    @validator('year')
    def validate_year(cls, v):
        if not 2000 <= v <= 2100:
            raise ValueError('year out of range')
        return v


class EnrollmentUpsertRequest(BaseModel):
    student_id: str
    professor_id: str
    year: int
    month: int
    slots: List[SlotIn]
    assign_now: bool = True

    @validator('month')
    def validate_month(cls, v):
        if not 1 <= v <= 12:
            raise ValueError('month must be between 1 and 12')
        return v


class EnrollmentSlotsRequest(BaseModel):
    slots: List[SlotIn]


class OccurrenceCancelRequest(BaseModel):
    start: str


class OccurrenceRemoveRequest(BaseModel):
    origin: str
    attendance_id: Optional[str] = None
    reschedule_id: Optional[str] = None

    @validator('origin')
    def validate_origin(cls, v):
        if v not in ("adhoc", "reschedule-in"):
            raise ValueError("origin must be 'adhoc' or 'reschedule-in'")
        return v


def _in_branch(db: Session, enrollment_id: str, branch_id: str):
    enrollment = get_enrollment(db, enrollment_id)
    if isinstance(enrollment, Rejected):
        return enrollment
    if enrollment.branch_id != branch_id:
        return Rejected(ErrorKind.NOT_FOUND, "Enrollment not found")
    return enrollment


# =========================================================
# 🔹 ENROLLMENT APIs
# =========================================================

@router.post("")
def enroll_student(
    branch_id: str,
    body: EnrollmentCreateRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """
    Enroll a student with a professor for a month.

    Logic:
    1. Both people must belong to the branch
    2. One or two slots, each in the professor's schedule for the month
    3. Every class of each slot in the month needs a free seat
    """
    check_branch(current_user, branch_id)
    try:
        get_branch_member(db, body.student_id, branch_id, UserRole.STUDENT)
        get_branch_member(db, body.professor_id, branch_id, UserRole.PROFESSOR)
        result = create_enrollment(
            db,
            student_id=body.student_id,
            professor_id=body.professor_id,
            branch_id=branch_id,
            year=body.year,
            month=body.month,
            slots=to_slots(body.slots),
            created_by=current_user["user_id"],
            payment=body.payment,
        )
        return commit_or_reject(
            db, "create enrollment", result,
            "Student enrolled successfully", "Enrollment not created",
            enrollment_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to create enrollment")


@router.post("/upsert-next")
def upsert_enrollment(
    branch_id: str,
    body: EnrollmentUpsertRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """
    Create or replace a student's enrollment for a month.

    Students may only set their own slots for next month, near the end of
    the current one. Staff may do it for anyone and any month.
    """
    check_branch(current_user, branch_id)
    role = current_user["role"]
    as_student = role == UserRole.STUDENT
    if role == UserRole.PROFESSOR or (as_student and current_user["user_id"] != body.student_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to change this enrollment"
        )
    try:
        get_branch_member(db, body.student_id, branch_id, UserRole.STUDENT)
        get_branch_member(db, body.professor_id, branch_id, UserRole.PROFESSOR)
        result = upsert_month_enrollment(
            db,
            student_id=body.student_id,
            professor_id=body.professor_id,
            branch_id=branch_id,
            year=body.year,
            month=body.month,
            slots=to_slots(body.slots),
            assign_now=body.assign_now,
            as_student=as_student,
            created_by=current_user["user_id"],
        )
        return commit_or_reject(
            db, "upsert enrollment", result,
            "Enrollment saved", "Enrollment not saved",
            enrollment_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to save enrollment")


@router.get("")
def get_enrollments(
    branch_id: str,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    professor_id: Optional[str] = Query(None),
    student_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    check_branch(current_user, branch_id)
    if current_user["role"] == UserRole.STUDENT:
        # students only ever see their own rows
        student_id = current_user["user_id"]
    try:
        enrollments = list_enrollments(
            db, branch_id, year, month, professor_id=professor_id, student_id=student_id
        )
        return success_response(
            message="Enrollments retrieved successfully",
            data=[enrollment_to_dict(e) for e in enrollments]
        )
    except InfrastructureError:
        return server_error_response("Failed to load enrollments")


@router.put("/{enrollment_id}/slots")
def update_enrollment_slots(
    branch_id: str,
    enrollment_id: str,
    body: EnrollmentSlotsRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    check_branch(current_user, branch_id)
    try:
        result = _in_branch(db, enrollment_id, branch_id)
        if not isinstance(result, Rejected):
            result = change_enrollment_slots(db, enrollment_id, to_slots(body.slots))
        return commit_or_reject(
            db, "change enrollment slots", result,
            "Enrollment slots updated", "Enrollment slots not updated",
            enrollment_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to update enrollment slots")


@router.post("/{enrollment_id}/unassign")
def unassign(
    branch_id: str,
    enrollment_id: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    check_branch(current_user, branch_id)
    try:
        result = _in_branch(db, enrollment_id, branch_id)
        if not isinstance(result, Rejected):
            result = unassign_enrollment(db, enrollment_id)
        return commit_or_reject(
            db, "unassign enrollment", result,
            "Enrollment unassigned", "Enrollment not unassigned",
            enrollment_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to unassign enrollment")


@router.post("/{enrollment_id}/cancel")
def cancel(
    branch_id: str,
    enrollment_id: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    check_branch(current_user, branch_id)
    try:
        result = _in_branch(db, enrollment_id, branch_id)
        if not isinstance(result, Rejected):
            result = cancel_enrollment(db, enrollment_id)
        return commit_or_reject(
            db, "cancel enrollment", result,
            "Enrollment cancelled", "Enrollment not cancelled",
            enrollment_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to cancel enrollment")


# =========================================================
# 🔹 SINGLE CLASS APIs
# =========================================================

@router.post("/{enrollment_id}/occurrences/cancel")
def cancel_class(
    branch_id: str,
    enrollment_id: str,
    body: OccurrenceCancelRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """Cancel one regular class; its seat is freed for that day only."""
    check_branch(current_user, branch_id)
    start = parse_instant(body.start, "start")
    try:
        result = _in_branch(db, enrollment_id, branch_id)
        if not isinstance(result, Rejected):
            result = cancel_occurrence(db, enrollment_id, start, current_user["user_id"])
        return commit_or_reject(
            db, "cancel occurrence", result,
            "Class cancelled", "Class not cancelled",
            record_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to cancel class")


@router.post("/{enrollment_id}/occurrences/remove")
def remove_class(
    branch_id: str,
    enrollment_id: str,
    body: OccurrenceRemoveRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """Remove an extra class of the student, by the origin shown in its calendar."""
    check_branch(current_user, branch_id)
    try:
        result = _in_branch(db, enrollment_id, branch_id)
        if not isinstance(result, Rejected):
            result = remove_occurrence(
                db, enrollment_id, body.origin,
                attendance_id=body.attendance_id,
                reschedule_id=body.reschedule_id,
            )
        return commit_or_reject(
            db, "remove occurrence", result,
            "Class removed", "Class not removed",
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to remove class")
