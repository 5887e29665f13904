from typing import List
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, validator

from atelier.core.errors import InfrastructureError
from atelier.core.schedule_store import (
    apply_schedule_from_month, find_for_month, list_versions
)
from atelier.core.utils.customize_response import (
    success_response, commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import (
    get_current_user, require_staff, check_branch, get_branch_member
)
from atelier.database import get_db
from atelier.endpoints.schemas import SlotIn, to_slots
from atelier.models import UserRole, WeeklyScheduleVersion


router = APIRouter(
    prefix="/api/{branch_id}/professors/{professor_id}/schedule",
    tags=["Schedule Management"]
)


# =========================================================
# 🔹 REQUEST SCHEMA
# =========================================================

class ScheduleUpdateRequest(BaseModel):
    year: int
    month: int
    slots: List[SlotIn]

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


def version_to_dict(version: WeeklyScheduleVersion) -> dict:
    return {
        "id": version.id,
        "professor_id": version.professor_id,
        "effective_from": version.effective_from.isoformat(),
        "effective_to": version.effective_to.isoformat() if version.effective_to else None,
        "slots": [s.to_dict() for s in version.slot_values()],
    }


# =========================================================
# 🔹 SCHEDULE APIs
# =========================================================

@router.put("")
def update_schedule(
    branch_id: str,
    professor_id: str,
    body: ScheduleUpdateRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """
    Replace a professor's weekly slots from the first day of a month on.

    Enrollments of that month lose the slots that are no longer offered; the
    ones left without any slot are unassigned.
    """
    check_branch(current_user, branch_id)
    try:
        get_branch_member(db, professor_id, branch_id, UserRole.PROFESSOR)
        result = apply_schedule_from_month(
            db, professor_id, branch_id, body.year, body.month, to_slots(body.slots)
        )
        return commit_or_reject(
            db, "apply schedule", result,
            "Schedule updated successfully", "Schedule not updated",
            lambda applied: {
                "version": version_to_dict(applied["version"]),
                "changes": applied["changes"],
            },
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to update schedule")


@router.get("")
def get_schedule(
    branch_id: str,
    professor_id: str,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    check_branch(current_user, branch_id)
    try:
        version = find_for_month(db, professor_id, year, month)
    except InfrastructureError:
        return server_error_response("Failed to load schedule")
    if version is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No schedule for {year}-{month:02d}"
        )
    return success_response(
        message="Schedule retrieved successfully",
        data=version_to_dict(version)
    )


@router.get("/versions")
def get_schedule_versions(
    branch_id: str,
    professor_id: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    check_branch(current_user, branch_id)
    try:
        versions = list_versions(db, professor_id)
        return success_response(
            message="Schedule history retrieved successfully",
            data=[version_to_dict(v) for v in versions]
        )
    except InfrastructureError:
        return server_error_response("Failed to load schedule history")
