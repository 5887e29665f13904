from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel, validator

from atelier.core.attendance import STAFF_STATUSES, mark_attendance, record_to_dict
from atelier.core.enrollments import get_enrollment
from atelier.core.errors import ErrorKind, InfrastructureError, Rejected
from atelier.core.utils.customize_response import commit_or_reject, server_error_response
from atelier.core.utils.helpers import require_staff, check_branch, parse_instant
from atelier.database import get_db
from atelier.models import AttendanceStatus


router = APIRouter(
    prefix="/api/{branch_id}/attendance",
    tags=["Attendance"]
)


class MarkAttendanceRequest(BaseModel):
    enrollment_id: str
    start: str
    status: AttendanceStatus
    notes: Optional[str] = None

    @validator('status')
    def validate_status(cls, v):
        if v not in STAFF_STATUSES:
            raise ValueError('status must be present, absent or excused')
        return v


@router.post("/mark")
def mark(
    branch_id: str,
    body: MarkAttendanceRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_staff),
):
    """
    Mark a regular class by hand.

    A class cancelled earlier becomes live again with the new status.
    """
    check_branch(current_user, branch_id)
    start = parse_instant(body.start, "start")
    try:
        result = get_enrollment(db, body.enrollment_id)
        if not isinstance(result, Rejected) and result.branch_id != branch_id:
            result = Rejected(ErrorKind.NOT_FOUND, "Enrollment not found")
        if not isinstance(result, Rejected):
            result = mark_attendance(
                db, body.enrollment_id, start, body.status,
                marked_by=current_user["user_id"], notes=body.notes,
            )
        return commit_or_reject(
            db, "mark attendance", result,
            "Attendance marked successfully", "Attendance not marked",
            record_to_dict,
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Failed to mark attendance")
