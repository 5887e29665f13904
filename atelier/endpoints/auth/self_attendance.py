from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, validator
from sqlalchemy.orm import Session

from atelier.core.checkin import check_in
from atelier.core.errors import InfrastructureError
from atelier.core.utils.customize_response import (
    commit_or_reject, server_error_response
)
from atelier.core.utils.helpers import get_current_user
from atelier.database import get_db
from atelier.models import UserRole


router = APIRouter(prefix="/api/class", tags=["Self Attendance"])


class ClassCheckRequest(BaseModel):
    class_key: str

    @validator('class_key')
    def validate_class_key(cls, v):
        if not v.strip():
            raise ValueError('class_key cannot be empty')
        return v.strip()


def _check(db: Session, class_key: str, current_user: dict):
    if current_user["role"] != UserRole.STUDENT:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only students can check in"
        )
    try:
        result = check_in(db, class_key, current_user["user_id"])
        return commit_or_reject(
            db, "check in", result,
            "Attendance marked successfully", "Check-in failed",
            lambda outcome: outcome.to_dict(),
        )
    except InfrastructureError:
        db.rollback()
        return server_error_response("Check-in failed")


@router.post("/check")
def check_class(
    body: ClassCheckRequest,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Mark the calling student present from a scanned class key."""
    return _check(db, body.class_key, current_user)


@router.get("/check")
def check_class_link(
    k: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Same as POST, for QR codes that open a link."""
    return _check(db, k, current_user)
