from pydantic import BaseModel
from typing import Any, Optional
from fastapi.responses import JSONResponse

from atelier.core.errors import Rejected
from atelier.database import commit

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[Any] = None

def success_response(message: str, data=None):
    return APIResponse(
        success=True,
        message=message,
        data=data,
        error=None
    )

def error_response(message: str, code: int, details=None):
    return APIResponse(
        success=False,
        message=message,
        data=None,
        error={
            "code": code,
            "details": details
        }
    )

def rejection_response(message: str, rejected: Rejected) -> JSONResponse:
    """
    Business refusal from the engine, sent with its own HTTP status.
    The error kind travels in the body so clients can branch on it.
    """
    body = error_response(
        message=message,
        code=rejected.status_code,
        details={
            "kind": rejected.kind.value,
            "reason": rejected.detail,
            "data": rejected.data,
        }
    )
    return JSONResponse(status_code=rejected.status_code, content=body.dict())

def server_error_response(message: str) -> JSONResponse:
    body = error_response(message=message, code=500, details="Internal server error")
    return JSONResponse(status_code=500, content=body.dict())

def commit_or_reject(db, operation: str, result, message: str, failure: str, render=None):
    """Commit a successful engine result, or roll back and send the refusal."""
    if isinstance(result, Rejected):
        db.rollback()
        return rejection_response(failure, result)
    commit(db, operation)
    return success_response(message=message, data=render(result) if render else result)
