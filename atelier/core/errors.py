import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    SCHEDULE_NOT_FOUND = "schedule_not_found"
    SLOT_NOT_IN_SCHEDULE = "slot_not_in_schedule"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    DUPLICATE_RESCHEDULE = "duplicate_reschedule"
    DUPLICATE_ENROLLMENT = "duplicate_enrollment"
    OUT_OF_WINDOW = "out_of_window"
    NOT_ENROLLED = "not_enrolled"
    INVALID_TOKEN = "invalid_token"
    INFRASTRUCTURE = "infrastructure"


HTTP_STATUS = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.SCHEDULE_NOT_FOUND: 400,
    ErrorKind.SLOT_NOT_IN_SCHEDULE: 400,
    ErrorKind.CAPACITY_EXCEEDED: 409,
    ErrorKind.DUPLICATE_RESCHEDULE: 403,
    ErrorKind.DUPLICATE_ENROLLMENT: 409,
    ErrorKind.OUT_OF_WINDOW: 403,
    ErrorKind.NOT_ENROLLED: 403,
    ErrorKind.INVALID_TOKEN: 400,
    ErrorKind.INFRASTRUCTURE: 500,
}


@dataclass(frozen=True)
class Rejected:
    """An expected business outcome that denies the request."""
    kind: ErrorKind
    detail: str = ""
    data: Optional[Any] = None

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


class InfrastructureError(Exception):
    """The store failed; the caller only sees a generic failure."""

    kind = ErrorKind.INFRASTRUCTURE


@contextmanager
def store_errors(operation: str):
    """Log store failures once and surface them as InfrastructureError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s", operation)
        raise InfrastructureError(operation) from exc
