"""
Error taxonomy for the task board.

Every error raised by the ledger, the resolver or the HTTP client derives
from BoardError, so callers can catch one type and still tell permanent
failures (NotFound, InvalidLane, ...) from transient ones (TransportFailure).
"""
from typing import Optional


class BoardError(Exception):
    """Base class for all task board errors."""
    code = "board_error"
    status = 500
    retryable = False
    user_message = "Something went wrong"

    def __init__(self, message: str = "", task_id: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.task_id = task_id

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class NotFound(BoardError):
    """Task (or lane) reference does not exist."""
    code = "not_found"
    status = 404
    user_message = "Task not found"


class InvalidLane(BoardError):
    """Lane value outside the fixed enumeration."""
    code = "invalid_lane"
    status = 400
    user_message = "Invalid lane"


class InvalidReference(BoardError):
    """A write would break a constraint on the owning row."""
    code = "invalid_reference"
    status = 400
    user_message = "Invalid reference"


class ValidationFailed(BoardError):
    """Request payload failed validation."""
    code = "validation_error"
    status = 400
    user_message = "Invalid request"


class ConcurrencyConflict(BoardError):
    """The row changed since the caller last read it."""
    code = "conflict"
    status = 409
    user_message = "Task was changed by someone else"


class TransportFailure(BoardError):
    """Network or storage unavailable. Always safe to retry."""
    code = "transport_failure"
    status = 503
    retryable = True
    user_message = "Connection problem, try again"


_BY_CODE = {
    cls.code: cls
    for cls in (NotFound, InvalidLane, InvalidReference, ValidationFailed,
                ConcurrencyConflict, TransportFailure)
}


def error_from_payload(status: int, payload: Optional[dict]) -> BoardError:
    """Rebuild a BoardError from an API error response."""
    payload = payload or {}
    message = payload.get("error", "")
    cls = _BY_CODE.get(payload.get("code", ""))
    if cls is None:
        if status == 404:
            cls = NotFound
        elif status == 409:
            cls = ConcurrencyConflict
        elif 400 <= status < 500:
            cls = ValidationFailed
        else:
            cls = TransportFailure
    return cls(message)


def describe_failure(error: Exception) -> tuple:
    """
    Short user-facing text for a failed move, and whether a retry makes sense.

    Anything that is not a BoardError is treated as a transport problem.
    """
    if isinstance(error, BoardError):
        if error.retryable:
            return f"{error.user_message}: move not saved", True
        return f"{error.user_message}: move reverted", False
    return f"{TransportFailure.user_message}: move not saved", True
