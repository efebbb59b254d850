"""Error taxonomy for the allocation core.

Services raise ``AllocationError``; the API layer renders it in the
``{"error": {"code", "message", "details"}}`` envelope.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_STATE = "INVALID_STATE"
    OVER_ALLOCATION = "OVER_ALLOCATION"
    DUPLICATE_DESTINATION = "DUPLICATE_DESTINATION"
    DUPLICATE_LINK = "DUPLICATE_LINK"
    ALREADY_LINKED = "ALREADY_LINKED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    WRITE_CONFLICT = "WRITE_CONFLICT"
    AUDIT_WRITE_FAILED = "AUDIT_WRITE_FAILED"


HTTP_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.OVER_ALLOCATION: 409,
    ErrorCode.DUPLICATE_DESTINATION: 409,
    ErrorCode.DUPLICATE_LINK: 409,
    ErrorCode.ALREADY_LINKED: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.UPSTREAM_UNAVAILABLE: 503,
    ErrorCode.WRITE_CONFLICT: 409,
    ErrorCode.AUDIT_WRITE_FAILED: 500,
}


class AllocationError(Exception):
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details = details

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE[self.code]

    def to_dict(self) -> dict:
        body = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return {"error": body}

    def __repr__(self) -> str:
        return f"AllocationError({self.code.value}, {self.message!r})"


def not_found(entity: str) -> AllocationError:
    return AllocationError(ErrorCode.NOT_FOUND, f"{entity} not found")
