"""Error envelope shared by every endpoint."""

from typing import Any

from pydantic import BaseModel

# HTTP status -> envelope code
ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


class ErrorDetail(BaseModel):
    """Structured error detail."""

    code: str
    message: str
    detail: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Error envelope: { "error": { "code": str, "message": str, "detail": object } }"""

    error: ErrorDetail

    @classmethod
    def for_status(cls, status_code: int, message: str, detail: dict[str, Any] | None = None) -> "ErrorResponse":
        return cls(error=ErrorDetail(code=ERROR_CODES.get(status_code, "ERROR"), message=message, detail=detail))
