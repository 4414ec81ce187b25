"""
Error responses for the empanelment audit API.

Verification findings (invalid hashes, broken links, gaps) are returned as
data. Only bad requests, missing resources and storage outages surface
through these exceptions and handlers.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Error codes returned in the `code` field."""

    # Authentication errors (1xxx)
    INVALID_CREDENTIALS = "AUTH_1001"

    # Authorization errors (2xxx)
    PERMISSION_DENIED = "AUTHZ_2001"
    INSUFFICIENT_ROLE = "AUTHZ_2002"

    # Validation errors (3xxx)
    VALIDATION_ERROR = "VAL_3001"
    INVALID_INPUT = "VAL_3002"
    INVALID_SEQUENCE_RANGE = "VAL_3101"
    INVALID_CRON_EXPRESSION = "VAL_3102"
    INVALID_FINANCIAL_YEAR = "VAL_3103"
    INVALID_ALERT_PATTERN = "VAL_3104"

    # Resource errors (4xxx)
    RESOURCE_NOT_FOUND = "RES_4001"
    PREDEFINED_RULE_PROTECTED = "RES_4101"

    # System errors (6xxx)
    INTERNAL_ERROR = "SYS_6001"
    DATABASE_ERROR = "SYS_6002"
    SERVICE_UNAVAILABLE = "SYS_6005"


class ErrorDetail(BaseModel):
    field: str | None = None
    message: str


class APIException(HTTPException):
    """HTTPException carrying an ErrorCode."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: list[ErrorDetail] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message, headers=headers)


class NotFoundError(APIException):
    def __init__(self, resource: str, resource_id: str | None = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.RESOURCE_NOT_FOUND,
            message=message,
        )


class UnauthorizedError(APIException):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=ErrorCode.INVALID_CREDENTIALS,
            message=message,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(APIException):
    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=ErrorCode.INSUFFICIENT_ROLE,
            message=message,
        )


class ValidationError(APIException):
    """400 for a request the audit services rejected.

    `code` narrows the reason (bad sequence range, cron expression, ...).
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        field: str | None = None,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            details=[ErrorDetail(field=field, message=message)] if field else None,
        )


def create_error_response(
    code: ErrorCode,
    message: str,
    details: list[ErrorDetail] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    response = {
        "error": code.name.lower().replace("_", " ").title(),
        "code": code.value,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        response["details"] = [d.model_dump(exclude_none=True) for d in details]
    if request_id:
        response["request_id"] = request_id
    return response


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.code, exc.message, exc.details, _request_id(request)),
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render framework-raised HTTPExceptions (e.g. a missing bearer token) in the same shape."""
    status_to_code = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.INVALID_CREDENTIALS,
        403: ErrorCode.PERMISSION_DENIED,
        404: ErrorCode.RESOURCE_NOT_FOUND,
        422: ErrorCode.INVALID_INPUT,
        503: ErrorCode.SERVICE_UNAVAILABLE,
    }
    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else "An error occurred"

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(code, message, request_id=_request_id(request)),
        headers=getattr(exc, "headers", None),
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    The audit store could not be read or written.

    A verification that fails here has produced no result; the client gets
    503 and may retry.
    """
    logger.error(
        f"Audit storage unavailable on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"event_type": "audit.storage.unavailable"},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=create_error_response(
            ErrorCode.DATABASE_ERROR,
            "Audit storage is unavailable",
            request_id=_request_id(request),
        ),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            ErrorCode.INTERNAL_ERROR,
            "An unexpected error occurred",
            request_id=_request_id(request),
        ),
    )
