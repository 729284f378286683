"""
Audit Ledger Errors
===================
Exception taxonomy for the audit subsystem and its HTTP mapping.

Access denials and missing records are always reported to the caller.
Everything else reaches HTTP clients as a generic server error carrying only
an error identifier; the technical detail goes to the log.
"""

import uuid
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "The audit service could not complete the request."


class AuditLedgerError(Exception):
    """Base exception for the audit subsystem."""
    code = "AUDIT_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(message)


class AccessDeniedError(AuditLedgerError):
    """Raised on a role or ownership violation."""
    code = "ACCESS_DENIED"
    status_code = 403


class NotFoundError(AuditLedgerError):
    """Raised when the requested record or session does not exist."""
    code = "NOT_FOUND"
    status_code = 404


class RecordNotFoundError(NotFoundError):
    code = "RECORD_NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    """Raised when a session is absent or already terminated."""
    code = "SESSION_NOT_FOUND"


class WriteFailureError(AuditLedgerError):
    """Raised when an explicit state change failed at the storage layer."""
    code = "WRITE_FAILURE"
    status_code = 500


class LedgerImmutableError(AuditLedgerError):
    """Raised on any attempt to update or delete ledger rows."""
    code = "LEDGER_IMMUTABLE"
    status_code = 500


class InvalidAuditRecordError(AuditLedgerError, ValueError):
    """Raised for an unknown entity type or operation."""
    code = "INVALID_AUDIT_RECORD"
    status_code = 422


def error_body(message: str, code: str, error_id: Optional[str] = None) -> dict:
    body = {"success": False, "message": message, "code": code}
    if error_id:
        body["error_id"] = error_id
    return body


async def audit_error_handler(request: Request, exc: AuditLedgerError) -> JSONResponse:
    if isinstance(exc, (AccessDeniedError, NotFoundError, InvalidAuditRecordError)):
        if isinstance(exc, AccessDeniedError):
            logger.warning("audit_access_denied", path=request.url.path, reason=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.code),
        )
    return await unhandled_error_handler(request, exc)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error_id = uuid.uuid4().hex[:12]
    logger.error(
        "audit_request_failed",
        error_id=error_id,
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_body(GENERIC_ERROR_MESSAGE, "INTERNAL_ERROR", error_id),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the audit error mapping on a FastAPI application."""
    app.add_exception_handler(AuditLedgerError, audit_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
