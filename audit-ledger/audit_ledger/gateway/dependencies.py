"""
Gateway Dependencies
====================
FastAPI dependencies resolving the caller and enforcing the admin role.

The host application authenticates the request and stores the caller on
``request.state.principal`` (any object with ``user_id``, ``company_id`` and
``role``, optionally ``session_token``).
"""

from fastapi import Depends, HTTPException, Request
import structlog

from ..audit.models import Principal
from ..audit.service import AuditService
from ..errors import AccessDeniedError

logger = structlog.get_logger(__name__)


def get_principal(request: Request) -> Principal:
    caller = getattr(request.state, "principal", None)
    if caller is None:
        logger.warning("audit_request_unauthenticated", path=request.url.path)
        raise HTTPException(status_code=401, detail="Authentication required")
    if isinstance(caller, Principal):
        return caller
    return Principal(
        user_id=caller.user_id,
        company_id=caller.company_id,
        role=caller.role,
        session_token=getattr(caller, "session_token", None),
    )


def administrator_dependency(service: AuditService):
    """Build a dependency admitting only the service's administrator role."""

    async def require_administrator(principal: Principal = Depends(get_principal)) -> Principal:
        if not service.is_admin(principal.role):
            raise AccessDeniedError("Access denied. Administrator role required.")
        return principal

    return require_administrator
