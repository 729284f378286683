"""
Audit Gateway Routes
====================
Role-checked HTTP access to the ledger and to session management.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from ..audit.models import Principal
from ..audit.service import AuditService
from ..errors import SessionNotFoundError
from ..capture.middleware import request_context
from .dependencies import administrator_dependency, get_principal
from .schemas import (
    AuditLogOut,
    AuditStatsOut,
    CleanupOut,
    CleanupRequest,
    IntegrityOut,
    PageOut,
    SessionOut,
    envelope,
)

MAX_PAGE_SIZE = 500


def create_audit_router(service: AuditService, prefix: str = "/api/audit-logs") -> APIRouter:
    """
    Create the audit router.

    Args:
        service: Audit service backing every endpoint
        prefix: Mount prefix; keep it in the change-capture skip list

    Returns:
        FastAPI router; register ``register_exception_handlers`` on the app
        so access denials map to 403 and missing records to 404
    """
    router = APIRouter(prefix=prefix, tags=["Audit"])
    require_administrator = administrator_dependency(service)

    @router.get("")
    async def list_logs(
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        entity_type: Optional[str] = None,
        operation: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        principal: Principal = Depends(get_principal),
    ):
        page = await service.list_logs(
            principal,
            entity_type=entity_type,
            operation=operation,
            created_from=start_date,
            created_to=end_date,
            limit=limit,
            offset=offset,
        )
        return envelope(PageOut.from_page(page))

    @router.get("/recent")
    async def recent_activity(
        limit: int = Query(20, ge=1, le=100),
        principal: Principal = Depends(get_principal),
    ):
        records = await service.get_recent_activity(principal, limit)
        return envelope([AuditLogOut.from_record(record) for record in records])

    @router.get("/stats")
    async def audit_stats(principal: Principal = Depends(require_administrator)):
        stats = await service.get_audit_stats(principal)
        return envelope(AuditStatsOut.from_stats(stats))

    @router.get("/entity/{entity_type}/{entity_id}")
    async def entity_history(
        entity_type: str,
        entity_id: int,
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        principal: Principal = Depends(get_principal),
    ):
        page = await service.get_entity_history(entity_type, entity_id, principal, limit, offset)
        return envelope(PageOut.from_page(page))

    @router.get("/users/{user_id}/activity")
    async def user_activity(
        user_id: int,
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        principal: Principal = Depends(get_principal),
    ):
        page = await service.get_user_activity(user_id, principal, limit, offset)
        return envelope(PageOut.from_page(page))

    # -- Own sessions ---------------------------------------------------------

    @router.get("/sessions/my")
    async def my_sessions(principal: Principal = Depends(get_principal)):
        sessions = await service.get_active_sessions(principal.user_id, principal)
        return envelope([SessionOut.from_session(s, principal.session_token) for s in sessions])

    @router.get("/sessions/history")
    async def my_session_history(
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        principal: Principal = Depends(get_principal),
    ):
        page = await service.get_user_session_history(principal, principal.user_id, limit, offset)
        return envelope(PageOut.from_page(page))

    @router.post("/sessions/{token}/terminate")
    async def terminate_session(
        token: str,
        request: Request,
        principal: Principal = Depends(get_principal),
    ):
        session = await service.terminate_session(
            token,
            principal.user_id,
            principal.role,
            context=request_context(request.scope, ua_length=service.metadata_ua_length),
        )
        return envelope(SessionOut.from_session(session), message="Session terminated successfully")

    # -- Administration -------------------------------------------------------

    @router.get("/admin/company/trail")
    async def company_trail(
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        principal: Principal = Depends(require_administrator),
    ):
        page = await service.get_company_audit_trail(principal, limit, offset)
        return envelope(PageOut.from_page(page))

    @router.get("/admin/sessions/user/{user_id}")
    async def user_session_history(
        user_id: int,
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        principal: Principal = Depends(require_administrator),
    ):
        page = await service.get_user_session_history(principal, user_id, limit, offset)
        return envelope(PageOut.from_page(page))

    @router.get("/admin/sessions/active")
    async def company_active_sessions(principal: Principal = Depends(require_administrator)):
        sessions = await service.list_company_active_sessions(principal)
        return envelope([SessionOut.from_session(s, principal.session_token) for s in sessions])

    @router.post("/admin/sessions/{token}/force-logout")
    async def force_logout(
        token: str,
        request: Request,
        principal: Principal = Depends(require_administrator),
    ):
        # Administrators may only end sessions of their own company
        session = await service.find_active_session(token)
        if session is None or session.company_id != principal.company_id:
            raise SessionNotFoundError("Session not found or already terminated.")

        session = await service.terminate_session(
            token,
            principal.user_id,
            principal.role,
            context=request_context(request.scope, ua_length=service.metadata_ua_length),
        )
        return envelope(SessionOut.from_session(session), message="User session terminated successfully")

    @router.post("/admin/cleanup-sessions")
    async def cleanup_sessions(
        payload: Optional[CleanupRequest] = Body(default=None),
        principal: Principal = Depends(require_administrator),
    ):
        minutes = payload.max_inactive_minutes if payload is not None else None
        count = await service.cleanup_expired_sessions(minutes)
        return envelope(CleanupOut(sessions_terminated=count), message="Expired sessions cleaned up successfully")

    @router.get("/admin/integrity/{record_id}")
    async def verify_integrity(
        record_id: int,
        principal: Principal = Depends(require_administrator),
    ):
        is_valid = await service.verify_record_integrity(record_id, company_id=principal.company_id)
        return envelope(IntegrityOut(record_id=record_id, is_valid=is_valid))

    # Catch-all by id, declared last
    @router.get("/{record_id}")
    async def get_log(record_id: int, principal: Principal = Depends(get_principal)):
        record = await service.get_log(record_id, principal)
        return envelope(AuditLogOut.from_record(record))

    return router
