"""
Session Store
=============
Lifecycle of ``user_sessions`` rows.

State transitions are conditional UPDATE ... RETURNING statements, so two
concurrent terminations of one token cannot both succeed: the first flips
``is_active`` and the second matches no row.

Every termination is reported to the audit sink, if one is set, after the
state change has committed. A failing sink never turns a successful logout
into a failed one.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from ..clock import utcnow
from ..database import session_scope
from ..errors import SessionNotFoundError, WriteFailureError
from ..metrics import SESSIONS_TERMINATED
from .models import SessionInfo
from .orm import UserSession

logger = structlog.get_logger(__name__)


class SessionStore:
    """
    Create, touch, terminate and sweep sessions.

    Args:
        session_factory: Async session factory
        audit_sink: Object with ``async record_logout(session, context)``
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], audit_sink=None):
        self._session_factory = session_factory
        self.audit_sink = audit_sink

    async def create(
        self,
        user_id: int,
        company_id: int,
        session_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        login_method: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None,
        location_info: Optional[Dict[str, Any]] = None,
    ) -> SessionInfo:
        now = utcnow()
        row = UserSession(
            user_id=user_id,
            company_id=company_id,
            session_token=session_token,
            ip_address=ip_address,
            user_agent=user_agent,
            login_method=login_method,
            device_info=device_info or {},
            location_info=location_info or {},
            login_at=now,
            last_activity=now,
            is_active=True,
            created_at=now,
        )
        try:
            async with session_scope(self._session_factory) as db:
                db.add(row)
                await db.flush()
                session = SessionInfo.from_row(row)
        except SQLAlchemyError as e:
            raise WriteFailureError("Could not create session", details=str(e)) from e

        logger.info("session_created", session_id=session.id, user_id=user_id, company_id=company_id)
        return session

    async def touch(self, session_token: str) -> bool:
        """
        Move ``last_activity`` forward to now.

        Returns False when the session is unknown or inactive. The value never
        moves backwards.
        """
        now = utcnow()
        stmt = (
            update(UserSession)
            .where(
                UserSession.session_token == session_token,
                UserSession.is_active.is_(True),
                UserSession.last_activity < now,
            )
            .values(last_activity=now)
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self._session_factory) as db:
                result = await db.execute(stmt)
        except SQLAlchemyError as e:
            raise WriteFailureError("Could not update session activity", details=str(e)) from e
        return result.rowcount > 0

    async def get_active(self, session_token: str) -> Optional[SessionInfo]:
        stmt = select(UserSession).where(
            UserSession.session_token == session_token,
            UserSession.is_active.is_(True),
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return SessionInfo.from_row(row) if row is not None else None

    async def terminate(
        self,
        session_token: str,
        terminated_by: Optional[int],
        logout_method: str,
        context=None,
        notify: bool = True,
    ) -> SessionInfo:
        """
        Deactivate one session.

        Args:
            session_token: Token of the session to end
            terminated_by: Acting user id, None for system terminations
            logout_method: manual, forced_termination or idle_timeout
            context: Request context handed to the audit sink
            notify: Report the LOGOUT to the audit sink

        Raises:
            SessionNotFoundError: Token unknown or session already terminated
            WriteFailureError: The storage layer rejected the change
        """
        now = utcnow()
        stmt = (
            update(UserSession)
            .where(
                UserSession.session_token == session_token,
                UserSession.is_active.is_(True),
            )
            .values(
                is_active=False,
                logout_at=now,
                terminated_by=terminated_by,
                logout_method=logout_method,
            )
            .returning(UserSession)
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self._session_factory) as db:
                row = (await db.execute(stmt)).scalar_one_or_none()
                session = SessionInfo.from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise WriteFailureError("Could not terminate session", details=str(e)) from e

        if session is None:
            raise SessionNotFoundError("Session not found or already terminated.")

        SESSIONS_TERMINATED.labels(logout_method=logout_method).inc()
        logger.info(
            "session_terminated",
            session_id=session.id,
            user_id=session.user_id,
            terminated_by=terminated_by,
            logout_method=logout_method,
        )
        if notify:
            await self._report(session, context)
        return session

    async def list_active(self, user_id: int, company_id: int) -> List[SessionInfo]:
        stmt = (
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.company_id == company_id,
                UserSession.is_active.is_(True),
            )
            .order_by(UserSession.last_activity.desc())
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [SessionInfo.from_row(row) for row in rows]

    async def list_company_active(self, company_id: int) -> List[SessionInfo]:
        stmt = (
            select(UserSession)
            .where(
                UserSession.company_id == company_id,
                UserSession.is_active.is_(True),
            )
            .order_by(UserSession.last_activity.desc())
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [SessionInfo.from_row(row) for row in rows]

    async def sweep_expired(self, max_idle_minutes: int = 60, now: Optional[datetime] = None) -> int:
        """
        Deactivate every active session idle for longer than the threshold.

        Returns:
            Number of sessions swept
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=max_idle_minutes)
        stmt = (
            update(UserSession)
            .where(and_(UserSession.is_active.is_(True), UserSession.last_activity < cutoff))
            .values(is_active=False, logout_at=now, logout_method="idle_timeout")
            .returning(UserSession)
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self._session_factory) as db:
                rows = (await db.execute(stmt)).scalars().all()
                swept = [SessionInfo.from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise WriteFailureError("Could not sweep idle sessions", details=str(e)) from e

        if swept:
            SESSIONS_TERMINATED.labels(logout_method="idle_timeout").inc(len(swept))
            logger.info("idle_sessions_swept", count=len(swept), max_idle_minutes=max_idle_minutes)
        for session in swept:
            await self._report(session)
        return len(swept)

    async def _report(self, session: SessionInfo, context=None) -> None:
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.record_logout(session, context)
        except Exception as e:
            logger.error(
                "session_logout_audit_failed",
                session_id=session.id,
                error=str(e),
                exc_info=True,
            )
