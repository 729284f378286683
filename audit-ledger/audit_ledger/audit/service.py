"""
Audit Service
=============
Builds, hashes and stores ledger records, and serves role-filtered reads.

Write policy: ``log_change`` is best-effort. A failed ledger write is logged
to the operational log and ``None`` is returned; it never raises into the
business operation that triggered it. ``submit`` detaches a write from the
caller entirely.

Read policy:
- entity types in the high-security set are administrator-only as a whole;
- sensitive records are hidden from non-administrators;
- every read is scoped to the caller's company.

Usage:
    service = AuditService(session_factory)
    service.submit(service.log_change(EntityType.CONTACT, 7, Operation.DELETE, user_id, company_id))
"""

import asyncio
from typing import Any, Awaitable, FrozenSet, List, Optional, Protocol, Set, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from ..clock import utcnow
from ..errors import (
    AccessDeniedError,
    InvalidAuditRecordError,
    RecordNotFoundError,
    SessionNotFoundError,
    WriteFailureError,
)
from ..metrics import AUDIT_RECORDS_WRITTEN, AUDIT_WRITE_FAILURES, INTEGRITY_CHECKS
from ..sessions.device import extract_device_info, location_info
from ..sessions.models import SessionInfo
from ..sessions.store import SessionStore
from .codec import decode_value_strict, encode_value, normalize_value
from .event_types import (
    DEFAULT_HIGH_SECURITY_ENTITIES,
    SESSION_ENTITY_TYPES,
    SESSION_OPERATIONS,
    EntityType,
    LoginMethod,
    LogoutMethod,
    Operation,
    derive_sensitivity,
)
from .hashing import compute_record_hash, verify_record_hash
from .models import AuditContext, AuditRecord, AuditStats, LedgerQuery, Page, Principal
from .orm import AuditLog
from .store import LedgerStore

logger = structlog.get_logger(__name__)


class UserDirectory(Protocol):
    """Lookup used to attribute failed logins to a known user."""

    async def find_user_id(self, email: str, company_id: Optional[int]) -> Optional[int]:
        ...


def _entity_type(value: Union[EntityType, str]) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise InvalidAuditRecordError(f"Unknown entity type: {value}")


def _operation(value: Union[Operation, str]) -> Operation:
    try:
        return Operation(value)
    except ValueError:
        raise InvalidAuditRecordError(f"Unknown operation: {value}")


class AuditService:
    """
    Orchestrates the ledger and session stores.

    Args:
        session_factory: Async session factory shared by both stores
        admin_role: Role name with unrestricted read access
        high_security_entities: Entity types whose history is admin-only
        unknown_actor_id: Actor/company id for failed logins of unknown users
        session_idle_minutes: Default idle threshold for session cleanup
        device_ua_length: User agent length kept in session device info
        metadata_ua_length: User agent length kept in record metadata
        user_directory: Optional lookup for failed-login attribution
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        admin_role: str = "Administrator",
        high_security_entities: FrozenSet[EntityType] = DEFAULT_HIGH_SECURITY_ENTITIES,
        unknown_actor_id: int = 0,
        session_idle_minutes: int = 60,
        device_ua_length: int = 255,
        metadata_ua_length: int = 100,
        user_directory: Optional[UserDirectory] = None,
    ):
        self.admin_role = admin_role
        self.high_security_entities = frozenset(high_security_entities)
        self.unknown_actor_id = unknown_actor_id
        self.session_idle_minutes = session_idle_minutes
        self.device_ua_length = device_ua_length
        self.metadata_ua_length = metadata_ua_length
        self.user_directory = user_directory

        self.ledger = LedgerStore(session_factory)
        self.sessions = SessionStore(session_factory, audit_sink=self)
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, session_factory, user_directory=None) -> "AuditService":
        return cls(
            session_factory,
            admin_role=settings.admin_role,
            high_security_entities=settings.high_security_entities,
            unknown_actor_id=settings.unknown_actor_id,
            session_idle_minutes=settings.session_idle_minutes,
            device_ua_length=settings.device_ua_length,
            metadata_ua_length=settings.metadata_ua_length,
            user_directory=user_directory,
        )

    # -- Policy ---------------------------------------------------------------

    def is_admin(self, role: Optional[str]) -> bool:
        return role == self.admin_role

    def is_sensitive(self, entity_type: Union[EntityType, str], operation: Union[Operation, str]) -> bool:
        return derive_sensitivity(entity_type, operation, self.high_security_entities)

    def _require_admin(self, principal: Principal, message: str) -> None:
        if not self.is_admin(principal.role):
            raise AccessDeniedError(message)

    def _require_self_or_admin(self, principal: Principal, target_user_id: int, message: str) -> None:
        if target_user_id != principal.user_id and not self.is_admin(principal.role):
            raise AccessDeniedError(message)

    # -- Writes ---------------------------------------------------------------

    def build_row(
        self,
        entity_type: Union[EntityType, str],
        entity_id: Optional[int],
        operation: Union[Operation, str],
        actor_user_id: int,
        company_id: int,
        field_name: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        context: Optional[AuditContext] = None,
    ) -> AuditLog:
        """
        Build a ledger row with its timestamp and digest.

        ``created_at`` and ``record_hash`` are derived from the same instant
        here, so the stored timestamp always re-hashes to the stored digest.
        """
        entity_type = _entity_type(entity_type)
        operation = _operation(operation)
        context = context or AuditContext()

        old_value = normalize_value(old_value)
        new_value = normalize_value(new_value)
        created_at = utcnow()

        return AuditLog(
            entity_type=entity_type.value,
            entity_id=entity_id,
            operation=operation.value,
            user_id=actor_user_id,
            company_id=company_id,
            field_name=field_name,
            old_value=encode_value(old_value),
            new_value=encode_value(new_value),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            session_id=context.session_id,
            session_duration=context.session_duration_seconds,
            access_method=context.access_method,
            metadata_=normalize_value(dict(context.metadata)),
            created_at=created_at,
            is_sensitive=self.is_sensitive(entity_type, operation),
            is_deleted=False,
            record_hash=compute_record_hash(
                entity_type,
                entity_id,
                operation,
                field_name,
                old_value,
                new_value,
                actor_user_id,
                created_at,
            ),
        )

    async def log_change(
        self,
        entity_type: Union[EntityType, str],
        entity_id: Optional[int],
        operation: Union[Operation, str],
        actor_user_id: int,
        company_id: int,
        field_name: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        context: Optional[AuditContext] = None,
    ) -> Optional[AuditRecord]:
        """
        Append one ledger record.

        Returns:
            The stored record, or None if it could not be written
        """
        try:
            row = self.build_row(
                entity_type,
                entity_id,
                operation,
                actor_user_id,
                company_id,
                field_name=field_name,
                old_value=old_value,
                new_value=new_value,
                context=context,
            )
            record = await self.ledger.insert(row)
        except Exception as e:
            entity_label = str(getattr(entity_type, "value", entity_type))
            operation_label = str(getattr(operation, "value", operation))
            AUDIT_WRITE_FAILURES.labels(entity_type=entity_label, operation=operation_label).inc()
            logger.error(
                "audit_write_failed",
                entity_type=entity_label,
                entity_id=entity_id,
                operation=operation_label,
                field_name=field_name,
                company_id=company_id,
                error=str(e),
                exc_info=True,
            )
            return None

        AUDIT_RECORDS_WRITTEN.labels(
            entity_type=record.entity_type.value,
            operation=record.operation.value,
        ).inc()
        return record

    def submit(self, coro: Awaitable) -> asyncio.Task:
        """Run an audit coroutine detached from the caller."""
        task = asyncio.create_task(self._run_detached(coro))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run_detached(self, coro: Awaitable) -> None:
        try:
            await coro
        except Exception as e:
            logger.error("audit_task_failed", error=str(e), exc_info=True)

    async def drain(self) -> None:
        """Wait for every detached audit task, including ones scheduled meanwhile."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Session events -------------------------------------------------------

    async def record_logout(
        self,
        session: SessionInfo,
        context: Optional[AuditContext] = None,
    ) -> Optional[AuditRecord]:
        """Emit the LOGOUT record for a session that has just ended."""
        context = context or AuditContext()
        duration = session.duration_seconds
        metadata = {
            "session_id": session.id,
            "session_duration": f"{(duration or 0) // 60} minutes",
            "logout_method": session.logout_method,
        }
        if session.terminated_by is not None:
            metadata["terminated_by"] = session.terminated_by
        metadata.update(context.metadata)

        return await self.log_change(
            EntityType.SESSION,
            session.id,
            Operation.LOGOUT,
            session.user_id,
            session.company_id,
            context=AuditContext(
                ip_address=context.ip_address or session.ip_address,
                user_agent=context.user_agent or session.user_agent,
                session_id=session.session_token,
                session_duration_seconds=duration,
                metadata=metadata,
            ),
        )

    async def log_login(
        self,
        user_id: int,
        company_id: int,
        session_token: str,
        context: Optional[AuditContext] = None,
        login_method: Union[LoginMethod, str] = LoginMethod.PASSWORD,
    ) -> Optional[AuditRecord]:
        """
        Open a session and record the LOGIN.

        Raises:
            WriteFailureError: The session row could not be created
        """
        context = context or AuditContext()
        login_method = LoginMethod(login_method).value
        device_info = extract_device_info(context.user_agent, self.device_ua_length)

        session = await self.sessions.create(
            user_id,
            company_id,
            session_token,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            login_method=login_method,
            device_info=device_info,
            location_info=location_info(context.ip_address),
        )

        return await self.log_change(
            EntityType.SESSION,
            session.id,
            Operation.LOGIN,
            user_id,
            company_id,
            context=AuditContext(
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session_id=session_token,
                access_method=login_method,
                metadata={
                    "session_id": session.id,
                    "login_method": login_method,
                    "device_info": device_info,
                    **context.metadata,
                },
            ),
        )

    async def log_logout(
        self,
        user_id: int,
        company_id: int,
        session_token: str,
        context: Optional[AuditContext] = None,
    ) -> Optional[AuditRecord]:
        """
        End a session on user request.

        Returns None when there is no active session for the token.
        """
        try:
            session = await self.sessions.terminate(
                session_token,
                terminated_by=user_id,
                logout_method=LogoutMethod.MANUAL.value,
                notify=False,
            )
        except SessionNotFoundError:
            logger.info("logout_without_active_session", user_id=user_id, company_id=company_id)
            return None
        except WriteFailureError as e:
            logger.error("logout_failed", user_id=user_id, company_id=company_id, error=e.message)
            return None
        return await self.record_logout(session, context)

    async def log_app_access(
        self,
        user_id: int,
        company_id: int,
        session_token: str,
        context: Optional[AuditContext] = None,
        touch: bool = True,
    ) -> Optional[AuditRecord]:
        """Record an app open on an existing session, refreshing its activity unless ``touch`` is False."""
        context = context or AuditContext()
        if touch:
            try:
                await self.sessions.touch(session_token)
            except WriteFailureError as e:
                logger.warning("session_touch_failed", user_id=user_id, error=e.message)

        return await self.log_change(
            EntityType.SESSION,
            None,
            Operation.ACCESS,
            user_id,
            company_id,
            context=AuditContext(
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session_id=session_token,
                access_method="cookie_auth",
                metadata={"access_type": "app_open", "auth_method": "existing_session", **context.metadata},
            ),
        )

    async def log_failed_login(
        self,
        email: str,
        company_id: Optional[int],
        context: Optional[AuditContext] = None,
        reason: str = "invalid_credentials",
    ) -> Optional[AuditRecord]:
        """Record a failed authentication attempt, attributed when the user is known."""
        context = context or AuditContext()
        actor_user_id = None
        if self.user_directory is not None:
            try:
                actor_user_id = await self.user_directory.find_user_id(email, company_id)
            except Exception as e:
                logger.warning("failed_login_user_lookup_failed", error=str(e))

        return await self.log_change(
            EntityType.AUTH,
            None,
            Operation.FAILED_LOGIN,
            actor_user_id if actor_user_id is not None else self.unknown_actor_id,
            company_id if company_id is not None else self.unknown_actor_id,
            context=AuditContext(
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                metadata={
                    "attempted_email": email,
                    "failure_reason": reason,
                    "timestamp": utcnow().isoformat(),
                    **context.metadata,
                },
            ),
        )

    # -- Ledger reads ---------------------------------------------------------

    async def get_entity_history(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        principal: Principal,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[AuditRecord]:
        entity_type = _entity_type(entity_type)
        admin = self.is_admin(principal.role)
        if entity_type in self.high_security_entities and not admin:
            raise AccessDeniedError(
                "Access denied. Administrator role required to view sensitive audit logs."
            )

        query = LedgerQuery(
            company_id=principal.company_id,
            entity_type=entity_type,
            entity_id=entity_id,
            is_sensitive=None if admin else False,
        )
        return await self.ledger.query(query, limit, offset)

    async def get_user_activity(
        self,
        target_user_id: int,
        principal: Principal,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[AuditRecord]:
        self._require_self_or_admin(
            principal,
            target_user_id,
            "Access denied. Administrator role required to view other users' activity.",
        )
        query = LedgerQuery(
            company_id=principal.company_id,
            actor_user_id=target_user_id,
            is_sensitive=None if self.is_admin(principal.role) else False,
        )
        return await self.ledger.query(query, limit, offset)

    async def get_company_audit_trail(
        self,
        principal: Principal,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[AuditRecord]:
        self._require_admin(principal, "Access denied. Administrator role required to view company audit trail.")
        return await self.ledger.query(LedgerQuery(company_id=principal.company_id), limit, offset)

    async def get_audit_stats(self, principal: Principal) -> AuditStats:
        self._require_admin(principal, "Access denied. Administrator role required to view audit statistics.")
        base = LedgerQuery(company_id=principal.company_id)
        start_of_day = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

        return AuditStats(
            total_logs=await self.ledger.count(base),
            today_logs=await self.ledger.count(
                LedgerQuery(company_id=principal.company_id, created_from=start_of_day)
            ),
            sensitive_logs=await self.ledger.count(
                LedgerQuery(company_id=principal.company_id, is_sensitive=True)
            ),
            operation_stats=await self.ledger.operation_counts(base),
        )

    async def get_recent_activity(self, principal: Principal, limit: int = 20) -> List[AuditRecord]:
        query = LedgerQuery(
            company_id=principal.company_id,
            is_sensitive=None if self.is_admin(principal.role) else False,
        )
        page = await self.ledger.query(query, limit, 0)
        return page.rows

    async def list_logs(
        self,
        principal: Principal,
        entity_type: Optional[Union[EntityType, str]] = None,
        operation: Optional[Union[Operation, str]] = None,
        created_from=None,
        created_to=None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[AuditRecord]:
        """Filtered ledger listing; non-administrators never see admin-only rows."""
        admin = self.is_admin(principal.role)
        query = LedgerQuery(
            company_id=principal.company_id,
            entity_type=_entity_type(entity_type) if entity_type else None,
            operation=_operation(operation) if operation else None,
            created_from=created_from,
            created_to=created_to,
            is_sensitive=None if admin else False,
            exclude_entity_types=None if admin else self.high_security_entities,
        )
        return await self.ledger.query(query, limit, offset)

    async def get_log(self, record_id: int, principal: Principal) -> AuditRecord:
        record = await self.ledger.get(record_id, company_id=principal.company_id)
        if record is None:
            raise RecordNotFoundError("Audit log not found.")
        if not self.is_admin(principal.role) and (
            record.is_sensitive or record.entity_type in self.high_security_entities
        ):
            raise AccessDeniedError("Access denied. Administrator role required to view this audit log.")
        return record

    async def get_user_session_history(
        self,
        principal: Principal,
        target_user_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page[AuditRecord]:
        target_user_id = principal.user_id if target_user_id is None else target_user_id
        self._require_self_or_admin(
            principal,
            target_user_id,
            "Access denied. Administrator role required to view other users' session history.",
        )
        query = LedgerQuery(
            company_id=principal.company_id,
            actor_user_id=target_user_id,
            entity_types=SESSION_ENTITY_TYPES,
            operations=SESSION_OPERATIONS,
        )
        return await self.ledger.query(query, limit, offset)

    # -- Session reads and control -------------------------------------------

    async def get_active_sessions(self, target_user_id: int, principal: Principal) -> List[SessionInfo]:
        self._require_self_or_admin(
            principal,
            target_user_id,
            "Access denied. Can only view your own active sessions.",
        )
        return await self.sessions.list_active(target_user_id, principal.company_id)

    async def list_company_active_sessions(self, principal: Principal) -> List[SessionInfo]:
        self._require_admin(principal, "Access denied. Administrator role required to view company sessions.")
        return await self.sessions.list_company_active(principal.company_id)

    async def find_active_session(self, session_token: str) -> Optional[SessionInfo]:
        return await self.sessions.get_active(session_token)

    async def terminate_session(
        self,
        session_token: str,
        acting_user_id: int,
        acting_role: str,
        context: Optional[AuditContext] = None,
    ) -> SessionInfo:
        """
        End a session on behalf of its owner or an administrator.

        Administrators may end any session; restricting them to their own
        company is left to the caller.

        Raises:
            SessionNotFoundError: Token unknown or session already terminated
            AccessDeniedError: A non-administrator targeting another user's session
            WriteFailureError: The storage layer rejected the change
        """
        session = await self.sessions.get_active(session_token)
        if session is None:
            raise SessionNotFoundError("Session not found or already terminated.")

        own = session.user_id == acting_user_id
        if not own and not self.is_admin(acting_role):
            raise AccessDeniedError("Access denied. Can only terminate your own sessions.")

        method = LogoutMethod.MANUAL if own else LogoutMethod.FORCED
        return await self.sessions.terminate(
            session_token,
            terminated_by=acting_user_id,
            logout_method=method.value,
            context=context,
        )

    async def cleanup_expired_sessions(self, max_idle_minutes: Optional[int] = None) -> int:
        """Sweep idle sessions; returns the number deactivated."""
        minutes = self.session_idle_minutes if max_idle_minutes is None else max_idle_minutes
        return await self.sessions.sweep_expired(minutes)

    # -- Integrity ------------------------------------------------------------

    async def verify_record_integrity(self, record_id: int, company_id: Optional[int] = None) -> bool:
        """
        Re-hash a stored record and compare with its stored digest.

        False on mismatch, on a missing record and on malformed stored data.
        """
        try:
            row = await self.ledger.get_row(record_id, company_id)
            if row is None:
                INTEGRITY_CHECKS.labels(result="missing").inc()
                return False
            is_valid = verify_record_hash(
                row.record_hash,
                row.entity_type,
                row.entity_id,
                row.operation,
                row.field_name,
                decode_value_strict(row.old_value),
                decode_value_strict(row.new_value),
                row.user_id,
                row.created_at,
            )
        except Exception as e:
            INTEGRITY_CHECKS.labels(result="error").inc()
            logger.warning("audit_integrity_check_failed", record_id=record_id, error=str(e))
            return False

        INTEGRITY_CHECKS.labels(result="valid" if is_valid else "mismatch").inc()
        return is_valid
