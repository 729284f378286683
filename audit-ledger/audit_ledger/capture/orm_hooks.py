"""
ORM Audit Hooks
===============
SQLAlchemy session events that feed the ledger from the host's own models,
for changes made outside the HTTP capture path (jobs, scripts, services).

- flushed inserts -> one CREATE record with the new column values
- flushed updates -> one UPDATE record per changed column
- flushed deletes -> one DELETE record with the last column values
- ORM bulk insert / update / delete statements -> one record, no entity id

Records are collected during the transaction and handed to
``AuditService.submit`` after commit; a rollback discards them. The acting
principal is read from ``session.info["audit_principal"]``; sessions without
one are not audited.

Usage:
    class HostSession(Session):
        pass

    hooks = OrmAuditHooks(audit_service)
    hooks.register(Contact, EntityType.CONTACT)
    hooks.register_sensitive(User, EntityType.USER)
    hooks.install(HostSession)

    factory = async_sessionmaker(engine, sync_session_class=HostSession)
    async with factory() as db:
        db.info["audit_principal"] = principal
        ...
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from sqlalchemy import event, inspect
import structlog

from ..audit.event_types import EntityType, Operation
from ..audit.models import AuditContext
from ..audit.service import AuditService
from .diff import IGNORED_FIELDS, compute_field_changes

logger = structlog.get_logger(__name__)

PRINCIPAL_KEY = "audit_principal"
CONTEXT_KEY = "audit_context"
_PENDING_KEY = "_audit_pending"

REDACTED = "[REDACTED]"

DEFAULT_SENSITIVE_FIELDS: Dict[EntityType, FrozenSet[str]] = {
    EntityType.USER: frozenset({"password_hash", "role", "email", "is_active"}),
    EntityType.COMPANY: frozenset({"ms365_client_secret", "api_keys", "billing_info"}),
}

# Stored as REDACTED instead of their value
DEFAULT_REDACTED_FIELDS = frozenset({"password_hash", "ms365_client_secret", "api_keys"})


@dataclass(frozen=True)
class ModelAudit:
    """Audit settings for one mapped class."""
    entity_type: EntityType
    sensitive_fields: FrozenSet[str] = frozenset()
    redacted_fields: FrozenSet[str] = DEFAULT_REDACTED_FIELDS
    excluded_fields: FrozenSet[str] = IGNORED_FIELDS
    security_events: bool = False
    role_field: str = "role"
    active_field: str = "is_active"


@dataclass
class PendingRecord:
    entity_type: EntityType
    entity_id: Optional[int]
    operation: Operation
    field_name: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _single_id(mapper, obj) -> Optional[int]:
    key = mapper.primary_key_from_instance(obj)
    if len(key) == 1 and isinstance(key[0], int) and not isinstance(key[0], bool):
        return key[0]
    return None


class OrmAuditHooks:
    """
    Session-level audit hooks for registered models.

    Args:
        service: Audit service receiving the records
    """

    def __init__(self, service: AuditService):
        self.service = service
        self.models: Dict[type, ModelAudit] = {}

    def register(
        self,
        model: type,
        entity_type: Union[EntityType, str],
        sensitive_fields: Iterable[str] = (),
        redacted_fields: Iterable[str] = DEFAULT_REDACTED_FIELDS,
        excluded_fields: Iterable[str] = IGNORED_FIELDS,
    ) -> ModelAudit:
        config = ModelAudit(
            entity_type=EntityType(entity_type),
            sensitive_fields=frozenset(sensitive_fields),
            redacted_fields=frozenset(redacted_fields),
            excluded_fields=frozenset(excluded_fields),
        )
        self.models[model] = config
        return config

    def register_sensitive(
        self,
        model: type,
        entity_type: Union[EntityType, str],
        sensitive_fields: Iterable[str] = (),
        role_field: str = "role",
        active_field: str = "is_active",
        **kwargs,
    ) -> ModelAudit:
        """
        Register a high-security model.

        Adds the default sensitive fields for the entity type and, for users,
        a SECURITY record whenever the role or the active flag changes.
        """
        entity_type = EntityType(entity_type)
        base = self.register(
            model,
            entity_type,
            sensitive_fields=DEFAULT_SENSITIVE_FIELDS.get(entity_type, frozenset()) | frozenset(sensitive_fields),
            **kwargs,
        )
        config = ModelAudit(
            entity_type=base.entity_type,
            sensitive_fields=base.sensitive_fields,
            redacted_fields=base.redacted_fields,
            excluded_fields=base.excluded_fields,
            security_events=entity_type is EntityType.USER,
            role_field=role_field,
            active_field=active_field,
        )
        self.models[model] = config
        return config

    # -- Event wiring ---------------------------------------------------------

    def install(self, target) -> None:
        """Listen on a Session subclass or sessionmaker."""
        event.listen(target, "after_flush", self._after_flush)
        event.listen(target, "do_orm_execute", self._do_orm_execute)
        event.listen(target, "after_commit", self._after_commit)
        event.listen(target, "after_rollback", self._after_rollback)

    def uninstall(self, target) -> None:
        event.remove(target, "after_flush", self._after_flush)
        event.remove(target, "do_orm_execute", self._do_orm_execute)
        event.remove(target, "after_commit", self._after_commit)
        event.remove(target, "after_rollback", self._after_rollback)

    def config_for(self, obj_or_class) -> Optional[ModelAudit]:
        cls = obj_or_class if isinstance(obj_or_class, type) else type(obj_or_class)
        for klass in cls.__mro__:
            if klass in self.models:
                return self.models[klass]
        return None

    # -- Events ---------------------------------------------------------------

    def _after_flush(self, session, flush_context) -> None:
        if session.info.get(PRINCIPAL_KEY) is None:
            return
        try:
            pending = session.info.setdefault(_PENDING_KEY, [])
            for obj in session.new:
                config = self.config_for(obj)
                if config is not None:
                    pending.extend(self._created(obj, config))
            for obj in session.dirty:
                config = self.config_for(obj)
                if config is not None:
                    pending.extend(self._updated(obj, config))
            for obj in session.deleted:
                config = self.config_for(obj)
                if config is not None:
                    pending.extend(self._deleted(obj, config))
        except Exception as e:
            logger.error("orm_audit_collect_failed", error=str(e), exc_info=True)

    def _do_orm_execute(self, orm_execute_state) -> None:
        if not (orm_execute_state.is_insert or orm_execute_state.is_update or orm_execute_state.is_delete):
            return
        session = orm_execute_state.session
        if session.info.get(PRINCIPAL_KEY) is None:
            return
        try:
            mapper = orm_execute_state.bind_mapper
            config = self.config_for(mapper.class_) if mapper is not None else None
            if config is None:
                return
            if orm_execute_state.is_insert:
                operation, kind = Operation.CREATE, "BULK_CREATE"
            elif orm_execute_state.is_update:
                operation, kind = Operation.UPDATE, "BULK_UPDATE"
            else:
                operation, kind = Operation.DELETE, "BULK_DELETE"
            session.info.setdefault(_PENDING_KEY, []).append(
                PendingRecord(
                    config.entity_type,
                    None,
                    operation,
                    metadata={
                        "source": "orm",
                        "operation_type": kind,
                        "statement": str(orm_execute_state.statement),
                    },
                )
            )
        except Exception as e:
            logger.error("orm_audit_collect_failed", error=str(e), exc_info=True)

    def _after_commit(self, session) -> None:
        pending = session.info.pop(_PENDING_KEY, None)
        if not pending:
            return
        principal = session.info.get(PRINCIPAL_KEY)
        context = session.info.get(CONTEXT_KEY) or AuditContext()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Plain synchronous engine outside any event loop
            logger.error("orm_audit_not_scheduled", records=len(pending))
            return
        self.service.submit(self.write(principal, pending, context))

    def _after_rollback(self, session) -> None:
        session.info.pop(_PENDING_KEY, None)

    # -- Record building ------------------------------------------------------

    def _values(self, obj, config: ModelAudit) -> Dict[str, Any]:
        state = inspect(obj)
        values = {}
        for attr in state.mapper.column_attrs:
            if attr.key in config.excluded_fields or attr.key not in state.dict:
                continue
            values[attr.key] = self._mask(attr.key, state.dict[attr.key], config)
        return values

    @staticmethod
    def _mask(field_name: str, value: Any, config: ModelAudit) -> Any:
        if field_name in config.redacted_fields and value is not None:
            return REDACTED
        return value

    def _created(self, obj, config: ModelAudit) -> List[PendingRecord]:
        values = self._values(obj, config)
        return [
            PendingRecord(
                config.entity_type,
                _single_id(inspect(obj).mapper, obj),
                Operation.CREATE,
                new_value=values,
                metadata={
                    "source": "orm",
                    "fields_created": len(values),
                    "sensitive_fields": sorted(config.sensitive_fields & set(values)),
                },
            )
        ]

    def _updated(self, obj, config: ModelAudit) -> List[PendingRecord]:
        state = inspect(obj)
        before, after = {}, {}
        for attr in state.mapper.column_attrs:
            if attr.key in config.excluded_fields:
                continue
            history = state.attrs[attr.key].history
            if not history.has_changes():
                continue
            before[attr.key] = history.deleted[0] if history.deleted else None
            after[attr.key] = history.added[0] if history.added else None

        changes = compute_field_changes(before, after)
        entity_id = _single_id(state.mapper, obj)
        records = [
            PendingRecord(
                config.entity_type,
                entity_id,
                Operation.UPDATE,
                field_name=change.field_name,
                old_value=self._mask(change.field_name, change.old_value, config),
                new_value=self._mask(change.field_name, change.new_value, config),
                metadata={
                    "source": "orm",
                    "is_sensitive_field": change.field_name in config.sensitive_fields,
                    "total_changes": len(changes),
                },
            )
            for change in changes
        ]
        if config.security_events:
            records.extend(self._security_events(config, entity_id, changes))
        return records

    def _security_events(self, config: ModelAudit, entity_id, changes) -> List[PendingRecord]:
        events = []
        for change in changes:
            if change.field_name == config.role_field:
                kind = "ROLE_CHANGE"
            elif change.field_name == config.active_field:
                kind = "ACCOUNT_ACTIVATED" if change.new_value else "ACCOUNT_DEACTIVATED"
            else:
                continue
            events.append(
                PendingRecord(
                    EntityType.SECURITY,
                    entity_id,
                    Operation.UPDATE,
                    field_name=change.field_name,
                    old_value=change.old_value,
                    new_value=change.new_value,
                    metadata={
                        "source": "orm",
                        "security_event": True,
                        "event_type": kind,
                        "target_entity_type": config.entity_type.value,
                        "target_entity_id": entity_id,
                        "requires_review": True,
                    },
                )
            )
        return events

    def _deleted(self, obj, config: ModelAudit) -> List[PendingRecord]:
        values = self._values(obj, config)
        return [
            PendingRecord(
                config.entity_type,
                _single_id(inspect(obj).mapper, obj),
                Operation.DELETE,
                old_value=values,
                metadata={"source": "orm", "deleted_fields": sorted(values)},
            )
        ]

    async def write(self, principal, pending: List[PendingRecord], context: AuditContext) -> None:
        """Write collected records in flush order."""
        for item in pending:
            await self.service.log_change(
                item.entity_type,
                item.entity_id,
                item.operation,
                principal.user_id,
                principal.company_id,
                field_name=item.field_name,
                old_value=item.old_value,
                new_value=item.new_value,
                context=AuditContext(
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    session_id=context.session_id,
                    metadata={**context.metadata, **item.metadata},
                ),
            )
