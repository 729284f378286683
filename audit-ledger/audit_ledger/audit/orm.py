"""
Ledger Table
============
ORM mapping for ``audit_logs`` and the guards that keep it append-only.

Immutability is enforced twice:
- database triggers created together with the table reject UPDATE / DELETE
  (and TRUNCATE on PostgreSQL) no matter which client issues them;
- ORM events reject flushes of modified or deleted rows and ORM bulk
  UPDATE / DELETE statements before they reach the database.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DDL,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from ..database import Base
from ..errors import LedgerImmutableError
from .event_types import EntityType, Operation


def _in_list(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class AuditLog(Base):
    """One immutable ledger row."""
    __tablename__ = "audit_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=True)  # NULL for session/auth events
    operation = Column(String(20), nullable=False)
    user_id = Column(Integer, nullable=False)
    company_id = Column(Integer, nullable=False)
    field_name = Column(String(100), nullable=True)
    # JSON text written through audit.codec
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_id = Column(String(255), nullable=True)
    session_duration = Column(Integer, nullable=True)
    access_method = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    metadata_ = Column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    is_sensitive = Column(Boolean, nullable=False, default=False)
    record_hash = Column(String(64), nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(_in_list("entity_type", EntityType), name="ck_audit_logs_entity_type"),
        CheckConstraint(_in_list("operation", Operation), name="ck_audit_logs_operation"),
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
        Index("ix_audit_logs_company_created", "company_id", "created_at"),
        Index("ix_audit_logs_sensitive_created", "is_sensitive", "created_at"),
        Index("ix_audit_logs_operation_created", "operation", "created_at"),
        Index("ix_audit_logs_entity_field", "entity_type", "field_name"),
        Index("ix_audit_logs_session_created", "session_id", "created_at"),
    )


# -- Database triggers -------------------------------------------------------

IMMUTABLE_MESSAGE = "audit_logs is append-only"

_SQLITE_TRIGGERS = [
    "CREATE TRIGGER IF NOT EXISTS audit_logs_no_update BEFORE UPDATE ON audit_logs "
    f"BEGIN SELECT RAISE(ABORT, '{IMMUTABLE_MESSAGE}'); END",
    "CREATE TRIGGER IF NOT EXISTS audit_logs_no_delete BEFORE DELETE ON audit_logs "
    f"BEGIN SELECT RAISE(ABORT, '{IMMUTABLE_MESSAGE}'); END",
]

_POSTGRES_TRIGGERS = [
    "CREATE OR REPLACE FUNCTION audit_logs_reject_mutation() RETURNS trigger AS $$ "
    f"BEGIN RAISE EXCEPTION '{IMMUTABLE_MESSAGE}' USING ERRCODE = 'insufficient_privilege'; END; "
    "$$ LANGUAGE plpgsql",
    "CREATE TRIGGER audit_logs_no_mutation BEFORE UPDATE OR DELETE ON audit_logs "
    "FOR EACH ROW EXECUTE FUNCTION audit_logs_reject_mutation()",
    "CREATE TRIGGER audit_logs_no_truncate BEFORE TRUNCATE ON audit_logs "
    "FOR EACH STATEMENT EXECUTE FUNCTION audit_logs_reject_mutation()",
]

for _statement in _SQLITE_TRIGGERS:
    event.listen(AuditLog.__table__, "after_create", DDL(_statement).execute_if(dialect="sqlite"))

for _statement in _POSTGRES_TRIGGERS:
    event.listen(AuditLog.__table__, "after_create", DDL(_statement).execute_if(dialect="postgresql"))


# -- ORM guards --------------------------------------------------------------

@event.listens_for(AuditLog, "before_update")
def _reject_update(mapper, connection, target):
    raise LedgerImmutableError("Audit logs are immutable. Updates are not permitted.")


@event.listens_for(AuditLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise LedgerImmutableError("Audit logs are immutable. Deletes are not permitted.")


def _targets_ledger(orm_execute_state) -> bool:
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditLog:
        return True
    return getattr(orm_execute_state.statement, "table", None) is AuditLog.__table__


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_mutation(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if _targets_ledger(orm_execute_state):
        kind = "updates" if orm_execute_state.is_update else "deletes"
        raise LedgerImmutableError(f"Audit logs are immutable. Bulk {kind} are not permitted.")
