"""
Audit Models
============
Domain-level values handed across the service boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Generic, List, Optional, TypeVar

from ..clock import as_utc
from .codec import decode_value
from .event_types import EntityType, Operation

T = TypeVar("T")


@dataclass(frozen=True)
class AuditRecord:
    """A persisted ledger entry with values decoded."""
    id: int
    entity_type: EntityType
    entity_id: Optional[int]
    operation: Operation
    actor_user_id: int
    company_id: int
    field_name: Optional[str]
    old_value: Any
    new_value: Any
    ip_address: Optional[str]
    user_agent: Optional[str]
    session_id: Optional[str]
    session_duration_seconds: Optional[int]
    access_method: Optional[str]
    metadata: Dict[str, Any]
    created_at: datetime
    is_sensitive: bool
    record_hash: str
    is_deleted: bool = False

    @classmethod
    def from_row(cls, row) -> "AuditRecord":
        return cls(
            id=row.id,
            entity_type=EntityType(row.entity_type),
            entity_id=row.entity_id,
            operation=Operation(row.operation),
            actor_user_id=row.user_id,
            company_id=row.company_id,
            field_name=row.field_name,
            old_value=decode_value(row.old_value),
            new_value=decode_value(row.new_value),
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            session_id=row.session_id,
            session_duration_seconds=row.session_duration,
            access_method=row.access_method,
            metadata=dict(row.metadata_ or {}),
            created_at=as_utc(row.created_at),
            is_sensitive=row.is_sensitive,
            record_hash=row.record_hash,
            is_deleted=row.is_deleted,
        )


@dataclass
class AuditContext:
    """Request and session context attached to a ledger record."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    session_duration_seconds: Optional[int] = None
    access_method: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerQuery:
    """
    Filter for ledger reads.

    ``company_id`` has no default: every ledger read is tenant-scoped.
    """
    company_id: int
    entity_type: Optional[EntityType] = None
    entity_id: Optional[int] = None
    actor_user_id: Optional[int] = None
    operation: Optional[Operation] = None
    entity_types: Optional[FrozenSet[EntityType]] = None
    operations: Optional[FrozenSet[Operation]] = None
    exclude_entity_types: Optional[FrozenSet[EntityType]] = None
    is_sensitive: Optional[bool] = None
    session_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


@dataclass
class Page(Generic[T]):
    """One page of a ledger or session read."""
    rows: List[T]
    total_count: int
    limit: int
    offset: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 1
        return (self.total_count + self.limit - 1) // self.limit


@dataclass
class AuditStats:
    total_logs: int
    today_logs: int
    sensitive_logs: int
    operation_stats: List[Dict[str, Any]]


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as supplied by the host application."""
    user_id: int
    company_id: int
    role: str
    session_token: Optional[str] = None
