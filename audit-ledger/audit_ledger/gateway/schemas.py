"""
Gateway Schemas
===============
Response and request bodies of the audit HTTP surface.
"""

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from ..audit.models import AuditRecord, AuditStats, Page
from ..sessions.models import SessionInfo

T = TypeVar("T")


class AuditLogOut(BaseModel):
    id: int
    entity_type: str
    entity_id: Optional[int] = None
    operation: str
    user_id: int
    company_id: int
    field_name: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    session_duration: Optional[int] = None
    access_method: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    is_sensitive: bool
    record_hash: str

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditLogOut":
        return cls(
            id=record.id,
            entity_type=record.entity_type.value,
            entity_id=record.entity_id,
            operation=record.operation.value,
            user_id=record.actor_user_id,
            company_id=record.company_id,
            field_name=record.field_name,
            old_value=record.old_value,
            new_value=record.new_value,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            session_id=record.session_id,
            session_duration=record.session_duration_seconds,
            access_method=record.access_method,
            metadata=record.metadata,
            created_at=record.created_at,
            is_sensitive=record.is_sensitive,
            record_hash=record.record_hash,
        )


class SessionOut(BaseModel):
    id: int
    user_id: int
    company_id: int
    session_token: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_method: Optional[str] = None
    device_info: Dict[str, Any] = Field(default_factory=dict)
    location_info: Dict[str, Any] = Field(default_factory=dict)
    login_at: datetime
    last_activity: datetime
    logout_at: Optional[datetime] = None
    is_active: bool
    logout_method: Optional[str] = None
    session_duration: Optional[int] = None
    is_current: bool = False

    @classmethod
    def from_session(cls, session: SessionInfo, current_token: Optional[str] = None) -> "SessionOut":
        return cls(
            **session.to_dict(),
            is_current=current_token is not None and session.session_token == current_token,
        )


class PageOut(BaseModel, Generic[T]):
    rows: List[T]
    total_count: int
    limit: int
    offset: int
    pages: int

    @classmethod
    def from_page(cls, page: Page[AuditRecord]) -> "PageOut[AuditLogOut]":
        return PageOut[AuditLogOut](
            rows=[AuditLogOut.from_record(record) for record in page.rows],
            total_count=page.total_count,
            limit=page.limit,
            offset=page.offset,
            pages=page.pages,
        )


class OperationCount(BaseModel):
    operation: str
    count: int


class AuditStatsOut(BaseModel):
    total_logs: int
    today_logs: int
    sensitive_logs: int
    operation_stats: List[OperationCount]

    @classmethod
    def from_stats(cls, stats: AuditStats) -> "AuditStatsOut":
        return cls(
            total_logs=stats.total_logs,
            today_logs=stats.today_logs,
            sensitive_logs=stats.sensitive_logs,
            operation_stats=[OperationCount(**item) for item in stats.operation_stats],
        )


class IntegrityOut(BaseModel):
    record_id: int
    is_valid: bool


class CleanupRequest(BaseModel):
    max_inactive_minutes: Optional[int] = Field(default=None, ge=1)


class CleanupOut(BaseModel):
    sessions_terminated: int


def envelope(data: Any, message: Optional[str] = None) -> Dict[str, Any]:
    """Standard success body: ``{"success": true, "data": ...}``."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body
