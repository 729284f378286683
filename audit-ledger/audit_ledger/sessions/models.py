"""
Session Models
==============
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..clock import as_utc


@dataclass(frozen=True)
class SessionInfo:
    """Detached view of a ``user_sessions`` row."""
    id: int
    user_id: int
    company_id: int
    session_token: str
    login_at: datetime
    last_activity: datetime
    is_active: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_method: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    location_info: Dict[str, Any] = field(default_factory=dict)
    logout_at: Optional[datetime] = None
    terminated_by: Optional[int] = None
    logout_method: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "SessionInfo":
        return cls(
            id=row.id,
            user_id=row.user_id,
            company_id=row.company_id,
            session_token=row.session_token,
            login_at=as_utc(row.login_at),
            last_activity=as_utc(row.last_activity),
            is_active=row.is_active,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            login_method=row.login_method,
            device_info=dict(row.device_info or {}),
            location_info=dict(row.location_info or {}),
            logout_at=as_utc(row.logout_at) if row.logout_at is not None else None,
            terminated_by=row.terminated_by,
            logout_method=row.logout_method,
        )

    @property
    def duration_seconds(self) -> Optional[int]:
        """Whole seconds from login to logout; None while active."""
        if self.logout_at is None:
            return None
        return int((self.logout_at - self.login_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "company_id": self.company_id,
            "session_token": self.session_token,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "login_method": self.login_method,
            "device_info": self.device_info,
            "location_info": self.location_info,
            "login_at": self.login_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "logout_at": self.logout_at.isoformat() if self.logout_at else None,
            "is_active": self.is_active,
            "logout_method": self.logout_method,
            "session_duration": self.duration_seconds,
        }
