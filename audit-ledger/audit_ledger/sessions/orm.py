"""
Session Table
=============
ORM mapping for ``user_sessions``. Rows are mutable but never deleted;
terminated sessions stay for history.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from ..database import Base


class UserSession(Base):
    """One authenticated session."""
    __tablename__ = "user_sessions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    company_id = Column(Integer, nullable=False)
    session_token = Column(String(255), nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    login_method = Column(String(50), nullable=True)
    device_info = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    location_info = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    login_at = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True), nullable=False)
    logout_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    terminated_by = Column(Integer, nullable=True)
    logout_method = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_user_sessions_user_active", "user_id", "is_active"),
        Index("ix_user_sessions_token", "session_token", unique=True),
        Index("ix_user_sessions_last_activity", "last_activity"),
        Index("ix_user_sessions_company_active", "company_id", "is_active"),
        Index("ix_user_sessions_ip_created", "ip_address", "created_at"),
    )
