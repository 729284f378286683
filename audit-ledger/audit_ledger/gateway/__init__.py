"""
Access Gateway
==============
Role-checked HTTP surface of the audit ledger.
"""

from .dependencies import get_principal, administrator_dependency
from .routes import create_audit_router
from .schemas import AuditLogOut, SessionOut, PageOut, AuditStatsOut, envelope

__all__ = [
    "get_principal",
    "administrator_dependency",
    "create_audit_router",
    "AuditLogOut",
    "SessionOut",
    "PageOut",
    "AuditStatsOut",
    "envelope",
]
