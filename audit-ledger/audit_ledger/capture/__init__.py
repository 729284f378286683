"""
Change Capture
==============
ASGI middleware feeding the ledger from the host application's requests.
"""

from .providers import EntitySnapshotProvider, CallableSnapshotProvider, SnapshotRegistry
from .diff import FieldChange, IGNORED_FIELDS, compute_field_changes
from .middleware import ChangeCaptureMiddleware, request_context
from .session_tracking import SessionActivityMiddleware
from .orm_hooks import OrmAuditHooks, ModelAudit, DEFAULT_SENSITIVE_FIELDS, DEFAULT_REDACTED_FIELDS

__all__ = [
    # Providers
    "EntitySnapshotProvider",
    "CallableSnapshotProvider",
    "SnapshotRegistry",
    # Diff
    "FieldChange",
    "IGNORED_FIELDS",
    "compute_field_changes",
    # Middleware
    "ChangeCaptureMiddleware",
    "SessionActivityMiddleware",
    "request_context",
    # ORM hooks
    "OrmAuditHooks",
    "ModelAudit",
    "DEFAULT_SENSITIVE_FIELDS",
    "DEFAULT_REDACTED_FIELDS",
]
