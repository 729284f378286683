"""
Audit Ledger
============
Append-only audit ledger, session tracking and role-filtered audit reads
for multi-tenant FastAPI applications.
"""

__version__ = "0.1.0"

# Config
from audit_ledger.config import AuditSettings

# Logging
from audit_ledger.logging_setup import configure_logging

# Errors
from audit_ledger.errors import (
    AuditLedgerError,
    AccessDeniedError,
    NotFoundError,
    RecordNotFoundError,
    SessionNotFoundError,
    WriteFailureError,
    LedgerImmutableError,
    InvalidAuditRecordError,
    register_exception_handlers,
)

# Database
from audit_ledger.database import (
    Base,
    create_async_engine,
    create_session_factory,
    init_models,
    close_engine,
)

# Ledger
from audit_ledger.audit import (
    EntityType,
    Operation,
    LoginMethod,
    LogoutMethod,
    AuditRecord,
    AuditContext,
    Principal,
    AuditService,
    compute_record_hash,
)

# Sessions
from audit_ledger.sessions import (
    SessionInfo,
    SessionStore,
    InMemoryActivityThrottle,
    RedisActivityThrottle,
    IdleSessionSweeper,
)

# Capture
from audit_ledger.capture import (
    ChangeCaptureMiddleware,
    SessionActivityMiddleware,
    SnapshotRegistry,
    CallableSnapshotProvider,
    OrmAuditHooks,
)

# Gateway
from audit_ledger.gateway import create_audit_router, get_principal

# Bootstrap
from audit_ledger.bootstrap import AuditLedger

__all__ = [
    "__version__",
    # Config
    "AuditSettings",
    "configure_logging",
    # Errors
    "AuditLedgerError",
    "AccessDeniedError",
    "NotFoundError",
    "RecordNotFoundError",
    "SessionNotFoundError",
    "WriteFailureError",
    "LedgerImmutableError",
    "InvalidAuditRecordError",
    "register_exception_handlers",
    # Database
    "Base",
    "create_async_engine",
    "create_session_factory",
    "init_models",
    "close_engine",
    # Ledger
    "EntityType",
    "Operation",
    "LoginMethod",
    "LogoutMethod",
    "AuditRecord",
    "AuditContext",
    "Principal",
    "AuditService",
    "compute_record_hash",
    # Sessions
    "SessionInfo",
    "SessionStore",
    "InMemoryActivityThrottle",
    "RedisActivityThrottle",
    "IdleSessionSweeper",
    # Capture
    "ChangeCaptureMiddleware",
    "SessionActivityMiddleware",
    "SnapshotRegistry",
    "CallableSnapshotProvider",
    "OrmAuditHooks",
    # Gateway
    "create_audit_router",
    "get_principal",
    # Bootstrap
    "AuditLedger",
]
