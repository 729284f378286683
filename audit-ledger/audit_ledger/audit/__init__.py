"""
Audit Ledger Module
===================
Append-only ledger of entity changes and session events.
Each record carries its own integrity digest; records are not chained.
"""

from .event_types import (
    EntityType,
    Operation,
    LoginMethod,
    LogoutMethod,
    DEFAULT_HIGH_SECURITY_ENTITIES,
    derive_sensitivity,
    operation_for_method,
)
from .codec import encode_value, decode_value, decode_value_strict
from .hashing import compute_record_hash, verify_record_hash
from .models import AuditRecord, AuditContext, AuditStats, LedgerQuery, Page, Principal
from .orm import AuditLog
from .store import LedgerStore
from .service import AuditService, UserDirectory

__all__ = [
    # Event Types
    "EntityType",
    "Operation",
    "LoginMethod",
    "LogoutMethod",
    "DEFAULT_HIGH_SECURITY_ENTITIES",
    "derive_sensitivity",
    "operation_for_method",
    # Codec
    "encode_value",
    "decode_value",
    "decode_value_strict",
    # Hashing
    "compute_record_hash",
    "verify_record_hash",
    # Models
    "AuditRecord",
    "AuditContext",
    "AuditStats",
    "LedgerQuery",
    "Page",
    "Principal",
    # Storage
    "AuditLog",
    "LedgerStore",
    # Service
    "AuditService",
    "UserDirectory",
]
