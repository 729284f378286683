"""
Audit Hashing
=============
Per-record integrity digests for ledger entries.

Each record is checksummed on its own; records are not chained.
"""

import json
import hashlib
from datetime import datetime
from typing import Any, Optional, Union

import structlog

from ..clock import as_utc
from .event_types import EntityType, Operation

logger = structlog.get_logger(__name__)


def canonical_timestamp(value: datetime) -> str:
    """
    Fixed-width UTC timestamp with microseconds.

    Stable across storage backends that drop the offset (SQLite) or keep it
    (PostgreSQL), so a stored ``created_at`` re-hashes to the same digest.
    """
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def compute_record_hash(
    entity_type: Union[EntityType, str],
    entity_id: Optional[int],
    operation: Union[Operation, str],
    field_name: Optional[str],
    old_value: Any,
    new_value: Any,
    actor_user_id: int,
    timestamp: datetime,
) -> str:
    """
    Compute the integrity digest for a ledger record.

    Args:
        entity_type: Entity category
        entity_id: Entity row id, None for session/auth events
        operation: Ledger operation
        field_name: Changed field for field-level updates
        old_value: Previous value, already normalized through the codec
        new_value: New value, already normalized through the codec
        actor_user_id: Acting user (or the unknown-actor sentinel)
        timestamp: The record's ``created_at``

    Returns:
        Hex-encoded SHA-256 digest
    """
    hash_input = json.dumps({
        "entity_type": EntityType(entity_type).value,
        "entity_id": entity_id,
        "operation": Operation(operation).value,
        "field_name": field_name,
        "old_value": old_value,
        "new_value": new_value,
        "actor_user_id": actor_user_id,
        "timestamp": canonical_timestamp(timestamp),
    }, sort_keys=True, separators=(',', ':'), default=str)

    return hashlib.sha256(hash_input.encode()).hexdigest()


def verify_record_hash(
    stored_hash: Optional[str],
    entity_type: Union[EntityType, str],
    entity_id: Optional[int],
    operation: Union[Operation, str],
    field_name: Optional[str],
    old_value: Any,
    new_value: Any,
    actor_user_id: int,
    created_at: Optional[datetime],
) -> bool:
    """
    Re-hash a stored record using its stored ``created_at``.

    Returns False on mismatch or on data that cannot be hashed at all;
    never raises.
    """
    if not stored_hash or created_at is None:
        return False
    try:
        expected_hash = compute_record_hash(
            entity_type,
            entity_id,
            operation,
            field_name,
            old_value,
            new_value,
            actor_user_id,
            created_at,
        )
    except (TypeError, ValueError) as e:
        logger.warning("audit_record_unhashable", error=str(e))
        return False

    if stored_hash != expected_hash:
        logger.warning(
            "audit_record_integrity_violation",
            expected_hash=expected_hash[:16],
            actual_hash=stored_hash[:16],
        )
        return False
    return True
