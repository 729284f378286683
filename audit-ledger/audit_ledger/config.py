"""
Audit Ledger Configuration
==========================
Settings read from the environment once, at startup.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

from .audit.event_types import EntityType

DEFAULT_HIGH_SECURITY_ENTITIES = "user,company,system,security"

# Self-referential and noisy endpoints never produce change records
DEFAULT_SKIP_PREFIXES = "/api/auth/check,/api/auth/logout,/api/search,/api/audit-logs"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def parse_entity_set(values) -> FrozenSet[EntityType]:
    """Parse entity type names into an immutable set, rejecting unknown names."""
    return frozenset(EntityType(value) for value in values)


@dataclass(frozen=True)
class AuditSettings:
    """Immutable audit subsystem settings."""

    database_url: str = "sqlite+aiosqlite:///./audit.db"
    db_echo: bool = False
    db_pool_size: int = 10
    db_max_overflow: int = 20

    admin_role: str = "Administrator"
    high_security_entities: FrozenSet[EntityType] = field(
        default_factory=lambda: parse_entity_set(DEFAULT_HIGH_SECURITY_ENTITIES.split(","))
    )

    session_idle_minutes: int = 60
    sweep_interval_seconds: int = 300
    activity_touch_seconds: int = 300

    skip_prefixes: Tuple[str, ...] = tuple(DEFAULT_SKIP_PREFIXES.split(","))
    unknown_actor_id: int = 0
    metadata_ua_length: int = 100
    device_ua_length: int = 255

    service_name: str = "audit-ledger"
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "AuditSettings":
        return cls(
            database_url=os.getenv("AUDIT_DATABASE_URL", cls.database_url),
            db_echo=_env_bool("AUDIT_DB_ECHO", "false"),
            db_pool_size=int(os.getenv("AUDIT_DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.getenv("AUDIT_DB_MAX_OVERFLOW", "20")),
            admin_role=os.getenv("AUDIT_ADMIN_ROLE", "Administrator"),
            high_security_entities=parse_entity_set(
                _env_list("AUDIT_HIGH_SECURITY_ENTITIES", DEFAULT_HIGH_SECURITY_ENTITIES)
            ),
            session_idle_minutes=int(os.getenv("AUDIT_SESSION_IDLE_MINUTES", "60")),
            sweep_interval_seconds=int(os.getenv("AUDIT_SWEEP_INTERVAL_SECONDS", "300")),
            activity_touch_seconds=int(os.getenv("AUDIT_ACTIVITY_TOUCH_SECONDS", "300")),
            skip_prefixes=_env_list("AUDIT_SKIP_PREFIXES", DEFAULT_SKIP_PREFIXES),
            unknown_actor_id=int(os.getenv("AUDIT_UNKNOWN_ACTOR_ID", "0")),
            metadata_ua_length=int(os.getenv("AUDIT_METADATA_UA_LENGTH", "100")),
            device_ua_length=int(os.getenv("AUDIT_DEVICE_UA_LENGTH", "255")),
            service_name=os.getenv("SERVICE_NAME", "audit-ledger"),
            log_level=os.getenv("AUDIT_LOG_LEVEL", "INFO"),
            log_json=_env_bool("AUDIT_LOG_JSON", "true"),
        )
