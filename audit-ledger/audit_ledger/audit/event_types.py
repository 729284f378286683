"""
Audit Event Types
=================
Closed enumerations for ledger records and the sensitivity rule.
"""

from enum import Enum
from typing import FrozenSet, Union


class EntityType(str, Enum):
    """Entity categories a ledger record can describe."""
    CONTACT = "contact"
    LEAD = "lead"
    OPPORTUNITY = "opportunity"
    COMPANY = "company"
    USER = "user"
    TASK = "task"
    TICKET = "ticket"
    SALE = "sale"
    SESSION = "session"
    AUTH = "auth"
    SYSTEM = "system"
    SECURITY = "security"


class Operation(str, Enum):
    """Operations recorded in the ledger."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS = "ACCESS"
    FAILED_LOGIN = "FAILED_LOGIN"


class LoginMethod(str, Enum):
    PASSWORD = "password"
    REMEMBER_ME = "remember_me"
    SESSION_RESUME = "session_resume"
    MICROSOFT_SSO = "microsoft_sso"
    MICROSOFT_SSO_INVITATION = "microsoft_sso_invitation"


class LogoutMethod(str, Enum):
    MANUAL = "manual"
    FORCED = "forced_termination"
    IDLE_TIMEOUT = "idle_timeout"


DEFAULT_HIGH_SECURITY_ENTITIES: FrozenSet[EntityType] = frozenset({
    EntityType.USER,
    EntityType.COMPANY,
    EntityType.SYSTEM,
    EntityType.SECURITY,
})

SENSITIVE_OPERATIONS: FrozenSet[Operation] = frozenset({
    Operation.LOGIN,
    Operation.LOGOUT,
    Operation.FAILED_LOGIN,
})

SESSION_ENTITY_TYPES: FrozenSet[EntityType] = frozenset({EntityType.SESSION, EntityType.AUTH})

SESSION_OPERATIONS: FrozenSet[Operation] = frozenset({
    Operation.LOGIN,
    Operation.LOGOUT,
    Operation.ACCESS,
    Operation.FAILED_LOGIN,
})

HTTP_METHOD_OPERATIONS = {
    "POST": Operation.CREATE,
    "PUT": Operation.UPDATE,
    "PATCH": Operation.UPDATE,
    "DELETE": Operation.DELETE,
}


def derive_sensitivity(
    entity_type: Union[EntityType, str],
    operation: Union[Operation, str],
    high_security_entities: FrozenSet[EntityType] = DEFAULT_HIGH_SECURITY_ENTITIES,
) -> bool:
    """A record is sensitive for a high-security entity type or a login/logout event."""
    return (
        EntityType(entity_type) in high_security_entities
        or Operation(operation) in SENSITIVE_OPERATIONS
    )


def operation_for_method(method: str):
    """Map an HTTP method to a ledger operation; None for reads."""
    return HTTP_METHOD_OPERATIONS.get(method.upper())
