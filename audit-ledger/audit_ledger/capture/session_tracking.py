"""
Session Activity Middleware
===========================
Keeps ``last_activity`` of cookie-authenticated sessions fresh and records
an ACCESS event when the user opens one of the main pages.

Activity writes go through a throttle, so a session is touched at most once
per window no matter how many requests it makes.
"""

from typing import Optional, Sequence

from starlette.requests import Request
import structlog

from ..audit.service import AuditService
from ..config import AuditSettings
from ..sessions.throttle import InMemoryActivityThrottle
from .middleware import DEFAULT_SESSION_COOKIE, get_scope_principal, request_context

logger = structlog.get_logger(__name__)

DEFAULT_MAIN_PAGE_PREFIXES = (
    "/dashboard",
    "/contacts",
    "/leads",
    "/opportunities",
    "/tickets",
    "/tasks",
)


class SessionActivityMiddleware:
    """
    Args:
        app: The wrapped ASGI application
        service: Audit service owning the session store
        throttle: InMemoryActivityThrottle or RedisActivityThrottle
        cookie_name: Cookie carrying the session token
        main_page_prefixes: GET paths that count as opening the app ("/" always does)
        settings: AuditSettings sizing the default in-memory throttle window
    """

    def __init__(
        self,
        app,
        service: AuditService,
        throttle=None,
        cookie_name: str = DEFAULT_SESSION_COOKIE,
        main_page_prefixes: Sequence[str] = DEFAULT_MAIN_PAGE_PREFIXES,
        settings: Optional[AuditSettings] = None,
    ):
        self.app = app
        self.service = service
        if throttle is None and settings is not None:
            throttle = InMemoryActivityThrottle.from_settings(settings)
        elif throttle is None:
            throttle = InMemoryActivityThrottle()
        self.throttle = throttle
        self.cookie_name = cookie_name
        self.main_page_prefixes = tuple(main_page_prefixes)

    def is_main_page_access(self, method: str, path: str) -> bool:
        if method != "GET":
            return False
        return path == "/" or any(path.startswith(prefix) for prefix in self.main_page_prefixes)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        await self.app(scope, receive, send)

        principal = get_scope_principal(scope)
        if principal is None:
            return
        session_token: Optional[str] = Request(scope).cookies.get(self.cookie_name)
        if not session_token:
            return

        try:
            touch = await self.throttle.should_touch(session_token)
        except Exception as e:
            logger.warning("activity_throttle_failed", error=str(e))
            touch = False

        if self.is_main_page_access(scope.get("method", ""), scope.get("path", "")):
            context = request_context(scope, self.cookie_name, self.service.metadata_ua_length)
            self.service.submit(
                self.service.log_app_access(
                    principal.user_id,
                    principal.company_id,
                    session_token,
                    context,
                    touch=touch,
                )
            )
        elif touch:
            self.service.submit(self.service.sessions.touch(session_token))
