"""
Audit Ledger Bootstrap
======================
Wires the ledger into a FastAPI host from one AuditSettings instance.

Usage:
    ledger = AuditLedger.from_settings(AuditSettings.from_env())
    app = FastAPI(lifespan=lambda app: ledger.running())
    ledger.install(app, routes={"/api/contacts": "contact"}, registry=registry)
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional, Union

from fastapi import FastAPI
import structlog

from .audit.event_types import EntityType
from .audit.service import AuditService, UserDirectory
from .capture.middleware import ChangeCaptureMiddleware
from .capture.providers import SnapshotRegistry
from .capture.session_tracking import SessionActivityMiddleware
from .config import AuditSettings
from .database import close_engine, create_async_engine, create_session_factory, init_models
from .errors import register_exception_handlers
from .gateway import create_audit_router
from .logging_setup import configure_logging
from .sessions.sweeper import IdleSessionSweeper
from .sessions.throttle import InMemoryActivityThrottle, RedisActivityThrottle

logger = structlog.get_logger(__name__)


class AuditLedger:
    """Engine, service, sweeper and throttle built from one settings object."""

    def __init__(self, settings: AuditSettings, engine, service: AuditService, sweeper: IdleSessionSweeper, throttle):
        self.settings = settings
        self.engine = engine
        self.service = service
        self.sweeper = sweeper
        self.throttle = throttle

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AuditSettings] = None,
        redis_client=None,
        user_directory: Optional[UserDirectory] = None,
        configure_logs: bool = True,
    ) -> "AuditLedger":
        """
        Build every component from settings.

        Args:
            settings: Defaults to AuditSettings.from_env()
            redis_client: Async Redis client; shares the activity throttle across instances
            user_directory: Lookup for failed-login attribution
            configure_logs: Configure structlog from the logging settings
        """
        settings = settings or AuditSettings.from_env()
        if configure_logs:
            configure_logging(settings.service_name, level=settings.log_level, json_output=settings.log_json)

        engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            echo=settings.db_echo,
        )
        service = AuditService.from_settings(settings, create_session_factory(engine), user_directory)
        sweeper = IdleSessionSweeper.from_settings(settings, service.sessions)
        if redis_client is not None:
            throttle = RedisActivityThrottle.from_settings(settings, redis_client)
        else:
            throttle = InMemoryActivityThrottle.from_settings(settings)
        return cls(settings, engine, service, sweeper, throttle)

    def install(
        self,
        app: FastAPI,
        routes: Mapping[str, Union[EntityType, str]],
        registry: Optional[SnapshotRegistry] = None,
        router_prefix: str = "/api/audit-logs",
    ) -> None:
        """
        Add the audit router, error mapping and both middlewares to ``app``.

        Add the host's auth middleware after this call so it runs first and
        the principal is on ``request.state`` when the capture layer reads it.
        """
        register_exception_handlers(app)
        app.include_router(create_audit_router(self.service, prefix=router_prefix))
        app.add_middleware(
            SessionActivityMiddleware,
            service=self.service,
            throttle=self.throttle,
            settings=self.settings,
        )
        app.add_middleware(
            ChangeCaptureMiddleware,
            service=self.service,
            routes=routes,
            registry=registry,
            settings=self.settings,
        )
        logger.info(
            "audit_ledger_installed",
            routes=sorted(routes),
            skip_prefixes=list(self.settings.skip_prefixes),
        )

    @asynccontextmanager
    async def running(self) -> AsyncIterator["AuditLedger"]:
        """Lifespan: schema, sweeper, then drain and dispose on the way out."""
        await init_models(self.engine)
        self.sweeper.start()
        try:
            yield self
        finally:
            await self.sweeper.stop()
            await self.service.drain()
            await close_engine(self.engine)
