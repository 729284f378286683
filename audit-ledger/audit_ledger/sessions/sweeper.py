"""
Idle Session Sweeper
====================
Background worker that periodically deactivates idle sessions.

Start it from the host application's lifespan:

    sweeper = IdleSessionSweeper(session_store, max_idle_minutes=60, interval=300)
    sweeper.start()
    yield
    await sweeper.stop()
"""

import asyncio
from typing import Optional

import structlog

from .store import SessionStore

logger = structlog.get_logger(__name__)


class IdleSessionSweeper:
    """Runs ``SessionStore.sweep_expired`` every ``interval`` seconds."""

    def __init__(self, store: SessionStore, max_idle_minutes: int = 60, interval: float = 300):
        self.store = store
        self.max_idle_minutes = max_idle_minutes
        self.interval = interval
        self.running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, store: SessionStore) -> "IdleSessionSweeper":
        return cls(
            store,
            max_idle_minutes=settings.session_idle_minutes,
            interval=settings.sweep_interval_seconds,
        )

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            "session_sweeper_started",
            interval=self.interval,
            max_idle_minutes=self.max_idle_minutes,
        )

    async def stop(self) -> None:
        self.running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("session_sweeper_stopped")

    async def sweep_once(self) -> int:
        """One sweep; failures are logged and reported as zero swept."""
        try:
            return await self.store.sweep_expired(self.max_idle_minutes)
        except Exception as e:
            logger.error("session_sweep_failed", error=str(e), exc_info=True)
            return 0

    async def _run(self) -> None:
        while self.running:
            await self.sweep_once()
            await asyncio.sleep(self.interval)
