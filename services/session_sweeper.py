"""Background sweep that deletes sessions past their expiry."""

import asyncio
from typing import Optional
from services.session_service import SessionService
from utils.logger import get_logger

logger = get_logger(__name__)

MAX_CONSECUTIVE_FAILURES = 5


class SessionSweeper:

    def __init__(self, sessions: SessionService, interval_seconds: float):
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Session sweeper is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Session sweeper started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session sweeper stopped")

    async def sweep_once(self) -> int:
        # Store calls block, keep them off the event loop
        removed = await asyncio.to_thread(self.sessions.purge_expired)
        if removed:
            logger.info("Expired sessions removed", extra={"removed": removed})
        return removed

    async def _sweep_loop(self) -> None:
        consecutive_failures = 0

        while self._running:
            try:
                await self.sweep_once()
                consecutive_failures = 0
            except Exception as e:
                consecutive_failures += 1
                logger.error(
                    f"Session sweep failed ({consecutive_failures}/{MAX_CONSECUTIVE_FAILURES}): {e}",
                    exc_info=True,
                )
                if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    logger.critical(
                        "Session sweep keeps failing; expired sessions are accumulating. "
                        "Check the token store connection."
                    )
                    consecutive_failures = 0

            await asyncio.sleep(self.interval_seconds)
