"""Idle client eviction.

Cached clients hold an aiohttp session (and, for SAP, token/CSRF state). The
reaper periodically closes clients that have not been used for a while.

Usage:
    reaper = IdleClientReaper(service, idle_seconds=900)
    reaper.start()
    ...
    await reaper.stop()
"""

import asyncio
from typing import Optional

from core.connections.service import ConnectionService
from core.observability.logging import get_logger

logger = get_logger(__name__)


class IdleClientReaper:
    """Background task evicting idle clients from a ConnectionService.

    Stopping is explicit: stop() sets an asyncio.Event the loop waits on, so
    shutdown does not depend on task cancellation landing mid-eviction.
    """

    def __init__(
        self,
        service: ConnectionService,
        idle_seconds: float = 900.0,
        interval_seconds: Optional[float] = None,
    ):
        self.service = service
        self.idle_seconds = idle_seconds
        # Check a few times per idle window
        self.interval_seconds = interval_seconds or max(1.0, idle_seconds / 4)
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the reaper on the running event loop (no-op if already running)."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="erp-idle-client-reaper")
        logger.info(
            "Idle client reaper started",
            extra_fields={"idle_seconds": self.idle_seconds, "interval_seconds": self.interval_seconds},
        )

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event = None
        logger.info("Idle client reaper stopped")

    async def run_once(self) -> int:
        """Run a single eviction pass."""
        return await self.service.evict_idle(self.idle_seconds)

    async def _run(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Idle client eviction failed: {e}", exc_info=True)
