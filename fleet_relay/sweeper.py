"""
============================================================
 Fleet Relay — Lifecycle Sweeper
 Periodic background task: demotes silent drivers to
 offline, evicts drivers offline for too long, and ages out
 chat messages past retention.
============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fleet_relay.chat_store import ChatStore
from fleet_relay.driver_store import DriverStateStore

logger = logging.getLogger(__name__)

Notify = Callable[[str, Dict[str, Any]], Awaitable[None]]


class LifecycleSweeper:
    def __init__(
        self,
        drivers: DriverStateStore,
        chat: ChatStore,
        *,
        notify: Optional[Notify] = None,
        interval: float = 300.0,
        offline_eviction: float = 600.0,
        stale_after: float = 600.0,
        chat_retention: float = 30 * 24 * 60 * 60,
    ) -> None:
        self.drivers = drivers
        self.chat = chat
        self.notify = notify
        self.interval = interval
        self.offline_eviction = offline_eviction
        self.stale_after = stale_after
        self.chat_retention = chat_retention
        self.running = False
        self.sweeps = 0
        self._sweeping = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("[SWEEP] Lifecycle sweeper started (every %.0fs)", self.interval)

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SWEEP] Lifecycle sweeper stopped")

    async def _loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.exception("[SWEEP] sweep failed: %s", e)

    async def sweep_once(self) -> Dict[str, int]:
        """One pass. A pass that starts while another is still running is skipped."""
        if self._sweeping:
            logger.debug("[SWEEP] previous sweep still running, skipping")
            return {"demoted": 0, "removed": 0, "messagesExpired": 0}
        self._sweeping = True
        try:
            demoted = self.drivers.demote_stale(self.stale_after)
            for record in demoted:
                logger.info("[SWEEP] %s silent for %.0fs, marked offline", record.device_id, self.stale_after)
                await self._notify("driverOffline", {
                    "driverId": record.device_id,
                    "lastSeen": record.last_seen,
                })

            removed = self.drivers.evict_offline(self.offline_eviction)
            for device_id in removed:
                logger.info("[SWEEP] Removing inactive driver: %s", device_id)
                await self._notify("driverRemoved", {
                    "driverId": device_id,
                    "reason": "inactivity",
                })

            expired = self.chat.sweep_expired(self.chat_retention)
            if expired:
                logger.info("[SWEEP] %d chat message(s) past retention dropped", expired)
            self.sweeps += 1
            return {"demoted": len(demoted), "removed": len(removed), "messagesExpired": expired}
        finally:
            self._sweeping = False

    async def _notify(self, event: str, data: Dict[str, Any]) -> None:
        if self.notify is not None:
            await self.notify(event, data)
