"""
============================================================
 Fleet Relay — Demo Replay
 When ENABLE_SAMPLE_DATA is on, replays a recorded GPS
 trace through the normal driverLocation path, one point
 per LOCATION_INTERVAL_MS, looping forever.
============================================================
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def load_sample_data(path: str) -> List[Dict[str, Any]]:
    """Points from a `{"gpsData": [...]}` file. Empty when missing or malformed."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as e:
        logger.error("[SIM] Error loading sample data: %s", e)
        return []
    points = data.get("gpsData") if isinstance(data, dict) else None
    if not isinstance(points, list):
        return []
    return [p for p in points if isinstance(p, dict)]


class SampleReplay:
    def __init__(self, engine, points: List[Dict[str, Any]], interval_ms: int = 1000) -> None:
        self.engine = engine
        self.points = points
        self.interval = max(interval_ms, 1) / 1000.0
        self.running = False
        self.cursor = 0
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if not self.points:
            logger.info("[SIM] No sample data found or invalid format, demo mode disabled")
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("[SIM] Loaded %d sample GPS points for demonstration", len(self.points))

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self.running:
            await self.tick()
            await asyncio.sleep(self.interval)

    async def tick(self) -> Dict[str, Any]:
        if self.cursor >= len(self.points):
            self.cursor = 0
        data = dict(self.points[self.cursor])
        self.cursor += 1
        data["timestamp"] = int(time.time())
        reply = await self.engine.handle("driverLocation", None, data)
        logger.debug("[SIM] Sent sample data point %d/%d", self.cursor, len(self.points))
        return reply
