"""
============================================================
 Fleet Relay — Driver State Store
 Latest position / speed / heading per device, a bounded
 ring of past positions, and the current route. Single
 source of truth for "is this driver active".
============================================================
"""

import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from fleet_relay.errors import InvalidLocation, InvalidRoute
from fleet_relay.log_writer import LogWriter, NullLogWriter
from fleet_relay.models import (
    DriverRecord,
    GeoPoint,
    RouteRef,
    Timestamp,
    epoch_seconds,
    utc_iso,
)

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_OFFLINE = "offline"


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ()))
    return f"{where}: {err.get('msg', 'invalid')}" if where else err.get("msg", "invalid")


class DriverStateStore:
    """Owned state for every tracked device."""

    def __init__(
        self,
        *,
        history_length: int = 100,
        log_writer: Optional[LogWriter] = None,
        log_prefix: str = "gps_log_",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.history_length = history_length
        self._log = log_writer or NullLogWriter()
        self._log_prefix = log_prefix
        self._clock = clock
        self._drivers: Dict[str, DriverRecord] = {}
        self._history: Dict[str, Deque[DriverRecord]] = {}
        self._routes: Dict[str, RouteRef] = {}

    # ── Location ──────────────────────────────────────────────────────
    def upsert_location(
        self,
        device_id: Optional[str],
        location: Any,
        speed: Optional[float] = None,
        heading: Optional[float] = None,
        timestamp: Optional[Timestamp] = None,
        *,
        payload: Optional[Dict[str, Any]] = None,
    ) -> DriverRecord:
        """Replace the live record for `device_id` and append a snapshot of it to the history ring."""
        if not device_id or not isinstance(device_id, str) or not device_id.strip():
            raise InvalidLocation("deviceID is required", field="deviceID")
        if timestamp is None or timestamp == "":
            raise InvalidLocation("timestamp is required", field="timestamp")
        try:
            point = location if isinstance(location, GeoPoint) else GeoPoint.model_validate(location)
        except PydanticValidationError as e:
            raise InvalidLocation(f"malformed location ({_first_error(e)})", field="location") from e

        now = self._clock()
        record = DriverRecord(
            device_id=device_id,
            location=point,
            speed=speed,
            heading=heading,
            timestamp=timestamp,
            status=STATUS_ACTIVE,
            updated_at=now,
            payload=dict(payload or {}),
        )
        self._drivers[device_id] = record
        ring = self._history.get(device_id)
        if ring is None:
            ring = deque(maxlen=self.history_length)
            self._history[device_id] = ring
        ring.append(record.model_copy(deep=True))

        self._log.append(self._log_prefix, device_id, record.to_dict())
        return record

    def mark_offline(self, device_id: str) -> Optional[DriverRecord]:
        """Set status=offline, lastSeen=now. Idempotent; None for unknown devices."""
        record = self._drivers.get(device_id)
        if record is None:
            return None
        if record.status != STATUS_OFFLINE:
            now = self._clock()
            record.status = STATUS_OFFLINE
            record.last_seen = utc_iso(now)
            record.updated_at = now
        return record

    def set_status(self, device_id: str, status: str) -> Optional[DriverRecord]:
        """Free-form driver status (available, busy, ...). None for unknown devices."""
        record = self._drivers.get(device_id)
        if record is None:
            return None
        record.status = status
        return record

    # ── Route ─────────────────────────────────────────────────────────
    def upsert_route(self, device_id: Optional[str], route: Any) -> RouteRef:
        """Replace the stored route for `device_id` wholesale (last write wins)."""
        if not device_id:
            raise InvalidRoute("deviceID is required", field="deviceID")
        if isinstance(route, RouteRef):
            data = route.model_dump(by_alias=True)
        else:
            data = dict(route or {})
        data["deviceID"] = device_id
        for field in ("startPoint", "endPoint"):
            if data.get(field) is None and data.get(_snake(field)) is None:
                raise InvalidRoute(f"{field} is required", field=field)
        data.setdefault("timestamp", utc_iso(self._clock()))
        try:
            ref = RouteRef.model_validate(data)
        except PydanticValidationError as e:
            raise InvalidRoute(f"malformed route ({_first_error(e)})") from e

        self._routes[device_id] = ref
        line = ref.to_dict()
        line["kind"] = "route"
        self._log.append(self._log_prefix, device_id, line)
        return ref

    def get_route(self, device_id: str) -> Optional[RouteRef]:
        return self._routes.get(device_id)

    # ── Reads ─────────────────────────────────────────────────────────
    def get(self, device_id: str) -> Optional[DriverRecord]:
        return self._drivers.get(device_id)

    def get_active(self) -> List[DriverRecord]:
        """Snapshot of every known record, offline ones included until the sweeper evicts them."""
        return list(self._drivers.values())

    def get_history(
        self,
        device_id: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
    ) -> List[DriverRecord]:
        """Oldest-first history. Empty for unknown devices; `start`/`end` are epoch seconds."""
        ring = self._history.get(device_id)
        if not ring:
            return []
        records = list(ring)
        if start is None and end is None:
            return records
        selected = []
        for record in records:
            ts = epoch_seconds(record.timestamp)
            if ts is None:
                continue
            if start is not None and ts < start:
                continue
            if end is not None and ts > end:
                continue
            selected.append(record)
        return selected

    def has_history(self, device_id: str) -> bool:
        return bool(self._history.get(device_id))

    def device_ids(self) -> List[str]:
        return list(self._drivers.keys())

    @property
    def active_count(self) -> int:
        return sum(1 for r in self._drivers.values() if r.status != STATUS_OFFLINE)

    def __len__(self) -> int:
        return len(self._drivers)

    # ── Lifecycle ─────────────────────────────────────────────────────
    def demote_stale(self, max_silence: float) -> List[DriverRecord]:
        """Mark online drivers with no update for `max_silence` seconds as offline."""
        now = self._clock()
        demoted = []
        for device_id, record in list(self._drivers.items()):
            if record.status != STATUS_OFFLINE and now - record.updated_at > max_silence:
                demoted.append(self.mark_offline(device_id))
        return demoted

    def evict_offline(self, max_offline: float) -> List[str]:
        """Remove records offline for longer than `max_offline` seconds, with their history and route."""
        now = self._clock()
        removed = []
        for device_id, record in list(self._drivers.items()):
            if record.status == STATUS_OFFLINE and now - record.updated_at > max_offline:
                del self._drivers[device_id]
                self._history.pop(device_id, None)
                self._routes.pop(device_id, None)
                removed.append(device_id)
        return removed


def _snake(name: str) -> str:
    return "".join("_" + c.lower() if c.isupper() else c for c in name)
