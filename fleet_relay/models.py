"""
============================================================
 Fleet Relay — Data Models
 Typed records for every inbound event and every stored
 entity. Inbound payloads are parsed here, at the boundary;
 the stores only ever see fully-formed records.
============================================================
"""

import math
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fleet_relay.config import CLIENT_DRIVER, CLIENT_MONITOR


def _check_pair(value: List[float]) -> List[float]:
    if len(value) != 2:
        raise ValueError("coordinate must have exactly 2 elements")
    if not all(math.isfinite(v) for v in value):
        raise ValueError("coordinate elements must be finite numbers")
    return value


# Ordered numeric pair. `[lng, lat]` inside GeoJSON points, `[lat, lng]` for route endpoints.
Coordinate = Annotated[List[float], AfterValidator(_check_pair)]
Timestamp = Union[int, float, str]


def utc_iso(ts: Optional[float] = None) -> str:
    """ISO-8601 UTC string for an epoch-seconds value (now when omitted)."""
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def epoch_seconds(value: Any) -> Optional[float]:
    """Best-effort conversion of a client timestamp to epoch seconds.

    Numbers above 1e12 are taken as milliseconds (browser `Date.now()`).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) / 1000.0 if value > 1e12 else float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return epoch_seconds(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def _non_blank(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must be a non-empty string")
    return value


NonBlankStr = Annotated[str, AfterValidator(_non_blank)]


# ── Inbound Events ────────────────────────────────────────────────────
class IdentifyEvent(WireModel):
    type: Literal["driver", "monitor"]
    driver_id: Optional[str] = None
    monitor_id: Optional[str] = None

    @property
    def client_id(self) -> Optional[str]:
        if self.type == CLIENT_DRIVER:
            return self.driver_id
        return self.monitor_id


class GeoPoint(WireModel):
    type: str = "Point"
    coordinates: Coordinate


class DriverLocationEvent(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    device_id: NonBlankStr = Field(alias="deviceID")
    location: GeoPoint
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Timestamp


class DriverRouteEvent(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    device_id: NonBlankStr = Field(alias="deviceID")
    start_point: Coordinate
    end_point: Coordinate
    route_geometry: List[Coordinate] = Field(default_factory=list)
    transport_mode: str = "driving-car"
    distance: Optional[float] = None
    duration: Optional[float] = None
    toll_info: Optional[Dict[str, Any]] = None


class TruckSpecs(WireModel):
    height: Optional[float] = None   # metres
    weight: Optional[float] = None   # tonnes
    width: Optional[float] = None    # metres
    length: Optional[float] = None   # metres
    axles: Optional[int] = None


class RouteWithTollRequest(WireModel):
    device_id: Optional[str] = Field(default=None, alias="deviceID")
    start_point: Coordinate
    end_point: Coordinate
    transport_mode: str = "driving-car"
    prefer_toll_roads: bool = True
    truck_specs: Optional[TruckSpecs] = None


class DriverRouteRequest(WireModel):
    driver_id: NonBlankStr


class ChatHistoryRequest(WireModel):
    driver_id: NonBlankStr


class MarkAsReadEvent(WireModel):
    message_ids: List[str] = Field(min_length=1)
    reader: NonBlankStr


class DriverStatusEvent(WireModel):
    type: str
    driver_id: Optional[str] = None
    status: Optional[str] = None


class MonitorCommand(WireModel):
    type: str
    driver_id: Optional[str] = None
    message: Optional[str] = None


# ── Stored Records ────────────────────────────────────────────────────
class TollInfo(WireModel):
    uses_toll: bool = True
    vehicle_class: int
    vehicle_class_label: str
    estimated_cost: int
    toll_distance: float
    is_estimated: bool = True


class RouteRef(WireModel):
    device_id: str = Field(alias="deviceID")
    start_point: Coordinate
    end_point: Coordinate
    route_geometry: List[Coordinate] = Field(default_factory=list)
    transport_mode: str = "driving-car"
    distance: Optional[float] = None
    duration: Optional[float] = None
    toll_info: Optional[Dict[str, Any]] = None
    is_fallback: bool = False
    timestamp: str = Field(default_factory=utc_iso)


class RouteResult(WireModel):
    geometry: List[Coordinate]
    distance_km: float
    duration_min: int
    instructions: List[Dict[str, Any]] = Field(default_factory=list)
    toll_info: Optional[TollInfo] = None
    uses_toll: bool = False
    truck_warnings: List[Dict[str, Any]] = Field(default_factory=list)
    is_fallback: bool = False
    provider: str = ""


class DriverRecord(BaseModel):
    """Latest known state of one device, plus the enriched payload it arrived with."""

    device_id: str
    location: GeoPoint
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Timestamp
    status: str = "active"
    last_seen: Optional[str] = None
    updated_at: float = 0.0
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict:
        data = dict(self.payload)
        data["deviceID"] = self.device_id
        data["location"] = self.location.to_dict()
        if self.speed is not None:
            data["speed"] = self.speed
        if self.heading is not None:
            data["heading"] = self.heading
        data["timestamp"] = self.timestamp
        data["status"] = self.status
        if self.last_seen is not None:
            data["lastSeen"] = self.last_seen
        return data


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: str = Field(alias="from")
    to: str
    text: str
    timestamp: Timestamp
    read: bool = False
    stored_at: float = Field(default=0.0, exclude=True)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class Session(BaseModel):
    client_type: Literal["driver", "monitor"] = CLIENT_MONITOR
    client_id: str
    sid: str
