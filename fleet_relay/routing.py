"""
============================================================
 Fleet Relay — Route Provider Adapter
 Thin boundary to the external routing services. The
 dispatch engine only needs `compute_route(...)` to give a
 RouteResult or raise UpstreamError; when it fails or runs
 past its time budget, `route_with_fallback` synthesises a
 direct-line route with a heuristic duration instead.

 Upstreams:
   GraphHopper:  POST /api/1/route (needs API key)
   OSRM:         GET  /route/v1/{profile}/{lng,lat};{lng,lat}
============================================================
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import httpx

from fleet_relay import tolls
from fleet_relay.errors import UpstreamError
from fleet_relay.models import RouteResult, TollInfo, TruckSpecs

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# Average speed per transport mode for the direct-line estimate (km/h)
MODE_SPEED_KMH = {
    "driving-car": 50.0,
    "car": 50.0,
    "driving-hgv": 40.0,
    "truck": 40.0,
    "hgv": 40.0,
    "cycling-regular": 15.0,
    "bike": 15.0,
    "foot-walking": 5.0,
    "walking": 5.0,
    "foot": 5.0,
}
DEFAULT_SPEED_KMH = 50.0

TRUCK_DURATION_FACTOR = 1.3
SHARP_TURN_DEGREES = 45.0


def haversine_km(p1: Sequence[float], p2: Sequence[float]) -> float:
    """Great-circle distance between two [lat, lng] points."""
    d_lat = math.radians(p2[0] - p1[0])
    d_lon = math.radians(p2[1] - p1[1])
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(p1[0])) * math.cos(math.radians(p2[0])) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def mode_speed(mode: Optional[str]) -> float:
    return MODE_SPEED_KMH.get(mode or "", DEFAULT_SPEED_KMH)


def _toll_for(
    distance_km: float,
    mode: str,
    truck_specs: Optional[TruckSpecs],
    prefer_toll: bool,
    toll_distance_km: Optional[float] = None,
) -> Optional[TollInfo]:
    if not prefer_toll or not tolls.is_toll_mode(mode):
        return None
    return tolls.estimate_toll(distance_km, mode, truck_specs, toll_distance_km)


def direct_route(
    start: Sequence[float],
    end: Sequence[float],
    mode: str = "driving-car",
    truck_specs: Optional[TruckSpecs] = None,
    prefer_toll: bool = True,
) -> RouteResult:
    """Straight line from `start` to `end` with duration = distance / mode speed."""
    distance = haversine_km(start, end)
    duration = tolls.round_half_up(distance / mode_speed(mode) * 60)
    toll_info = _toll_for(distance, mode, truck_specs, prefer_toll)
    return RouteResult(
        geometry=[list(start), list(end)],
        distance_km=distance,
        duration_min=duration,
        instructions=[],
        toll_info=toll_info,
        uses_toll=toll_info is not None,
        is_fallback=True,
        provider="direct",
    )


# ── Truck post-processing ─────────────────────────────────────────────
def _angle_at(p1: Sequence[float], p2: Sequence[float], p3: Sequence[float]) -> float:
    v1 = (p1[0] - p2[0], p1[1] - p2[1])
    v2 = (p3[0] - p2[0], p3[1] - p2[1])
    mag = math.hypot(*v1) * math.hypot(*v2)
    if mag == 0:
        return 180.0
    cos_angle = max(-1.0, min(1.0, (v1[0] * v2[0] + v1[1] * v2[1]) / mag))
    return math.degrees(math.acos(cos_angle))


def truck_warnings(geometry: List[List[float]], truck_specs: Optional[TruckSpecs]) -> List[Dict[str, Any]]:
    """Sharp turns along the geometry plus a general note for oversize trucks."""
    warnings: List[Dict[str, Any]] = []
    for i in range(len(geometry) - 2):
        angle = _angle_at(geometry[i], geometry[i + 1], geometry[i + 2])
        if angle < SHARP_TURN_DEGREES:
            warnings.append({
                "type": "sharp_turn",
                "message": f"Sharp turn detected ({angle:.0f}°)",
                "position": geometry[i + 1],
                "index": i + 1,
                "severity": "high" if angle < 30 else "medium",
            })
    specs = truck_specs or TruckSpecs()
    if (specs.height or 0) > 4.0 or (specs.weight or 0) > 15 or (specs.length or 0) > 12:
        warnings.append({
            "type": "general",
            "message": (
                f"Oversize truck (H:{specs.height}m, W:{specs.weight}t, L:{specs.length}m) "
                "may have difficulty on some roads"
            ),
            "severity": "info",
        })
    return warnings


# ── Providers ─────────────────────────────────────────────────────────
class RouteProvider:
    """Contract consumed by the dispatch engine."""

    name = "provider"

    async def compute_route(
        self,
        start: Sequence[float],
        end: Sequence[float],
        mode: str = "driving-car",
        truck_specs: Optional[TruckSpecs] = None,
        prefer_toll: bool = True,
    ) -> RouteResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class _HttpProvider(RouteProvider):
    def __init__(self, base_url: str, *, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.name} request failed: {e}", provider=self.name) from e
        except ValueError as e:
            raise UpstreamError(f"{self.name} returned invalid JSON", provider=self.name) from e


class OsrmProvider(_HttpProvider):
    name = "osrm"

    @staticmethod
    def profile_for(mode: Optional[str]) -> str:
        if mode in ("cycling-regular", "bike"):
            return "bike"
        if mode in ("foot-walking", "walking", "foot"):
            return "foot"
        # the public OSRM instance has no truck profile
        return "car"

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        coords = f"{start[1]},{start[0]};{end[1]},{end[0]}"
        url = f"{self.base_url}/{self.profile_for(mode)}/{coords}"
        params = {
            "alternatives": "false",
            "steps": "true",
            "geometries": "geojson",
            "overview": "full",
        }
        if tolls.is_truck_mode(mode):
            params["continue_straight"] = "true"
        data = await self._send("GET", url, params=params)
        return self.transform(data, mode, truck_specs, prefer_toll)

    def transform(self, data: dict, mode: str, truck_specs: Optional[TruckSpecs], prefer_toll: bool) -> RouteResult:
        routes = data.get("routes") if isinstance(data, dict) else None
        if not routes:
            raise UpstreamError("OSRM returned no routes", provider=self.name)
        route = routes[0]
        try:
            geometry = [[c[1], c[0]] for c in route["geometry"]["coordinates"]]
            distance_km = float(route["distance"]) / 1000.0
            duration_s = float(route["duration"])
        except (KeyError, TypeError, IndexError, ValueError) as e:
            raise UpstreamError(f"OSRM response malformed: {e}", provider=self.name) from e

        instructions = []
        for leg in route.get("legs") or []:
            for step in leg.get("steps") or []:
                maneuver = step.get("maneuver") or {}
                instructions.append({
                    "instruction": maneuver.get("instruction") or step.get("name") or "",
                    "distance": step.get("distance"),
                    "duration": step.get("duration"),
                    "name": step.get("name") or "",
                    "type": maneuver.get("type") or "",
                    "modifier": maneuver.get("modifier") or "",
                })

        warnings: List[Dict[str, Any]] = []
        if tolls.is_truck_mode(mode):
            duration_s *= TRUCK_DURATION_FACTOR
            warnings = truck_warnings(geometry, truck_specs)

        toll_info = _toll_for(distance_km, mode, truck_specs, prefer_toll)
        return RouteResult(
            geometry=geometry,
            distance_km=distance_km,
            duration_min=tolls.round_half_up(duration_s / 60),
            instructions=instructions,
            toll_info=toll_info,
            uses_toll=toll_info is not None,
            truck_warnings=warnings,
            provider=self.name,
        )


def _is_toll_value(value: Any) -> bool:
    if value is True:
        return True
    return isinstance(value, str) and value.lower() in ("yes", "all", "hgv")


class GraphHopperProvider(_HttpProvider):
    name = "graphhopper"

    def __init__(self, api_key: str, base_url: str, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self.api_key = api_key

    @staticmethod
    def profile_for(mode: Optional[str]) -> str:
        return {
            "driving-car": "car",
            "driving-hgv": "truck",
            "cycling-regular": "bike",
            "foot-walking": "foot",
        }.get(mode or "", "car")

    def build_body(self, start, end, mode, truck_specs: Optional[TruckSpecs], prefer_toll: bool) -> dict:
        body: Dict[str, Any] = {
            "profile": self.profile_for(mode),
            "points": [[start[1], start[0]], [end[1], end[0]]],
            "details": ["road_class", "toll", "surface"],
            "instructions": True,
            "calc_points": True,
            "points_encoded": False,
        }
        if mode == "driving-hgv" and truck_specs is not None:
            body["ch.disable"] = True
            custom_model: Dict[str, Any] = {
                "speed": [
                    {"if": "road_class == MOTORWAY", "limit_to": "90"},
                    {"if": "road_class == RESIDENTIAL || road_class == LIVING_STREET", "limit_to": "30"},
                ]
            }
            if not prefer_toll:
                custom_model["priority"] = [{"if": "toll == ALL || toll == HGV", "multiply_by": "0.1"}]
            body["custom_model"] = custom_model
            body.update(truck_specs.model_dump(exclude_none=True))
        elif not prefer_toll:
            body["ch.disable"] = True
            body["custom_model"] = {"priority": [{"if": "toll == ALL", "multiply_by": "0.1"}]}
        return body

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        if not self.api_key:
            raise UpstreamError("GraphHopper API key not configured", provider=self.name)
        body = self.build_body(start, end, mode, truck_specs, prefer_toll)
        data = await self._send("POST", self.base_url, params={"key": self.api_key}, json=body)
        return self.transform(data, mode, truck_specs)

    def transform(self, data: dict, mode: str, truck_specs: Optional[TruckSpecs]) -> RouteResult:
        paths = data.get("paths") if isinstance(data, dict) else None
        if not paths:
            raise UpstreamError("GraphHopper returned no paths", provider=self.name)
        path = paths[0]
        try:
            geometry = [[c[1], c[0]] for c in path["points"]["coordinates"]]
            distance_km = float(path["distance"]) / 1000.0
            duration_min = tolls.round_half_up(float(path["time"]) / 1000 / 60)
        except (KeyError, TypeError, IndexError, ValueError) as e:
            raise UpstreamError(f"GraphHopper response malformed: {e}", provider=self.name) from e

        toll_segments = (path.get("details") or {}).get("toll") or []
        uses_toll = any(len(seg) > 2 and _is_toll_value(seg[2]) for seg in toll_segments)
        toll_info = tolls.estimate_toll(distance_km, mode, truck_specs) if uses_toll else None

        instructions = [
            {
                "instruction": instr.get("text", ""),
                "distance": instr.get("distance"),
                "time": instr.get("time"),
                "type": str(instr.get("sign", 0)),
                "interval": instr.get("interval"),
                "streetName": instr.get("street_name", ""),
            }
            for instr in path.get("instructions") or []
        ]
        warnings = truck_warnings(geometry, truck_specs) if tolls.is_truck_mode(mode) else []
        return RouteResult(
            geometry=geometry,
            distance_km=distance_km,
            duration_min=duration_min,
            instructions=instructions,
            toll_info=toll_info,
            uses_toll=uses_toll,
            truck_warnings=warnings,
            provider=self.name,
        )


class ChainedProvider(RouteProvider):
    """Tries each upstream in order; the first success wins."""

    name = "chain"

    def __init__(self, providers: Sequence[RouteProvider]) -> None:
        self.providers = list(providers)

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        errors = []
        for provider in self.providers:
            try:
                return await provider.compute_route(start, end, mode, truck_specs, prefer_toll)
            except UpstreamError as e:
                logger.warning("[ROUTE] %s failed: %s", provider.name, e)
                errors.append(str(e))
        raise UpstreamError("; ".join(errors) or "no route providers configured", provider=self.name)

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()


def build_provider(
    osrm_url: Optional[str],
    graphhopper_url: Optional[str] = None,
    graphhopper_api_key: Optional[str] = None,
) -> ChainedProvider:
    providers: List[RouteProvider] = []
    if graphhopper_api_key and graphhopper_url:
        providers.append(GraphHopperProvider(graphhopper_api_key, graphhopper_url))
    if osrm_url:
        providers.append(OsrmProvider(osrm_url))
    return ChainedProvider(providers)


async def route_with_fallback(
    provider: Optional[RouteProvider],
    start: Sequence[float],
    end: Sequence[float],
    mode: str = "driving-car",
    truck_specs: Optional[TruckSpecs] = None,
    prefer_toll: bool = True,
    timeout: float = 5.0,
) -> RouteResult:
    """Upstream route within `timeout` seconds, else the direct-line fallback.

    A call that times out is cancelled; its late result is never used.
    """
    if provider is not None:
        try:
            return await asyncio.wait_for(
                provider.compute_route(start, end, mode, truck_specs, prefer_toll),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[ROUTE] %s timed out after %.1fs, using direct route", provider.name, timeout)
        except UpstreamError as e:
            logger.warning("[ROUTE] upstream failed (%s), using direct route", e)
        except Exception as e:
            logger.exception("[ROUTE] unexpected provider error, using direct route: %s", e)
    return direct_route(start, end, mode, truck_specs, prefer_toll)
