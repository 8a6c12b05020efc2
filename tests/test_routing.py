from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from fleet_relay.errors import UpstreamError
from fleet_relay.models import RouteResult, TruckSpecs
from fleet_relay.routing import (
    ChainedProvider,
    GraphHopperProvider,
    OsrmProvider,
    RouteProvider,
    direct_route,
    haversine_km,
    route_with_fallback,
    truck_warnings,
)

START = [-6.2, 106.8]
END = [-6.3, 106.9]

OSRM_BODY = {
    "code": "Ok",
    "routes": [{
        "geometry": {"coordinates": [[106.8, -6.2], [106.85, -6.25], [106.9, -6.3]]},
        "distance": 12000,
        "duration": 900,
        "legs": [{"steps": [{
            "name": "Jl. Jend. Sudirman",
            "distance": 12000,
            "duration": 900,
            "maneuver": {"type": "depart", "modifier": "straight"},
        }]}],
    }],
}


class FailingProvider(RouteProvider):
    name = "failing"

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        raise UpstreamError("upstream down", provider=self.name)


class SlowProvider(RouteProvider):
    name = "slow"

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        await asyncio.sleep(5)
        raise AssertionError("should have been cancelled")


class StaticProvider(RouteProvider):
    name = "static"

    def __init__(self, result: RouteResult) -> None:
        self.result = result

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        return self.result


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_haversine_one_degree_of_longitude_at_equator() -> None:
    assert haversine_km([0, 0], [0, 1]) == pytest.approx(111.19, abs=0.01)


def test_direct_route_uses_mode_speed() -> None:
    car = direct_route([0, 0], [0, 1], "driving-car")
    truck = direct_route([0, 0], [0, 1], "driving-hgv")
    walk = direct_route([0, 0], [0, 1], "foot-walking")

    assert car.geometry == [[0, 0], [0, 1]]
    assert car.is_fallback is True
    assert car.duration_min == 133
    assert truck.duration_min == 167
    assert walk.duration_min == 1334
    assert car.toll_info is not None
    assert walk.toll_info is None


def test_direct_route_without_toll_preference_has_no_estimate() -> None:
    route = direct_route(START, END, "driving-car", prefer_toll=False)
    assert route.toll_info is None
    assert route.uses_toll is False


@pytest.mark.asyncio
async def test_fallback_on_upstream_failure() -> None:
    result = await route_with_fallback(FailingProvider(), START, END, "driving-car")
    assert result.is_fallback is True
    assert result.provider == "direct"


@pytest.mark.asyncio
async def test_fallback_on_timeout() -> None:
    result = await route_with_fallback(SlowProvider(), START, END, "driving-car", timeout=0.05)
    assert result.is_fallback is True


@pytest.mark.asyncio
async def test_no_provider_goes_straight_to_direct_line() -> None:
    result = await route_with_fallback(None, START, END)
    assert result.is_fallback is True
    assert result.geometry == [START, END]


@pytest.mark.asyncio
async def test_osrm_route_is_converted_to_lat_lng() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=OSRM_BODY)

    provider = OsrmProvider("https://osrm.test/route/v1", client=_client(handler))
    result = await provider.compute_route(START, END, "driving-car")

    assert seen["path"] == "/route/v1/car/106.8,-6.2;106.9,-6.3"
    assert seen["params"]["geometries"] == "geojson"
    assert result.geometry[0] == [-6.2, 106.8]
    assert result.distance_km == pytest.approx(12.0)
    assert result.duration_min == 15
    assert result.instructions[0]["name"] == "Jl. Jend. Sudirman"
    assert result.toll_info.estimated_cost == 6480
    assert result.is_fallback is False


@pytest.mark.asyncio
async def test_osrm_truck_duration_is_stretched() -> None:
    provider = OsrmProvider(
        "https://osrm.test/route/v1",
        client=_client(lambda request: httpx.Response(200, json=OSRM_BODY)),
    )
    result = await provider.compute_route(START, END, "driving-hgv", TruckSpecs(axles=3))

    assert result.duration_min == 20
    assert result.toll_info.vehicle_class == 3


@pytest.mark.asyncio
async def test_osrm_http_error_becomes_upstream_error() -> None:
    provider = OsrmProvider(
        "https://osrm.test/route/v1",
        client=_client(lambda request: httpx.Response(503, text="busy")),
    )
    with pytest.raises(UpstreamError):
        await provider.compute_route(START, END)


@pytest.mark.asyncio
async def test_osrm_empty_routes_becomes_upstream_error() -> None:
    provider = OsrmProvider(
        "https://osrm.test/route/v1",
        client=_client(lambda request: httpx.Response(200, json={"code": "NoRoute", "routes": []})),
    )
    with pytest.raises(UpstreamError):
        await provider.compute_route(START, END)


@pytest.mark.asyncio
async def test_graphhopper_toll_details_drive_estimate() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.url.params.get("key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"paths": [{
            "points": {"coordinates": [[106.8, -6.2], [106.9, -6.3]]},
            "distance": 50000,
            "time": 3600000,
            "details": {"toll": [[0, 1, "all"]]},
            "instructions": [{"text": "Continue onto Tol Dalam Kota", "distance": 50000, "time": 3600000, "sign": 0}],
        }]})

    provider = GraphHopperProvider("gh-key", "https://gh.test/api/1/route", client=_client(handler))
    result = await provider.compute_route(START, END, "driving-hgv", TruckSpecs(axles=3, height=4.2))

    assert seen["key"] == "gh-key"
    assert seen["body"]["profile"] == "truck"
    assert seen["body"]["height"] == 4.2
    assert result.uses_toll is True
    assert result.duration_min == 60
    assert result.toll_info.vehicle_class == 3
    assert result.toll_info.estimated_cost == 54000
    assert result.instructions[0]["instruction"] == "Continue onto Tol Dalam Kota"


def test_graphhopper_avoids_tolls_when_not_preferred() -> None:
    provider = GraphHopperProvider("gh-key", "https://gh.test/api/1/route")
    body = provider.build_body(START, END, "driving-car", None, prefer_toll=False)
    assert body["ch.disable"] is True
    assert body["custom_model"]["priority"][0]["multiply_by"] == "0.1"


@pytest.mark.asyncio
async def test_graphhopper_without_key_fails_fast() -> None:
    provider = GraphHopperProvider("", "https://gh.test/api/1/route")
    with pytest.raises(UpstreamError):
        await provider.compute_route(START, END)


@pytest.mark.asyncio
async def test_chain_uses_first_successful_provider() -> None:
    expected = direct_route(START, END)
    chain = ChainedProvider([FailingProvider(), StaticProvider(expected)])
    assert await chain.compute_route(START, END) is expected


@pytest.mark.asyncio
async def test_chain_with_every_provider_failing_raises() -> None:
    chain = ChainedProvider([FailingProvider(), FailingProvider()])
    with pytest.raises(UpstreamError):
        await chain.compute_route(START, END)


def test_sharp_turn_and_oversize_warnings() -> None:
    geometry = [[0.0, 0.0], [0.0, 1.0], [0.0, 0.1]]
    warnings = truck_warnings(geometry, TruckSpecs(height=4.5))

    kinds = [w["type"] for w in warnings]
    assert kinds == ["sharp_turn", "general"]
    assert warnings[0]["severity"] == "high"
