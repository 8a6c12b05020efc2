"""Shared fixtures for the fleet relay test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from fleet_relay.config import Settings
from fleet_relay.dispatch import DispatchEngine

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every emission instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, object, str]] = []

    async def emit(self, event, data, to):
        self.sent.append((event, data, to))

    def to(self, sid: str, event: str | None = None) -> list:
        return [d for e, d, s in self.sent if s == sid and (event is None or e == event)]

    def events_for(self, sid: str) -> list[str]:
        return [e for e, _, s in self.sent if s == sid]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture()
def repo_root() -> Path:
    return Path(__file__).resolve().parent.parent


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def make_engine(transport, clock):
    def _make(route_provider=None, **overrides) -> DispatchEngine:
        settings = Settings(log_dir="", **overrides)
        return DispatchEngine(transport, route_provider=route_provider, settings=settings, clock=clock)

    return _make


@pytest.fixture()
def engine(make_engine) -> DispatchEngine:
    return make_engine()


def location(device_id: str = "D1", lng: float = 106.8227, lat: float = -6.1754, **extra) -> dict:
    payload = {
        "deviceID": device_id,
        "location": {"type": "Point", "coordinates": [lng, lat]},
        "speed": 32.5,
        "heading": 90,
        "timestamp": int(T0),
    }
    payload.update(extra)
    return payload
