from __future__ import annotations

import pytest

from conftest import T0, location
from fleet_relay.errors import UpstreamError
from fleet_relay.models import RouteResult
from fleet_relay.routing import RouteProvider

ROUTE = {
    "deviceID": "D1",
    "startPoint": [-6.1754, 106.8227],
    "endPoint": [-6.2088, 106.8456],
    "routeGeometry": [[-6.1754, 106.8227], [-6.19, 106.83], [-6.2088, 106.8456]],
    "transportMode": "driving-hgv",
    "distance": 4.8,
    "duration": 14,
}


class FailingProvider(RouteProvider):
    name = "failing"

    async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
        raise UpstreamError("no route", provider=self.name)


async def _connect(engine, sid, client_type, client_id=None):
    return await engine.connect(sid, client_type, client_id)


# ── Connection lifecycle ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_connect_acknowledges_identity(engine, transport) -> None:
    await _connect(engine, "sock-1", "driver", "D1")

    ack = transport.to("sock-1", "connectionAck")[0]
    assert ack["clientId"] == "D1"
    assert ack["clientType"] == "driver"
    assert ack["activeDrivers"] == 0


@pytest.mark.asyncio
async def test_unknown_client_type_defaults_to_monitor_keyed_by_session(engine, transport) -> None:
    registration = await _connect(engine, "sock-1", None)
    assert registration.session.client_type == "monitor"
    assert registration.session.client_id == "sock-1"


@pytest.mark.asyncio
async def test_monitor_gets_snapshot_of_known_drivers_and_routes(engine, transport) -> None:
    await _connect(engine, "d1", "driver", "D1")
    await engine.handle("driverLocation", "d1", location("D1"))
    await engine.handle("driverRoute", "d1", ROUTE)

    await _connect(engine, "m1", "monitor", "M1")

    assert transport.events_for("m1") == ["driverData", "driverRouteUpdate", "connectionAck"]
    assert transport.to("m1", "driverData")[0]["deviceID"] == "D1"


@pytest.mark.asyncio
async def test_superseded_session_is_told_and_its_disconnect_is_ignored(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "old", "driver", "D1")
    await engine.handle("driverLocation", "old", location("D1"))
    await _connect(engine, "new", "driver", "D1")

    assert transport.to("old", "supersededSession")[0]["replacedBy"] == "new"

    await engine.disconnect("old")
    assert engine.drivers.get("D1").status == "active"
    assert engine.registry.resolve("driver", "D1") == "new"
    assert transport.to("m1", "driverOffline") == []


@pytest.mark.asyncio
async def test_driver_disconnect_marks_offline_and_tells_monitors(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")
    await engine.handle("driverLocation", "d1", location("D1"))

    await engine.disconnect("d1")

    record = engine.drivers.get("D1")
    assert record.status == "offline"
    notice = transport.to("m1", "driverOffline")[0]
    assert notice == {"driverId": "D1", "lastSeen": record.last_seen}
    assert engine.registry.resolve("driver", "D1") is None


@pytest.mark.asyncio
async def test_identify_rekeys_and_flushes_queued_messages(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await engine.handle("sendMessage", "m1", {"text": "Ambil muatan di gudang 3", "from": "monitor", "to": "D9"})

    await _connect(engine, "s9", None)
    reply = await engine.handle("identify", "s9", {"type": "driver", "driverId": "D9"})

    assert reply == {"success": True, "clientId": "D9", "clientType": "driver"}
    assert engine.registry.resolve("driver", "D9") == "s9"
    assert [m["text"] for m in transport.to("s9", "receiveMessage")] == ["Ambil muatan di gudang 3"]


@pytest.mark.asyncio
async def test_identify_with_bad_type_is_rejected(engine, transport) -> None:
    await _connect(engine, "s1", None)
    reply = await engine.handle("identify", "s1", {"type": "dispatcher"})
    assert reply["success"] is False
    assert transport.to("s1", "requestError") == [reply]
    assert reply["event"] == "identify"


# ── Telemetry ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_location_is_broadcast_to_every_monitor(engine, transport, clock) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "m2", "monitor", "M2")
    await _connect(engine, "d1", "driver", "D1")

    await engine.handle("driverLocation", "d1", location("D1", accuracy=4.5))

    for sid in ("m1", "m2"):
        data = transport.to(sid, "driverData")[0]
        assert data["deviceID"] == "D1"
        assert data["speed"] == 32.5
        assert data["accuracy"] == 4.5
        assert data["socketId"] == "d1"
        assert "receivedAt" in data
    ack = transport.to("d1", "locationAck")[0]
    assert ack == {"timestamp": int(T0), "received": True, "driverId": "D1"}
    assert engine.drivers.get("D1").speed == 32.5


@pytest.mark.asyncio
async def test_invalid_location_is_answered_and_not_broadcast(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")

    bad = location("D1")
    bad["location"] = {"type": "Point", "coordinates": [106.8]}
    await engine.handle("driverLocation", "d1", bad)

    ack = transport.to("d1", "locationAck")[0]
    assert ack["received"] is False
    assert ack["error"]
    assert transport.to("m1", "driverData") == []
    assert engine.drivers.get("D1") is None


@pytest.mark.asyncio
async def test_route_is_stored_and_broadcast(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")

    await engine.handle("driverRoute", "d1", ROUTE)

    update = transport.to("m1", "driverRouteUpdate")[0]
    assert update["hasRouteData"] is True
    assert update["driverId"] == "D1"
    assert update["routeGeometry"][1] == [-6.19, 106.83]
    assert transport.to("d1", "routeAck")[0]["received"] is True


@pytest.mark.asyncio
async def test_route_without_start_point_is_rejected(engine, transport) -> None:
    await _connect(engine, "d1", "driver", "D1")
    bad = dict(ROUTE)
    del bad["startPoint"]

    await engine.handle("driverRoute", "d1", bad)

    assert transport.to("d1", "routeAck")[0]["received"] is False
    assert engine.drivers.get_route("D1") is None


@pytest.mark.asyncio
async def test_request_driver_route_without_data(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    reply = await engine.handle("requestDriverRoute", "m1", {"driverId": "D1"})

    assert reply == {"driverId": "D1", "hasRouteData": False}
    assert transport.to("m1", "driverRouteUpdate") == [reply]


@pytest.mark.asyncio
async def test_request_driver_route_returns_stored_route(engine, transport) -> None:
    await engine.handle("driverRoute", None, ROUTE)
    await _connect(engine, "m1", "monitor", "M1")
    transport.clear()

    reply = await engine.handle("requestDriverRoute", "m1", {"driverId": "D1"})
    assert reply["hasRouteData"] is True
    assert reply["endPoint"] == [-6.2088, 106.8456]


@pytest.mark.asyncio
async def test_route_with_toll_falls_back_when_upstream_fails(make_engine, transport) -> None:
    engine = make_engine(route_provider=FailingProvider())
    await _connect(engine, "d1", "driver", "D1")

    reply = await engine.handle("requestRouteWithToll", "d1", {
        "deviceID": "D1",
        "startPoint": [-6.1754, 106.8227],
        "endPoint": [-6.9175, 107.6191],
        "transportMode": "driving-hgv",
        "truckSpecs": {"axles": 4},
    })

    assert reply["success"] is True
    assert reply["isFallback"] is True
    assert reply["stored"] is True
    assert reply["route"]["tollInfo"]["vehicleClass"] == 4
    assert transport.to("d1", "routeWithTollResponse") == [reply]
    stored = engine.drivers.get_route("D1")
    assert stored.is_fallback is True
    assert stored.toll_info["vehicleClass"] == 4


@pytest.mark.asyncio
async def test_route_with_toll_does_not_overwrite_newer_route(make_engine, transport, clock) -> None:
    class RacingProvider(RouteProvider):
        name = "racing"

        async def compute_route(self, start, end, mode="driving-car", truck_specs=None, prefer_toll=True):
            # the driver pushes its own route while this call is in flight
            clock.advance(1)
            engine.drivers.upsert_route("D1", ROUTE)
            return RouteResult(geometry=[start, end], distance_km=1.0, duration_min=2, provider=self.name)

    engine = make_engine(route_provider=RacingProvider())
    reply = await engine.handle("requestRouteWithToll", "d1", {
        "deviceID": "D1",
        "startPoint": [-6.1, 106.8],
        "endPoint": [-6.2, 106.9],
    })

    assert reply["success"] is True
    assert reply["stored"] is False
    assert engine.drivers.get_route("D1").distance == 4.8


@pytest.mark.asyncio
async def test_route_with_toll_bad_request_gets_route_error(engine, transport) -> None:
    reply = await engine.handle("requestRouteWithToll", "d1", {"deviceID": "D1", "startPoint": [1.0]})
    assert reply["success"] is False
    assert transport.to("d1", "routeError") == [reply]


@pytest.mark.asyncio
async def test_status_update_is_relayed(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await engine.handle("driverLocation", "d1", location("D1"))

    reply = await engine.handle("driverEvent", "d1", {"type": "statusUpdate", "driverId": "D1", "status": "busy"})

    assert reply["success"] is True
    assert transport.to("m1", "driverStatusUpdate")[0]["status"] == "busy"
    assert engine.drivers.get("D1").status == "busy"


# ── Chat ──────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_driver_message_reaches_monitors_and_echoes_to_sender(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")

    reply = await engine.handle("sendMessage", "d1", {"text": "Macet di tol", "from": "D1", "to": "monitor"})

    assert reply["success"] is True
    assert reply["delivered"] is True
    assert transport.to("m1", "receiveMessage")[0]["text"] == "Macet di tol"
    assert transport.to("d1", "receiveMessage")[0]["id"] == reply["message"]["id"]


@pytest.mark.asyncio
async def test_message_to_disconnected_driver_is_stored_silently(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")

    reply = await engine.handle("sendMessage", "m1", {"text": "Call me", "from": "monitor", "to": "D2"})

    assert reply["success"] is True
    assert reply["delivered"] is False
    assert transport.to("m1", "messageError") == []
    history = await engine.handle("getChatHistory", "m1", {"driverId": "D2"})
    assert [m["text"] for m in history["messages"]] == ["Call me"]


@pytest.mark.asyncio
async def test_driver_without_monitors_still_stores_message(engine, transport) -> None:
    await _connect(engine, "d1", "driver", "D1")
    reply = await engine.handle("sendMessage", "d1", {"text": "halo", "from": "D1", "to": "monitor"})

    assert reply["delivered"] is False
    assert len(engine.chat.get_history("D1")) == 1


@pytest.mark.asyncio
async def test_rejected_message_gets_message_error(make_engine, transport) -> None:
    engine = make_engine(max_message_length=5)
    await _connect(engine, "d1", "driver", "D1")

    reply = await engine.handle("sendMessage", "d1", {"text": "far too long", "from": "D1", "to": "monitor"})

    assert reply["reason"] == "TooLong"
    assert transport.to("d1", "messageError") == [reply]
    assert engine.chat.get_history("D1") == []


@pytest.mark.asyncio
async def test_rate_limited_sender(make_engine, transport) -> None:
    engine = make_engine(message_rate_limit=1)
    await _connect(engine, "d1", "driver", "D1")
    msg = {"text": "ping", "from": "D1", "to": "monitor"}

    assert (await engine.handle("sendMessage", "d1", msg))["success"] is True
    second = await engine.handle("sendMessage", "d1", msg)

    assert second["reason"] == "RateLimited"
    assert len(engine.chat.get_history("D1")) == 1


@pytest.mark.asyncio
async def test_chat_disabled(make_engine, transport) -> None:
    engine = make_engine(enable_chat=False)
    reply = await engine.handle("sendMessage", "d1", {"text": "hi", "from": "D1", "to": "monitor"})
    assert reply["reason"] == "ChatDisabled"


@pytest.mark.asyncio
async def test_mark_as_read_notifies_the_driver(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")
    sent = await engine.handle("sendMessage", "d1", {"text": "Sudah sampai", "from": "D1", "to": "monitor"})
    message_id = sent["message"]["id"]

    reply = await engine.handle("markAsRead", "m1", {"messageIds": [message_id], "reader": "monitor"})

    assert reply["updated"] == {"D1": [message_id]}
    notice = transport.to("d1", "messageRead")[0]
    assert notice == {"driverId": "D1", "messageIds": [message_id], "reader": "monitor"}
    assert engine.chat.get_history("D1")[0].read is True


@pytest.mark.asyncio
async def test_driver_reading_notifies_monitors(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")
    sent = await engine.handle("sendMessage", "m1", {"text": "Cek ban", "from": "monitor", "to": "D1"})

    await engine.handle("markAsRead", "d1", {"messageIds": [sent["message"]["id"]], "reader": "D1"})

    assert transport.to("m1", "messageRead")[0]["reader"] == "D1"


@pytest.mark.asyncio
async def test_get_all_drivers_merges_state_chat_and_connections(engine, transport) -> None:
    await engine.handle("driverLocation", None, location("D1"))
    await engine.handle("sendMessage", None, {"text": "x", "from": "D2", "to": "monitor"})
    await _connect(engine, "d3", "driver", "D3")

    reply = await engine.handle("getAllDrivers", "m1", None)
    assert reply == {"drivers": ["D1", "D2", "D3"]}


@pytest.mark.asyncio
async def test_monitor_command_history_and_message(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")
    await engine.handle("driverLocation", "d1", location("D1"))

    history = await engine.handle("monitorCommand", "m1", {"type": "requestDriverHistory", "driverId": "D1"})
    assert len(history["history"]) == 1
    assert transport.to("m1", "driverHistory") == [history]

    sent = await engine.handle("monitorCommand", "m1", {
        "type": "sendMessageToDriver", "driverId": "D1", "message": "Lanjut ke Bandung",
    })
    assert sent["success"] is True
    assert transport.to("d1", "receiveMessage")[0]["from"] == "monitor"


# ── Handler boundary ──────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_failing_handler_still_answers_history_request(engine, monkeypatch) -> None:
    def boom(driver_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(engine.chat, "get_history", boom)
    reply = await engine.handle("getChatHistory", "m1", {"driverId": "D1"})

    assert reply["messages"] == []
    assert "disk on fire" in reply["error"]


@pytest.mark.asyncio
async def test_unknown_event_is_ignored(engine) -> None:
    assert await engine.handle("selfDestruct", "m1", {}) is None


@pytest.mark.asyncio
async def test_emit_failure_does_not_break_the_handler(engine, transport) -> None:
    async def broken_emit(event, data, to):
        raise ConnectionError("socket gone")

    await _connect(engine, "m1", "monitor", "M1")
    transport.emit = broken_emit
    reply = await engine.handle("driverLocation", "d1", location("D1"))

    assert reply["received"] is True
    assert engine.drivers.get("D1") is not None


# ── Read receipts and malformed events ────────────────────────────────
@pytest.mark.asyncio
async def test_driver_cannot_mark_read_as_the_monitor(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")
    await _connect(engine, "d1", "driver", "D1")
    sent = await engine.handle("sendMessage", "m1", {"text": "Istirahat dulu", "from": "monitor", "to": "D2"})

    reply = await engine.handle("markAsRead", "d1", {"messageIds": [sent["message"]["id"]], "reader": "monitor"})

    assert reply["success"] is False
    assert reply["reason"] == "Forbidden"
    assert transport.to("d1", "messageError") == [reply]
    assert engine.chat.get_history("D2")[0].read is False
    assert transport.to("m1", "messageRead") == []


@pytest.mark.asyncio
async def test_driver_cannot_mark_read_for_another_driver(engine, transport) -> None:
    await _connect(engine, "d1", "driver", "D1")
    sent = await engine.handle("sendMessage", None, {"text": "Halo", "from": "monitor", "to": "D2"})

    reply = await engine.handle("markAsRead", "d1", {"messageIds": [sent["message"]["id"]], "reader": "D2"})

    assert reply["success"] is False
    assert engine.chat.get_history("D2")[0].read is False


@pytest.mark.asyncio
async def test_malformed_mark_as_read_gets_message_error(engine, transport) -> None:
    await _connect(engine, "d1", "driver", "D1")

    reply = await engine.handle("markAsRead", "d1", {"messageIds": [], "reader": "D1"})

    assert reply["success"] is False
    assert transport.to("d1", "messageError") == [reply]


@pytest.mark.asyncio
async def test_malformed_driver_event_and_monitor_command_get_request_error(engine, transport) -> None:
    await _connect(engine, "m1", "monitor", "M1")

    bad_event = await engine.handle("driverEvent", "m1", {"driverId": "D1"})
    bad_command = await engine.handle("monitorCommand", "m1", {"type": "reboot"})

    errors = transport.to("m1", "requestError")
    assert [e["event"] for e in errors] == ["driverEvent", "monitorCommand"]
    assert errors == [bad_event, bad_command]
    assert all(e["success"] is False for e in errors)
