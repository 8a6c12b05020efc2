"""
============================================================
 Fleet Relay — Relay / Dispatch Engine
 One independent handler per inbound event. Each handler
 validates its payload, mutates the Driver State Store or
 the Chat Store, then works out the fan-out set (all
 monitors, one driver, or the requester) and emits.

 `handle()` is the event-handler boundary: nothing raised
 inside a handler escapes it, and events that owe the
 requester a direct answer always get one.
============================================================
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from fleet_relay.chat_store import ChatStore
from fleet_relay.config import CLIENT_DRIVER, CLIENT_MONITOR, MONITOR_IDENTITY, Settings
from fleet_relay.driver_store import DriverStateStore
from fleet_relay.errors import InvalidMessage, RateLimitError, ValidationError
from fleet_relay.models import (
    ChatHistoryRequest,
    DriverLocationEvent,
    DriverRouteEvent,
    DriverRouteRequest,
    DriverStatusEvent,
    IdentifyEvent,
    MarkAsReadEvent,
    MonitorCommand,
    RouteRef,
    RouteWithTollRequest,
    epoch_seconds,
    utc_iso,
)
from fleet_relay.registry import ConnectionRegistry, Registration
from fleet_relay.routing import RouteProvider, route_with_fallback

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def emit(self, event: str, data: Any, to: str) -> None:
        ...


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    return "; ".join(parts)


class DispatchEngine:
    """Routes inbound events between drivers and monitors."""

    def __init__(
        self,
        transport: Transport,
        *,
        registry: Optional[ConnectionRegistry] = None,
        drivers: Optional[DriverStateStore] = None,
        chat: Optional[ChatStore] = None,
        route_provider: Optional[RouteProvider] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        self.transport = transport
        self.registry = registry or ConnectionRegistry()
        self.drivers = drivers or DriverStateStore(
            history_length=self.settings.history_length, clock=clock
        )
        self.chat = chat or ChatStore(
            max_messages=self.settings.max_chat_messages,
            max_length=self.settings.max_message_length,
            rate_limit=self.settings.message_rate_limit,
            clock=clock,
        )
        self.route_provider = route_provider
        self._clock = clock
        self._handlers: Dict[str, Callable[[Optional[str], Any], Awaitable[Any]]] = {
            "identify": self.on_identify,
            "driverLocation": self.on_driver_location,
            "driverRoute": self.on_driver_route,
            "requestDriverRoute": self.on_request_driver_route,
            "requestRouteWithToll": self.on_request_route_with_toll,
            "sendMessage": self.on_send_message,
            "getChatHistory": self.on_get_chat_history,
            "markAsRead": self.on_mark_as_read,
            "getAllDrivers": self.on_get_all_drivers,
            "driverEvent": self.on_driver_event,
            "monitorCommand": self.on_monitor_command,
        }

    @property
    def events(self) -> List[str]:
        return list(self._handlers)

    # ── Emission helpers ──────────────────────────────────────────────
    async def _send(self, sid: Optional[str], event: str, data: Any) -> None:
        if sid is None:
            return
        try:
            await self.transport.emit(event, data, to=sid)
        except Exception as e:
            logger.warning("[HUB] emit %s to %s failed: %s", event, sid, e)

    async def _send_many(self, sids: Iterable[str], event: str, data: Any) -> None:
        for sid in sids:
            await self._send(sid, event, data)

    async def broadcast_monitors(self, event: str, data: Any) -> None:
        await self._send_many(self.registry.all_monitor_sessions(), event, data)

    # ── Boundary ──────────────────────────────────────────────────────
    async def handle(self, event: str, sid: Optional[str], data: Any = None) -> Any:
        """Run the handler for `event`. Returns the ack payload for request/callback events."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("[HUB] ignoring unknown event %s from %s", event, sid)
            return None
        try:
            return await handler(sid, data)
        except Exception as e:
            logger.exception("[HUB] %s handler failed for %s: %s", event, sid, e)
            return await self._fail(event, sid, data, f"internal error: {e}")

    async def _fail(self, event: str, sid: Optional[str], data: Any, error: str) -> Dict[str, Any]:
        """Explicit error answer for a handler that blew up."""
        if event == "getChatHistory":
            return {"messages": [], "error": error}
        if event == "getAllDrivers":
            return {"drivers": [], "error": error}
        if event == "requestDriverRoute":
            driver_id = data.get("driverId") if isinstance(data, dict) else None
            reply = {"driverId": driver_id, "hasRouteData": False, "error": error}
            await self._send(sid, "driverRouteUpdate", reply)
            return reply
        if event == "requestRouteWithToll":
            reply = {"success": False, "error": error}
            await self._send(sid, "routeError", reply)
            return reply
        if event == "sendMessage":
            reply = {"success": False, "error": error}
            await self._send(sid, "messageError", reply)
            return reply
        return await self._reject(sid, event, error)

    async def _reject(self, sid: Optional[str], event: str, error: str) -> Dict[str, Any]:
        """Tell the requester its event was refused, for events with no dedicated error reply."""
        reply = {"success": False, "event": event, "error": error}
        await self._send(sid, "requestError", reply)
        return reply

    # ── Connection lifecycle ──────────────────────────────────────────
    async def connect(self, sid: str, client_type: Optional[str] = None, client_id: Optional[str] = None) -> Registration:
        client_type = client_type if client_type in (CLIENT_DRIVER, CLIENT_MONITOR) else CLIENT_MONITOR
        client_id = client_id or sid
        registration = self.registry.register(client_type, client_id, sid)
        logger.info("[HUB] New %s connected: %s (%s)", client_type, client_id, sid)
        await self._notify_superseded(registration)

        if client_type == CLIENT_MONITOR:
            await self._send_snapshot(sid)
        else:
            await self._flush_queued(sid, client_id)
        await self._send(sid, "connectionAck", {
            "clientId": client_id,
            "clientType": client_type,
            "serverTime": utc_iso(self._clock()),
            "activeDrivers": len(self.drivers),
        })
        return registration

    async def disconnect(self, sid: str) -> None:
        session = self.registry.session(sid)
        if session is None:
            return
        still_bound = self.registry.unregister(session.client_type, session.client_id, sid)
        logger.info("[HUB] Client disconnected: %s (%s)", session.client_id, sid)
        if session.client_type != CLIENT_DRIVER or not still_bound:
            return
        record = self.drivers.mark_offline(session.client_id)
        if record is not None:
            await self.broadcast_monitors("driverOffline", {
                "driverId": session.client_id,
                "lastSeen": record.last_seen,
            })

    async def _notify_superseded(self, registration: Registration) -> None:
        if registration.superseded is None:
            return
        await self._send(registration.superseded, "supersededSession", {
            "clientId": registration.session.client_id,
            "clientType": registration.session.client_type,
            "replacedBy": registration.session.sid,
        })

    async def _send_snapshot(self, sid: str) -> None:
        for record in self.drivers.get_active():
            await self._send(sid, "driverData", record.to_dict())
            route = self.drivers.get_route(record.device_id)
            if route is not None:
                await self._send(sid, "driverRouteUpdate", self._route_payload(route))

    async def _flush_queued(self, sid: str, driver_id: str) -> None:
        queued = self.chat.get_unread_queued_for(driver_id)
        for msg in queued:
            await self._send(sid, "receiveMessage", msg.to_dict())
        if queued:
            logger.info("[CHAT] Flushed %d queued message(s) to %s", len(queued), driver_id)

    async def on_identify(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            event = IdentifyEvent.model_validate(data or {})
        except PydanticValidationError as e:
            return await self._reject(sid, "identify", _describe(e))
        if sid is None:
            return {"success": False, "error": "no session"}

        current = self.registry.session(sid)
        new_id = event.client_id or (current.client_id if current else sid)
        was_monitor = current is not None and current.client_type == CLIENT_MONITOR
        registration = self.registry.identify(sid, event.type, new_id)
        await self._notify_superseded(registration)
        logger.info("[HUB] %s identified as %s '%s'", sid, event.type, new_id)

        if event.type == CLIENT_DRIVER:
            await self._flush_queued(sid, new_id)
        elif not was_monitor:
            await self._send_snapshot(sid)
        return {"success": True, "clientId": new_id, "clientType": event.type}

    # ── Driver telemetry ──────────────────────────────────────────────
    async def on_driver_location(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            event = DriverLocationEvent.model_validate(data)
            enriched = dict(data)
            enriched["receivedAt"] = utc_iso(self._clock())
            if sid is not None:
                enriched["socketId"] = sid
            record = self.drivers.upsert_location(
                event.device_id,
                event.location,
                event.speed,
                event.heading,
                event.timestamp,
                payload=enriched,
            )
        except (PydanticValidationError, ValidationError) as e:
            error = _describe(e) if isinstance(e, PydanticValidationError) else str(e)
            logger.error("[HUB] Invalid location data received: %s", error)
            reply = {
                "timestamp": data.get("timestamp") if isinstance(data, dict) else None,
                "received": False,
                "error": error,
            }
            await self._send(sid, "locationAck", reply)
            return reply

        coords = record.location.coordinates
        logger.debug(
            "[HUB] Location update from %s: [%s, %s], speed %s km/h",
            record.device_id, coords[0], coords[1], record.speed or 0,
        )
        await self.broadcast_monitors("driverData", enriched)
        reply = {"timestamp": event.timestamp, "received": True, "driverId": event.device_id}
        await self._send(sid, "locationAck", reply)
        return reply

    @staticmethod
    def _route_payload(route: RouteRef) -> Dict[str, Any]:
        payload = route.to_dict()
        payload["driverId"] = route.device_id
        payload["hasRouteData"] = True
        return payload

    async def on_driver_route(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            event = DriverRouteEvent.model_validate(data)
            route = self.drivers.upsert_route(event.device_id, event.model_dump(by_alias=True))
        except (PydanticValidationError, ValidationError) as e:
            error = _describe(e) if isinstance(e, PydanticValidationError) else str(e)
            logger.error("[HUB] Invalid route data received: %s", error)
            reply = {"received": False, "error": error}
            await self._send(sid, "routeAck", reply)
            return reply

        logger.info("[HUB] Route update from %s (%d points)", route.device_id, len(route.route_geometry))
        await self.broadcast_monitors("driverRouteUpdate", self._route_payload(route))
        reply = {"received": True, "driverId": route.device_id, "timestamp": route.timestamp}
        await self._send(sid, "routeAck", reply)
        return reply

    async def on_request_driver_route(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            request = DriverRouteRequest.model_validate(data or {})
        except PydanticValidationError as e:
            reply = {"driverId": None, "hasRouteData": False, "error": _describe(e)}
            await self._send(sid, "driverRouteUpdate", reply)
            return reply

        route = self.drivers.get_route(request.driver_id)
        if route is None:
            reply = {"driverId": request.driver_id, "hasRouteData": False}
        else:
            reply = self._route_payload(route)
        await self._send(sid, "driverRouteUpdate", reply)
        return reply

    async def on_request_route_with_toll(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            request = RouteWithTollRequest.model_validate(data or {})
        except PydanticValidationError as e:
            reply = {"success": False, "error": _describe(e)}
            await self._send(sid, "routeError", reply)
            return reply

        requested_at = self._clock()
        result = await route_with_fallback(
            self.route_provider,
            request.start_point,
            request.end_point,
            request.transport_mode,
            request.truck_specs,
            request.prefer_toll_roads,
            timeout=self.settings.route_timeout_seconds,
        )

        # Store state may have moved on while the upstream call was in flight.
        stored = False
        if request.device_id:
            current = self.drivers.get_route(request.device_id)
            current_ts = epoch_seconds(current.timestamp) if current is not None else None
            if current_ts is not None and current_ts > requested_at:
                logger.info("[ROUTE] newer route for %s arrived meanwhile, not overwriting", request.device_id)
            else:
                self.drivers.upsert_route(request.device_id, RouteRef(
                    device_id=request.device_id,
                    start_point=request.start_point,
                    end_point=request.end_point,
                    route_geometry=result.geometry,
                    transport_mode=request.transport_mode,
                    distance=result.distance_km,
                    duration=result.duration_min,
                    toll_info=result.toll_info.to_dict() if result.toll_info else None,
                    is_fallback=result.is_fallback,
                    timestamp=utc_iso(self._clock()),
                ))
                stored = True

        reply = {
            "success": True,
            "deviceID": request.device_id,
            "isFallback": result.is_fallback,
            "stored": stored,
            "route": result.to_dict(),
        }
        await self._send(sid, "routeWithTollResponse", reply)
        return reply

    async def on_driver_event(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            event = DriverStatusEvent.model_validate(data or {})
        except PydanticValidationError as e:
            return await self._reject(sid, "driverEvent", _describe(e))
        if event.type != "statusUpdate" or not event.driver_id or not event.status:
            return await self._reject(sid, "driverEvent", "unsupported driver event")
        record = self.drivers.set_status(event.driver_id, event.status)
        if record is None:
            return {"success": False, "driverId": event.driver_id, "error": "driver not found"}
        await self.broadcast_monitors("driverStatusUpdate", {
            "driverId": event.driver_id,
            "status": event.status,
            "timestamp": utc_iso(self._clock()),
        })
        return {"success": True, "driverId": event.driver_id, "status": event.status}

    # ── Monitor commands ──────────────────────────────────────────────
    async def on_monitor_command(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            command = MonitorCommand.model_validate(data or {})
        except PydanticValidationError as e:
            return await self._reject(sid, "monitorCommand", _describe(e))

        if command.type == "requestDriverHistory" and command.driver_id:
            history = [r.to_dict() for r in self.drivers.get_history(command.driver_id)]
            reply = {"driverId": command.driver_id, "history": history}
            await self._send(sid, "driverHistory", reply)
            return reply
        if command.type == "sendMessageToDriver" and command.driver_id and command.message:
            return await self.on_send_message(sid, {
                "text": command.message,
                "from": MONITOR_IDENTITY,
                "to": command.driver_id,
            })
        return await self._reject(sid, "monitorCommand", f"unsupported command {command.type!r}")

    # ── Chat ──────────────────────────────────────────────────────────
    async def on_send_message(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        if not self.settings.enable_chat:
            reply = {"success": False, "reason": "ChatDisabled", "error": "chat is disabled"}
            await self._send(sid, "messageError", reply)
            return reply

        sender = data.get("from") if isinstance(data, dict) else None
        try:
            self.chat.validate(data, sender).raise_if_rejected()
        except InvalidMessage as e:
            if isinstance(e, RateLimitError):
                logger.warning("[CHAT] Rate limit hit for %s", sender)
            reply = {
                "success": False,
                "reason": e.reason,
                "error": str(e),
                "id": data.get("id") if isinstance(data, dict) else None,
            }
            await self._send(sid, "messageError", reply)
            return reply

        msg = self.chat.append(data)
        payload = msg.to_dict()
        delivered = False
        if msg.to == MONITOR_IDENTITY:
            monitors = [s for s in self.registry.all_monitor_sessions() if s != sid]
            await self._send_many(monitors, "receiveMessage", payload)
            delivered = bool(monitors)
        else:
            target = self.registry.resolve(CLIENT_DRIVER, msg.to)
            if target is not None and target != sid:
                await self._send(target, "receiveMessage", payload)
                delivered = True
            elif target is None:
                logger.info("[CHAT] %s not connected, message %s queued", msg.to, msg.id)

        await self._send(sid, "receiveMessage", payload)
        return {"success": True, "delivered": delivered, "message": payload}

    async def on_get_chat_history(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            request = ChatHistoryRequest.model_validate(data or {})
        except PydanticValidationError as e:
            return {"messages": [], "error": _describe(e)}
        return {"messages": [m.to_dict() for m in self.chat.get_history(request.driver_id)]}

    async def on_mark_as_read(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        try:
            event = MarkAsReadEvent.model_validate(data or {})
        except PydanticValidationError as e:
            reply = {"success": False, "reason": "MissingField", "error": _describe(e)}
            await self._send(sid, "messageError", reply)
            return reply

        # A session reads only as itself: a driver as its own id, a monitor as the monitor identity.
        if sid is not None and event.reader != self._reader_for(sid):
            logger.warning("[CHAT] %s tried to mark messages read as %s", sid, event.reader)
            reply = {
                "success": False,
                "reason": "Forbidden",
                "error": f"session is not allowed to read as {event.reader!r}",
            }
            await self._send(sid, "messageError", reply)
            return reply

        affected = self.chat.mark_read(event.message_ids, event.reader)
        for driver_id, ids in affected.items():
            notice = {"driverId": driver_id, "messageIds": ids, "reader": event.reader}
            if event.reader == MONITOR_IDENTITY:
                await self._send(self.registry.resolve(CLIENT_DRIVER, driver_id), "messageRead", notice)
            else:
                await self.broadcast_monitors("messageRead", notice)
        return {"success": True, "updated": affected}

    def _reader_for(self, sid: str) -> Optional[str]:
        session = self.registry.session(sid)
        if session is None:
            return None
        if session.client_type == CLIENT_MONITOR:
            return MONITOR_IDENTITY
        return session.client_id

    async def on_get_all_drivers(self, sid: Optional[str], data: Any) -> Dict[str, Any]:
        ids = set(self.drivers.device_ids())
        ids.update(self.chat.conversation_ids())
        ids.update(self.registry.connected_drivers())
        return {"drivers": sorted(ids)}

    # ── Status ────────────────────────────────────────────────────────
    def status(self) -> Dict[str, Any]:
        counts = self.registry.counts()
        return {
            "status": "online",
            "timestamp": utc_iso(self._clock()),
            "activeDrivers": self.drivers.active_count,
            "knownDrivers": len(self.drivers),
            "connectedDrivers": counts["drivers"],
            "connectedMonitors": counts["monitors"],
            "chatConversations": len(self.chat.conversation_ids()),
        }
