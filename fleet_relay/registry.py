"""
============================================================
 Fleet Relay — Connection Registry
 Maps logical client identity (driver ID / monitor ID) to
 the transport session id it is currently bound to.
 Drivers and monitors live in separate namespaces.
============================================================
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from fleet_relay.config import CLIENT_DRIVER, CLIENT_MONITOR
from fleet_relay.models import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    """Outcome of a bind. `superseded` holds the session that lost the id, if any."""

    session: Session
    superseded: Optional[str] = None
    previous_id: Optional[str] = None


class ConnectionRegistry:
    """Identity ↔ session bookkeeping. Owns no driver or chat state."""

    def __init__(self) -> None:
        self._bindings: Dict[str, Dict[str, str]] = {
            CLIENT_DRIVER: {},
            CLIENT_MONITOR: {},
        }
        self._sessions: Dict[str, Session] = {}

    @staticmethod
    def _check_type(client_type: str) -> None:
        if client_type not in (CLIENT_DRIVER, CLIENT_MONITOR):
            raise ValueError(f"unknown client type: {client_type!r}")

    def register(self, client_type: str, client_id: str, sid: str) -> Registration:
        """Bind `client_id → sid`. Last registration wins; the evicted session is reported."""
        self._check_type(client_type)
        namespace = self._bindings[client_type]
        previous_sid = namespace.get(client_id)
        superseded = previous_sid if previous_sid and previous_sid != sid else None

        namespace[client_id] = sid
        session = Session(client_type=client_type, client_id=client_id, sid=sid)
        self._sessions[sid] = session
        if superseded is not None:
            # The old transport keeps running until it disconnects; it just no longer owns the id.
            self._sessions.pop(superseded, None)
            logger.info("[HUB] %s '%s' re-registered, session %s superseded", client_type, client_id, superseded)
        return Registration(session=session, superseded=superseded)

    def identify(self, sid: str, client_type: str, new_client_id: str) -> Registration:
        """Re-key the session `sid` under `new_client_id` (and possibly a new type)."""
        self._check_type(client_type)
        current = self._sessions.get(sid)
        previous_id = None
        if current is not None:
            previous_id = current.client_id
            same = current.client_type == client_type and current.client_id == new_client_id
            if same:
                return Registration(session=current)
            namespace = self._bindings[current.client_type]
            if namespace.get(current.client_id) == sid:
                del namespace[current.client_id]
        registration = self.register(client_type, new_client_id, sid)
        return Registration(
            session=registration.session,
            superseded=registration.superseded,
            previous_id=previous_id,
        )

    def unregister(self, client_type: str, client_id: str, sid: Optional[str] = None) -> bool:
        """Drop the binding. With `sid`, only if the id is still bound to that session."""
        self._check_type(client_type)
        namespace = self._bindings[client_type]
        bound = namespace.get(client_id)
        if bound is None or (sid is not None and bound != sid):
            if sid is not None:
                self._sessions.pop(sid, None)
            return False
        del namespace[client_id]
        self._sessions.pop(bound, None)
        return True

    def resolve(self, client_type: str, client_id: str) -> Optional[str]:
        """Session id bound to `client_id`, or None when not connected."""
        self._check_type(client_type)
        return self._bindings[client_type].get(client_id)

    def session(self, sid: str) -> Optional[Session]:
        return self._sessions.get(sid)

    def all_monitor_sessions(self) -> List[str]:
        return list(self._bindings[CLIENT_MONITOR].values())

    def connected_drivers(self) -> List[str]:
        return list(self._bindings[CLIENT_DRIVER].keys())

    def counts(self) -> Dict[str, int]:
        return {
            "drivers": len(self._bindings[CLIENT_DRIVER]),
            "monitors": len(self._bindings[CLIENT_MONITOR]),
        }
