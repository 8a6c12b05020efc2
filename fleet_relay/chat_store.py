"""
============================================================
 Fleet Relay — Chat Store
 Per-driver conversation logs between a driver and the
 monitoring side, read-state tracking, per-sender rate
 limiting, and bounded retention (by count on insert, by
 age on sweep).
============================================================
"""

import enum
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from fleet_relay.config import MONITOR_IDENTITY
from fleet_relay.errors import InvalidMessage, RateLimitError
from fleet_relay.log_writer import LogWriter, NullLogWriter
from fleet_relay.models import ChatMessage

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


class RejectReason(str, enum.Enum):
    MISSING_FIELD = "MissingField"
    TOO_LONG = "TooLong"
    RATE_LIMITED = "RateLimited"


@dataclass(frozen=True)
class Verdict:
    reason: Optional[RejectReason] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.reason is None

    def raise_if_rejected(self) -> None:
        if self.reason is None:
            return
        if self.reason == RejectReason.RATE_LIMITED:
            raise RateLimitError(self.detail)
        raise InvalidMessage(self.detail, reason=self.reason.value)


OK = Verdict()


@dataclass
class RateWindow:
    count: int
    window_start: float
    last_message_at: float


def conversation_key(sender: str, recipient: str) -> str:
    """The driver side of a conversation: `to == monitor ? from : to`."""
    return sender if recipient == MONITOR_IDENTITY else recipient


class ChatStore:
    """Owned chat state. One ordered log per driver conversation."""

    def __init__(
        self,
        *,
        max_messages: int = 200,
        max_length: int = 1000,
        rate_limit: int = 0,
        log_writer: Optional[LogWriter] = None,
        log_prefix: str = "chat_",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_messages = max_messages
        self.max_length = max_length
        self.rate_limit = rate_limit
        self._log = log_writer or NullLogWriter()
        self._log_prefix = log_prefix
        self._clock = clock
        self._logs: Dict[str, Deque[ChatMessage]] = {}
        self._rates: Dict[str, RateWindow] = {}

    # ── Validation ────────────────────────────────────────────────────
    def validate(self, message: Any, sender_id: Optional[str] = None) -> Verdict:
        """Check required fields, length and the sender's rate budget.

        An accepted message consumes one slot of the sender's window.
        """
        if not isinstance(message, dict):
            return Verdict(RejectReason.MISSING_FIELD, "message must be an object")
        for field in ("text", "from", "to"):
            value = message.get(field)
            if not isinstance(value, str) or not value.strip():
                return Verdict(RejectReason.MISSING_FIELD, f"'{field}' is required")
        msg_id = message.get("id")
        if msg_id is not None and (not isinstance(msg_id, str) or not msg_id.strip()):
            return Verdict(RejectReason.MISSING_FIELD, "'id' must be a non-empty string")
        ts = message.get("timestamp")
        if ts is not None and (isinstance(ts, bool) or not isinstance(ts, (int, float, str))):
            return Verdict(RejectReason.MISSING_FIELD, "'timestamp' must be a number or an ISO-8601 string")
        if len(message["text"]) > self.max_length:
            return Verdict(
                RejectReason.TOO_LONG,
                f"message exceeds {self.max_length} characters",
            )

        sender = sender_id or message["from"]
        if self.rate_limit > 0 and not self._take_slot(sender):
            return Verdict(
                RejectReason.RATE_LIMITED,
                f"limit of {self.rate_limit} messages per minute reached",
            )
        return OK

    def _take_slot(self, sender: str) -> bool:
        now = self._clock()
        window = self._rates.get(sender)
        if window is None or now - window.window_start > RATE_WINDOW_SECONDS:
            self._rates[sender] = RateWindow(count=1, window_start=now, last_message_at=now)
            return True
        if window.count >= self.rate_limit:
            return False
        window.count += 1
        window.last_message_at = now
        return True

    # ── Mutation ──────────────────────────────────────────────────────
    def append(self, message: Dict[str, Any]) -> ChatMessage:
        """Store a validated message. Returns the stored record (id and timestamp filled in).

        Ids are unique across every conversation. Resending a stored message
        with the same id, sender, recipient and text returns the stored copy
        without adding it again; any other clash gets a fresh id.
        """
        now = self._clock()
        msg_id = message.get("id")
        if msg_id:
            existing = self._find(msg_id)
            if existing is not None:
                if (existing.from_, existing.to, existing.text) == (message["from"], message["to"], message["text"]):
                    return existing
                logger.info("[CHAT] id %s already taken, assigning a new one", msg_id)
                msg_id = None
        msg = ChatMessage(
            id=msg_id or self._new_id(message["from"], now),
            from_=message["from"],
            to=message["to"],
            text=message["text"],
            timestamp=message.get("timestamp") or int(now * 1000),
            read=False,
            stored_at=now,
        )
        key = conversation_key(msg.from_, msg.to)
        log = self._logs.get(key)
        if log is None:
            log = deque(maxlen=self.max_messages)
            self._logs[key] = log
        log.append(msg)

        self._log.append(self._log_prefix, key, msg.to_dict())
        return msg

    def _new_id(self, sender: str, now: float) -> str:
        return f"{sender}-{int(now * 1000)}-{uuid.uuid4().hex[:8]}"

    def _find(self, msg_id: str) -> Optional[ChatMessage]:
        for log in self._logs.values():
            for msg in log:
                if msg.id == msg_id:
                    return msg
        return None

    def mark_read(self, message_ids: Iterable[str], reader: str) -> Dict[str, List[str]]:
        """Flip `read` to True for matching ids. Returns {driverId: [ids]} per affected conversation.

        The monitoring side may mark any conversation; a driver only its own.
        """
        wanted = set(message_ids)
        if not wanted:
            return {}
        if reader == MONITOR_IDENTITY:
            keys = list(self._logs.keys())
        else:
            keys = [reader] if reader in self._logs else []

        affected: Dict[str, List[str]] = {}
        for key in keys:
            for msg in self._logs[key]:
                if msg.id in wanted:
                    msg.read = True
                    affected.setdefault(key, []).append(msg.id)
        return affected

    # ── Reads ─────────────────────────────────────────────────────────
    def get_history(self, driver_id: str) -> List[ChatMessage]:
        return list(self._logs.get(driver_id, ()))

    def get_unread_queued_for(self, driver_id: str) -> List[ChatMessage]:
        """Messages addressed to `driver_id` it has not read yet, oldest first."""
        return [
            msg for msg in self._logs.get(driver_id, ())
            if msg.to == driver_id and not msg.read
        ]

    def conversation_ids(self) -> List[str]:
        return list(self._logs.keys())

    def __len__(self) -> int:
        return sum(len(log) for log in self._logs.values())

    # ── Retention ─────────────────────────────────────────────────────
    def sweep_expired(self, max_age_seconds: float) -> int:
        """Drop messages stored more than `max_age_seconds` ago. Returns how many went."""
        cutoff = self._clock() - max_age_seconds
        dropped = 0
        for key in list(self._logs.keys()):
            log = self._logs[key]
            kept = [msg for msg in log if msg.stored_at >= cutoff]
            dropped += len(log) - len(kept)
            if not kept:
                del self._logs[key]
            elif len(kept) != len(log):
                self._logs[key] = deque(kept, maxlen=self.max_messages)

        # expired rate windows
        now = self._clock()
        for sender, window in list(self._rates.items()):
            if now - window.window_start > RATE_WINDOW_SECONDS:
                del self._rates[sender]
        return dropped
