"""
============================================================
 Fleet Relay — File Log Mirroring
 Best-effort, non-blocking JSON-lines writes for location,
 route and chat history. One file per device per calendar
 day:

   {log_dir}/{prefix}{deviceID}_{YYYY-MM-DD}.json

 A failed write is logged and counted (IOWarning), never
 raised to the caller and never rolled back in memory.
============================================================
"""

import json
import logging
import os
import queue
import re
import threading
import warnings
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from fleet_relay.errors import IOWarning

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.@-]")


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def safe_name(device_id: str) -> str:
    """Device ids come from clients; keep them from escaping the log directory."""
    cleaned = _UNSAFE_CHARS.sub("_", device_id).lstrip(".")
    return cleaned or "_"


class LogWriter:
    """
    Append-only JSON-lines writer.
    With `background=True` appends are queued to one daemon writer thread
    so the event loop never waits on the file system. Lines reach each
    file in the order they were appended.
    """

    def __init__(
        self,
        log_dir: str,
        *,
        background: bool = True,
        enabled: bool = True,
        day: Callable[[], str] = _today,
    ) -> None:
        self.log_dir = log_dir
        self.background = background
        self.enabled = enabled
        self._day = day
        self._lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._queue: "queue.Queue[Tuple[str, str]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._write_count = 0
        self._error_count = 0

    def ensure_dir(self) -> bool:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            return True
        except OSError as e:
            self._report(f"cannot create log directory {self.log_dir}: {e}")
            return False

    def path_for(self, prefix: str, device_id: str) -> str:
        return os.path.join(self.log_dir, f"{prefix}{safe_name(device_id)}_{self._day()}.json")

    # ──────────────────────────────────────────────────────────
    #  WRITE HELPERS
    # ──────────────────────────────────────────────────────────

    def append(self, prefix: str, device_id: str, record: Dict[str, Any]) -> None:
        """Queue one line for `device_id`. Returns immediately in background mode."""
        if not self.enabled:
            return
        path = self.path_for(prefix, device_id)
        try:
            line = json.dumps(record, default=str)
        except (TypeError, ValueError) as e:
            self._report(f"unserialisable record for {device_id}: {e}")
            return
        if self.background:
            self._ensure_worker()
            self._queue.put((path, line))
        else:
            self._write_line(path, line)

    def flush(self) -> None:
        """Block until every queued line has been written (or failed)."""
        self._queue.join()

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._drain, name="fleet-relay-log", daemon=True)
                self._worker.start()

    def _drain(self) -> None:
        while True:
            path, line = self._queue.get()
            try:
                self._write_line(path, line)
            finally:
                self._queue.task_done()

    def _write_line(self, path: str, line: str) -> None:
        try:
            with self._lock:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
                with open(path, "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
                self._write_count += 1
        except OSError as e:
            self._report(f"write error on {path}: {e}")

    def _report(self, message: str) -> None:
        self._error_count += 1
        if self._error_count <= 10 or self._error_count % 100 == 0:
            logger.warning("[LOG] %s (error #%d)", message, self._error_count)
        warnings.warn(message, IOWarning, stacklevel=3)

    # ──────────────────────────────────────────────────────────
    #  STATS
    # ──────────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "logDir": self.log_dir,
            "totalWrites": self._write_count,
            "totalErrors": self._error_count,
        }


class NullLogWriter(LogWriter):
    """Writer that drops everything. Used when file mirroring is switched off."""

    def __init__(self) -> None:
        super().__init__("", background=False, enabled=False)

    def ensure_dir(self) -> bool:
        return True


def open_writer(log_dir: Optional[str], *, background: bool = True) -> LogWriter:
    if not log_dir:
        return NullLogWriter()
    writer = LogWriter(log_dir, background=background)
    if writer.ensure_dir():
        logger.info("[LOG] Writing history logs to %s", os.path.abspath(log_dir))
    return writer
