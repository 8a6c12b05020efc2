"""
============================================================
 Fleet Relay — Central Configuration
 All tunable thresholds and constants live here.
============================================================
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


# ── Client Types ────────────────────────────────────────────
CLIENT_DRIVER = "driver"
CLIENT_MONITOR = "monitor"

# Literal identity used as `from` / `to` for the monitoring side of a chat
MONITOR_IDENTITY = "monitor"

# ── Development API key (accepts every socket when left as-is) ─
DEFAULT_DEV_KEY = "default-dev-key"

DEFAULT_OSRM_URL = "https://router.project-osrm.org/route/v1"
DEFAULT_GRAPHHOPPER_URL = "https://graphhopper.com/api/1/route"


class Settings(BaseModel):
    """Every tunable of the relay. Build from the environment with `from_env()`."""

    # ── Server ──────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 4001
    cors_origins: str = "*"
    log_level: str = "INFO"

    # ── Storage / file logs ─────────────────────────────────
    log_dir: str = "./logs"
    log_file_prefix: str = "gps_log_"
    log_chat: bool = True
    chat_log_prefix: str = "chat_"
    log_background_writes: bool = True

    # ── Security ────────────────────────────────────────────
    api_key: str = DEFAULT_DEV_KEY

    # ── Driver tracking ─────────────────────────────────────
    history_length: int = 100
    offline_eviction_seconds: float = 600.0   # 10 minutes offline → removed
    stale_driver_seconds: float = 600.0       # 10 minutes silent → offline
    sweep_interval_seconds: float = 300.0     # sweeper runs every 5 minutes

    # ── Chat ────────────────────────────────────────────────
    enable_chat: bool = True
    max_chat_messages: int = 200
    chat_retention_days: int = 30
    max_message_length: int = 1000
    message_rate_limit: int = 0               # messages / minute, 0 = unlimited

    # ── Routing ─────────────────────────────────────────────
    route_timeout_seconds: float = 5.0
    osrm_url: str = DEFAULT_OSRM_URL
    graphhopper_url: str = DEFAULT_GRAPHHOPPER_URL
    graphhopper_api_key: Optional[str] = None

    # ── Demo mode ───────────────────────────────────────────
    enable_sample_data: bool = False
    sample_data_file: str = os.path.join("sample-data", "gpsData.json")
    location_interval_ms: int = 1000

    @property
    def chat_retention_seconds(self) -> float:
        return self.chat_retention_days * 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 4001),
            cors_origins=os.getenv("CORS_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR", "./logs"),
            log_file_prefix=os.getenv("LOG_FILE_PREFIX", "gps_log_"),
            log_chat=_env_bool("LOG_CHAT", True),
            chat_log_prefix=os.getenv("CHAT_LOG_PREFIX", "chat_"),
            log_background_writes=_env_bool("LOG_BACKGROUND_WRITES", True),
            api_key=os.getenv("API_KEY", DEFAULT_DEV_KEY),
            history_length=_env_int("HISTORY_LENGTH", 100),
            offline_eviction_seconds=_env_float("OFFLINE_EVICTION_SECONDS", 600.0),
            stale_driver_seconds=_env_float("STALE_DRIVER_SECONDS", 600.0),
            sweep_interval_seconds=_env_float("SWEEP_INTERVAL_SECONDS", 300.0),
            enable_chat=_env_bool("ENABLE_CHAT", True),
            max_chat_messages=_env_int("MAX_CHAT_MESSAGES", 200),
            chat_retention_days=_env_int("CHAT_RETENTION_DAYS", 30),
            max_message_length=_env_int("MAX_MESSAGE_LENGTH", 1000),
            message_rate_limit=_env_int("MESSAGE_RATE_LIMIT", 0),
            route_timeout_seconds=_env_float("ROUTE_TIMEOUT_SECONDS", 5.0),
            osrm_url=os.getenv("OSRM_URL", DEFAULT_OSRM_URL),
            graphhopper_url=os.getenv("GRAPHHOPPER_URL", DEFAULT_GRAPHHOPPER_URL),
            graphhopper_api_key=os.getenv("GRAPHHOPPER_API_KEY") or None,
            enable_sample_data=_env_bool("ENABLE_SAMPLE_DATA", False),
            sample_data_file=os.getenv(
                "SAMPLE_DATA_FILE", os.path.join("sample-data", "gpsData.json")
            ),
            location_interval_ms=_env_int("LOCATION_INTERVAL_MS", 1000),
        )
