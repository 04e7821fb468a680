import os
import logging
import sys
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

SIGNAL_MODES = ("mark_suppress_next", "heartbeat")


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/tracker.db")
    )
    base_url: str = field(
        default_factory=lambda: os.getenv("BASE_URL", "http://localhost:8080").rstrip("/")
    )
    api_key: str | None = field(default_factory=lambda: os.getenv("API_KEY") or None)

    # Which sender-signal store the recorder consults
    sender_signal_mode: str = field(
        default_factory=lambda: os.getenv("SENDER_SIGNAL_MODE", "mark_suppress_next")
    )

    # Classification windows
    dedup_window_seconds: float = field(default_factory=lambda: _env_float("DEDUP_WINDOW_SECONDS", 30))
    sender_guard_seconds: float = field(default_factory=lambda: _env_float("SENDER_GUARD_SECONDS", 5))

    # In-memory signal stores
    suppression_ttl_seconds: float = field(default_factory=lambda: _env_float("SUPPRESSION_TTL_SECONDS", 10))
    suppression_map_limit: int = field(default_factory=lambda: _env_int("SUPPRESSION_MAP_LIMIT", 10_000))
    heartbeat_lookback_seconds: float = field(
        default_factory=lambda: _env_float("HEARTBEAT_LOOKBACK_SECONDS", 120)
    )
    heartbeat_map_limit: int = field(default_factory=lambda: _env_int("HEARTBEAT_MAP_LIMIT", 10_000))
    suppression_event_limit: int = field(default_factory=lambda: _env_int("SUPPRESSION_EVENT_LIMIT", 5_000))
    latency_sample_limit: int = field(default_factory=lambda: _env_int("LATENCY_SAMPLE_LIMIT", 1_000))

    record_timeout_seconds: float = field(default_factory=lambda: _env_float("RECORD_TIMEOUT_SECONDS", 5))

    geoip_db_path: str = field(
        default_factory=lambda: os.getenv("GEOIP_DB_PATH", "/app/data/geoip/GeoLite2-City.mmdb")
    )
    maxmind_license_key: str = field(default_factory=lambda: os.getenv("MAXMIND_LICENSE_KEY", ""))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def __post_init__(self):
        if self.sender_signal_mode not in SIGNAL_MODES:
            raise RuntimeError(
                f"Invalid SENDER_SIGNAL_MODE '{self.sender_signal_mode}'. "
                f"Use one of: {', '.join(SIGNAL_MODES)}."
            )


def configure_logging(level: str = "INFO"):
    """Send logs to stdout unless the host (uvicorn, pytest) already configured a handler."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
