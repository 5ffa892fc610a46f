"""Configuration — engine timings, transport and feed settings.

Supports two modes:
1. Module-level constants (env-var driven, `.env` honoured)
2. JSON config file at ~/.chatrelay/config.json (for advanced setups)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv

# Load .env from project root if present
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ── Process Settings ──

CONFIG_DIR = os.path.expanduser(os.getenv("CHATRELAY_HOME", "~/.chatrelay"))
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.json")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── Engine Settings ──

POLL_INTERVAL = _env_float("CHATRELAY_POLL_INTERVAL", 0.8)
IDLE_GRACE = _env_float("CHATRELAY_IDLE_GRACE", 20.0)
DEDUP_CAPACITY = 2000

# ── Feed Settings ──

USER_AGENT = os.getenv(
    "CHATRELAY_USER_AGENT",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0 Safari/537.36",
)
# used when the popout page does not expose one
FALLBACK_CLIENT_VERSION = "2.20240101.00.00"


@dataclass
class EngineDef:
    """Timing and sizing knobs for sessions and the registry.

    Attributes:
        poll_interval: Minimum wait between fetches, in seconds. A floor,
            never shortened by upstream hints.
        idle_grace: How long a session with no subscribers survives.
        dedup_capacity: Size of each session's seen-id window.
        transient_backoff_base: First retry delay after a transient error.
        not_found_interval: First retry delay while no feed is live.
        backoff_cap: Ceiling for any retry delay.
        max_consecutive_failures: Transient failures in a row before the
            session discards its cursor and re-resolves.
        max_not_found_retries: Give up after this many "not found" answers
            in a row (0 = keep waiting while subscribers remain).
        subscriber_queue_size: Capacity of each transport subscriber queue.
    """

    poll_interval: float = field(default_factory=lambda: POLL_INTERVAL)
    idle_grace: float = field(default_factory=lambda: IDLE_GRACE)
    dedup_capacity: int = DEDUP_CAPACITY
    transient_backoff_base: float = 1.0
    not_found_interval: float = 5.0
    backoff_cap: float = 30.0
    max_consecutive_failures: int = 4
    max_not_found_retries: int = 0
    subscriber_queue_size: int = 256


@dataclass
class HttpDef:
    """HTTP transport settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    keepalive: float = 20.0


@dataclass
class FeedDef:
    """Upstream feed client settings."""

    user_agent: str = field(default_factory=lambda: USER_AGENT)
    request_timeout: float = 10.0
    client_version: str = FALLBACK_CLIENT_VERSION


@dataclass
class ReporterDef:
    """Periodic status report settings."""

    enabled: bool = False
    schedule: str = "every 60 seconds"


@dataclass
class AppConfig:
    """Full application configuration loaded from config.json.

    Provides sensible defaults for all settings. Can be constructed
    from a JSON file, from a dict, or with no arguments (all defaults).
    """

    engine: EngineDef = field(default_factory=EngineDef)
    http: HttpDef = field(default_factory=HttpDef)
    feed: FeedDef = field(default_factory=FeedDef)
    reporter: ReporterDef = field(default_factory=ReporterDef)
    log_level: str = field(default_factory=lambda: LOG_LEVEL)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Build config from a parsed JSON dict."""
        defaults = EngineDef()
        eng = data.get("engine", {})
        engine = EngineDef(
            poll_interval=float(eng.get("poll_interval", defaults.poll_interval)),
            idle_grace=float(eng.get("idle_grace", defaults.idle_grace)),
            dedup_capacity=int(eng.get("dedup_capacity", defaults.dedup_capacity)),
            transient_backoff_base=float(eng.get("transient_backoff_base", defaults.transient_backoff_base)),
            not_found_interval=float(eng.get("not_found_interval", defaults.not_found_interval)),
            backoff_cap=float(eng.get("backoff_cap", defaults.backoff_cap)),
            max_consecutive_failures=int(eng.get("max_consecutive_failures", defaults.max_consecutive_failures)),
            max_not_found_retries=int(eng.get("max_not_found_retries", defaults.max_not_found_retries)),
            subscriber_queue_size=int(eng.get("subscriber_queue_size", defaults.subscriber_queue_size)),
        )

        http_data = data.get("http", {})
        http = HttpDef(
            host=http_data.get("host", "0.0.0.0"),
            port=int(http_data.get("port", 3000)),
            keepalive=float(http_data.get("keepalive", 20.0)),
        )

        feed_data = data.get("feed", {})
        feed = FeedDef(
            user_agent=feed_data.get("user_agent", USER_AGENT),
            request_timeout=float(feed_data.get("request_timeout", 10.0)),
            client_version=feed_data.get("client_version", FALLBACK_CLIENT_VERSION),
        )

        rep_data = data.get("reporter", {})
        reporter = ReporterDef(
            enabled=bool(rep_data.get("enabled", False)),
            schedule=rep_data.get("schedule", "every 60 seconds"),
        )

        return cls(
            engine=engine,
            http=http,
            feed=feed,
            reporter=reporter,
            log_level=data.get("log_level", LOG_LEVEL),
        )

    @classmethod
    def from_file(cls, path: str) -> AppConfig:
        """Load config from a JSON file. Returns defaults if file doesn't exist."""
        if not os.path.exists(path):
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | None = None) -> AppConfig:
        """Load config from the standard location.

        Checks:
        1. explicit `path`
        2. CHATRELAY_CONFIG env var
        3. ~/.chatrelay/config.json
        4. Falls back to defaults
        """
        if path:
            return cls.from_file(path)

        config_path = os.getenv("CHATRELAY_CONFIG")
        if config_path and os.path.exists(config_path):
            return cls.from_file(config_path)

        return cls.from_file(CONFIG_PATH)

    def validate(self) -> list[str]:
        """Validate the config and return a list of warnings (empty = valid)."""
        warnings: list[str] = []
        eng = self.engine

        if eng.poll_interval <= 0:
            warnings.append("engine.poll_interval must be positive")
        if eng.idle_grace < 0:
            warnings.append("engine.idle_grace must not be negative")
        if eng.dedup_capacity <= 0:
            warnings.append("engine.dedup_capacity must be positive")
        if eng.transient_backoff_base <= 0 or eng.not_found_interval <= 0:
            warnings.append("engine backoff intervals must be positive")
        if eng.backoff_cap < eng.transient_backoff_base:
            warnings.append("engine.backoff_cap is smaller than transient_backoff_base")
        if eng.max_consecutive_failures < 1:
            warnings.append("engine.max_consecutive_failures must be at least 1")
        if eng.max_not_found_retries < 0:
            warnings.append("engine.max_not_found_retries must not be negative")
        if eng.subscriber_queue_size <= 0:
            warnings.append("engine.subscriber_queue_size must be positive")

        if not 0 < self.http.port < 65536:
            warnings.append(f"http.port {self.http.port} is out of range")
        if self.feed.request_timeout <= 0:
            warnings.append("feed.request_timeout must be positive")

        return warnings
