"""Engine configuration loaded from environment variables.

Values come from the process environment, with a ``.env`` file in the
working directory loaded first (python-dotenv) for local development.

Environment Variables:
    FIREBASE_DATABASE_URL: Realtime Database root URL (required)
    FIREBASE_API_KEY: Web API key for anonymous sign-in (optional; without
        it the database is accessed unauthenticated, e.g. the emulator)
    DATABASE_URL: PostgreSQL DSN for local persistence (optional; without
        it the engine keeps state in memory)
    SYNC_INTERVAL_SECONDS: Seconds between queue passes (default: 5)
    PROBE_INTERVAL_SECONDS: Seconds between connectivity probes (default: 30)
    PROBE_TIMEOUT_SECONDS: Deadline for one probe (default: 10)
    SYNC_MAX_ATTEMPTS: Failed attempts before an operation is dropped (default: 3)
    SYNC_COLLECTIONS: Comma-separated collections (default: all known)
    SYNC_ON_STARTUP: Run a full sync when the daemon starts (default: true)
    FULL_SYNC_INTERVAL_MINUTES: Minutes between daemon full syncs (default: 60, 0 to disable)
    HEALTH_CHECK_PORT: Health endpoint port (default: 8080, 0 to disable)
    REQUEST_TIMEOUT_SECONDS: Timeout for one remote request (default: 30)
    LOG_LEVEL: Logging level for the entry points (default: INFO)
"""
import os
from typing import Optional

from dotenv import load_dotenv

from .api.exceptions import ConfigurationError
from .sync.domain.collections import DEFAULT_COLLECTIONS

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _number(name: str, default: str, cast=float):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
            details={"key": name},
            cause=e,
        ) from e


class SyncConfig:
    """Configuration loaded from environment variables."""

    def __init__(self):
        self.firebase_database_url: Optional[str] = os.getenv("FIREBASE_DATABASE_URL")
        self.firebase_api_key: Optional[str] = os.getenv("FIREBASE_API_KEY")
        self.database_url: Optional[str] = os.getenv("DATABASE_URL")

        self.sync_interval = _number("SYNC_INTERVAL_SECONDS", "5")
        self.probe_interval = _number("PROBE_INTERVAL_SECONDS", "30")
        self.probe_timeout = _number("PROBE_TIMEOUT_SECONDS", "10")
        self.max_attempts = _number("SYNC_MAX_ATTEMPTS", "3", int)
        self.request_timeout = _number("REQUEST_TIMEOUT_SECONDS", "30")
        self.health_check_port = _number("HEALTH_CHECK_PORT", "8080", int)
        self.sync_on_startup = _flag("SYNC_ON_STARTUP", "true")
        self.full_sync_interval_minutes = _number("FULL_SYNC_INTERVAL_MINUTES", "60")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        raw_collections = os.getenv("SYNC_COLLECTIONS", "")
        self.collections: list[str] = (
            [c.strip() for c in raw_collections.split(",") if c.strip()]
            or list(DEFAULT_COLLECTIONS)
        )

    def validate(self) -> "SyncConfig":
        """Check required settings.

        Raises:
            ConfigurationError: Listing every missing or invalid key
        """
        missing = []
        if not self.firebase_database_url:
            missing.append("FIREBASE_DATABASE_URL")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing_keys=missing,
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                "SYNC_MAX_ATTEMPTS must be at least 1",
                details={"key": "SYNC_MAX_ATTEMPTS"},
            )
        if self.sync_interval <= 0 or self.probe_interval <= 0:
            raise ConfigurationError(
                "SYNC_INTERVAL_SECONDS and PROBE_INTERVAL_SECONDS must be positive",
                details={"sync_interval": self.sync_interval, "probe_interval": self.probe_interval},
            )
        return self

    def __repr__(self):
        return (
            f"SyncConfig("
            f"database={'postgres' if self.database_url else 'memory'}, "
            f"auth={'anonymous' if self.firebase_api_key else 'none'}, "
            f"interval={self.sync_interval}s, "
            f"probe={self.probe_interval}s, "
            f"max_attempts={self.max_attempts}, "
            f"collections={len(self.collections)}, "
            f"health_port={self.health_check_port})"
        )
