"""
OpStatus Configuration
======================

Environment-driven configuration shared by the producer (daemon) and
consumers (GUI clients). Both sides must agree on the snapshot path and
the broadcast rendezvous directory.

Environment variables:
    OPSTATUS_DIR               - Base directory for status files
    OPSTATUS_STATE_FILE        - Snapshot file (default: <dir>/operation_status.json)
    OPSTATUS_BROADCAST_DIR     - Subscriber socket directory (default: <dir>/subscribers)
    OPSTATUS_POLL_INTERVAL     - Client poll interval in seconds (default: 5.0)
    OPSTATUS_BROADCAST         - Enable broadcast delivery (default: true)
    OPSTATUS_WATCHER           - Enable snapshot file watching (default: true)
    OPSTATUS_POLL              - Enable poll fallback (default: true)
    OPSTATUS_COMPLETED_TTL     - Retention for completed records (default: 30s)
    OPSTATUS_CANCELLED_TTL     - Retention for cancelled records (default: 60s)
    OPSTATUS_ERROR_TTL         - Retention for error records (default: 600s)
    OPSTATUS_MAX_AGE           - Retention for any other record (default: 3600s)
    OPSTATUS_SWEEP_INTERVAL    - Retention sweep interval, 0 disables (default: 30s)
    OPSTATUS_STALE_AFTER       - Client-side abandonment threshold (default: 3600s)
    OPSTATUS_HTTP              - Serve the read-only HTTP endpoint (default: false)
    OPSTATUS_HTTP_HOST         - HTTP bind host (default: 127.0.0.1)
    OPSTATUS_HTTP_PORT         - HTTP bind port (default: 8765)
    OPSTATUS_LOG_LEVEL         - Log level for the CLI (default: INFO)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


# =============================================================================
# ENVIRONMENT VARIABLE HELPERS
# =============================================================================


def _env_str(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[StatusConfig] Invalid float for {key}: {value}, using default: {default}")
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[StatusConfig] Invalid int for {key}: {value}, using default: {default}")
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _env_path(key: str, default: Optional[Path]) -> Optional[Path]:
    value = os.getenv(key)
    if not value:
        return default
    return Path(value).expanduser()


def default_status_dir() -> Path:
    """Well-known status directory for this platform."""
    if sys.platform == "darwin":
        return Path("/Library/Application Support/OpStatus")
    return Path.home() / ".opstatus"


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class StatusSyncConfig:
    """Configuration for status synchronization - all values from environment variables."""

    status_dir: Path = field(default_factory=lambda: _env_path(
        "OPSTATUS_DIR", default_status_dir()
    ))
    state_file: Optional[Path] = field(default_factory=lambda: _env_path(
        "OPSTATUS_STATE_FILE", None
    ))
    broadcast_dir: Optional[Path] = field(default_factory=lambda: _env_path(
        "OPSTATUS_BROADCAST_DIR", None
    ))

    # Delivery mechanisms
    poll_interval: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_POLL_INTERVAL", DEFAULT_POLL_INTERVAL
    ))
    broadcast_enabled: bool = field(default_factory=lambda: _env_bool(
        "OPSTATUS_BROADCAST", True
    ))
    watcher_enabled: bool = field(default_factory=lambda: _env_bool(
        "OPSTATUS_WATCHER", True
    ))
    poll_enabled: bool = field(default_factory=lambda: _env_bool(
        "OPSTATUS_POLL", True
    ))

    # Retention (seconds since a record's lastUpdate)
    completed_ttl: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_COMPLETED_TTL", 30.0
    ))
    cancelled_ttl: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_CANCELLED_TTL", 60.0
    ))
    error_ttl: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_ERROR_TTL", 600.0
    ))
    max_age: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_MAX_AGE", 3600.0
    ))
    sweep_interval: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_SWEEP_INTERVAL", 30.0
    ))

    # Client-side abandonment inference
    stale_after: float = field(default_factory=lambda: _env_float(
        "OPSTATUS_STALE_AFTER", 3600.0
    ))

    # Read-only HTTP endpoint
    http_enabled: bool = field(default_factory=lambda: _env_bool(
        "OPSTATUS_HTTP", False
    ))
    http_host: str = field(default_factory=lambda: _env_str(
        "OPSTATUS_HTTP_HOST", "127.0.0.1"
    ))
    http_port: int = field(default_factory=lambda: _env_int(
        "OPSTATUS_HTTP_PORT", 8765
    ))

    log_level: str = field(default_factory=lambda: _env_str(
        "OPSTATUS_LOG_LEVEL", "INFO"
    ))

    def __post_init__(self):
        self.status_dir = Path(self.status_dir).expanduser()
        if self.state_file is None:
            self.state_file = self.status_dir / "operation_status.json"
        else:
            self.state_file = Path(self.state_file).expanduser()
        if self.broadcast_dir is None:
            self.broadcast_dir = self.status_dir / "subscribers"
        else:
            self.broadcast_dir = Path(self.broadcast_dir).expanduser()
        if self.poll_interval <= 0:
            logger.warning(
                f"[StatusConfig] poll_interval must be positive, got {self.poll_interval}, "
                f"using default: {DEFAULT_POLL_INTERVAL}"
            )
            self.poll_interval = DEFAULT_POLL_INTERVAL

    @classmethod
    def for_directory(cls, status_dir: Path, **overrides) -> "StatusSyncConfig":
        """Config rooted at ``status_dir`` regardless of OPSTATUS_STATE_FILE/BROADCAST_DIR."""
        overrides.setdefault("state_file", Path(status_dir) / "operation_status.json")
        overrides.setdefault("broadcast_dir", Path(status_dir) / "subscribers")
        return cls(status_dir=Path(status_dir), **overrides)

    def ensure_producer_directories(self) -> None:
        """
        Create the status and broadcast directories with producer permissions.

        The broadcast directory is world-writable with the sticky bit so that
        unprivileged clients can bind their sockets next to each other.
        """
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.state_file.parent, 0o755)
        except OSError as e:
            logger.debug(f"[StatusConfig] chmod {self.state_file.parent} failed: {e}")

        self.broadcast_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.broadcast_dir, 0o1777)
        except OSError as e:
            logger.debug(f"[StatusConfig] chmod {self.broadcast_dir} failed: {e}")
