"""Configuration management for Syncloop."""

from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, Field, field_validator

from syncloop.activities.models import ConnectionRecord


class ConnectionEntry(ConnectionRecord):
    """A connection declared in the configuration file."""

    source_config: dict[str, Any] = Field(default_factory=dict)
    # Command executed for every attempt; empty means no runner is configured
    sync_command: list[str] = Field(default_factory=list)


class SyncloopConfig(BaseModel):
    """Main configuration for Syncloop."""

    # Paths
    state_dir: Path = Field(default=Path("~/.local/share/syncloop/state"))
    log_dir: Path = Field(default=Path("~/.local/share/syncloop/logs"))

    # Attempt policy
    max_attempt: int = Field(default=3, ge=1)
    max_attempt_fallback: int = Field(default=3, ge=1)  # Used when the lookup fails

    # Scheduling (seconds)
    schedule_retry_interval: int = Field(default=60, ge=1)
    max_cycles_before_handoff: int = Field(default=10, ge=1)

    # Backoff between attempts of the same job (seconds)
    attempt_backoff_initial: float = Field(default=30.0, ge=0)
    attempt_backoff_coefficient: float = Field(default=2.0, ge=1)
    attempt_backoff_max: float = Field(default=600.0, ge=0)
    attempt_backoff_jitter: float = Field(default=0.1, ge=0, le=1)

    # Retries of activity calls
    activity_max_retries: int = Field(default=5, ge=0)
    activity_initial_interval: float = Field(default=1.0, ge=0)
    activity_backoff_coefficient: float = Field(default=2.0, ge=1)
    activity_max_interval: float = Field(default=60.0, ge=0)
    activity_jitter: float = Field(default=0.2, ge=0, le=1)

    # Timeout Settings (seconds)
    cancellation_grace_period: float = Field(default=30, ge=0)
    sync_attempt_timeout: int = Field(default=86400, ge=1)  # 24 hours
    ntfy_request_timeout: int = Field(default=10)  # 10 seconds

    # Daemon
    status_display_interval: int = Field(default=30, ge=1)

    # Notifications
    ntfy_topic: str | None = None
    notify_on_success: bool = False

    # Connection catalog
    connections: list[ConnectionEntry] = Field(default_factory=list)

    # File the configuration was read from, if any
    config_path: Path | None = Field(default=None, exclude=True)

    @field_validator("state_dir", "log_dir", mode="before")
    @classmethod
    def expand_paths(cls, v: Path | str) -> Path:
        """Expand user home directory in paths."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @field_validator("connections", mode="after")
    @classmethod
    def unique_connection_ids(cls, v: list[ConnectionEntry]) -> list[ConnectionEntry]:
        """Reject catalogs that declare the same connection twice."""
        seen: set[str] = set()
        for entry in v:
            if entry.connection_id in seen:
                msg = f"Duplicate connection id: {entry.connection_id}"
                raise ValueError(msg)
            seen.add(entry.connection_id)
        return v

    def get_connection(self, connection_id: str) -> ConnectionEntry | None:
        """Look up a catalog entry by id."""
        for entry in self.connections:
            if entry.connection_id == connection_id:
                return entry
        return None

    def reload_connections(self) -> bool:
        """Replace the connection catalog with the one currently on disk.

        Returns False when the configuration did not come from a file.
        """
        if self.config_path is None:
            return False
        with open(self.config_path, "rb") as f:
            config_data = tomli.load(f)
        self.connections = SyncloopConfig(**config_data).connections
        return True

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.state_dir, self.log_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Path | None = None) -> SyncloopConfig:
    """Load configuration from file or defaults."""
    if config_path is None:
        # Check common config locations (user config first)
        possible_paths = [
            Path.home() / ".config" / "syncloop" / "config.toml",
            Path.cwd() / "syncloop.toml",
        ]

        for path in possible_paths:
            if path.exists():
                config_path = path
                break

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            config_data = tomli.load(f)
        config = SyncloopConfig(**config_data)
        config.config_path = config_path
        return config
    # Use defaults
    return SyncloopConfig()


def create_sample_config(path: Path) -> None:
    """Create a sample configuration file."""
    sample_config = """# Syncloop Configuration
# ======================

# Directory paths
state_dir = "~/.local/share/syncloop/state"      # Snapshots and the process lock
log_dir = "~/.local/share/syncloop/logs"          # Log files

# Notifications (optional)
# ntfy_topic = "https://ntfy.sh/your_topic"       # Failure and deletion notifications
notify_on_success = false                         # Also notify when a job succeeds

# ============================================================================
# ATTEMPT POLICY
# ============================================================================

max_attempt = 3                                   # Attempts per job before it is marked failed
max_attempt_fallback = 3                          # Used when the attempt policy cannot be read

# Backoff between attempts of the same job (seconds)
attempt_backoff_initial = 30.0
attempt_backoff_coefficient = 2.0
attempt_backoff_max = 600.0
attempt_backoff_jitter = 0.1                      # Fraction of the delay (0.0-1.0)

# ============================================================================
# ADVANCED SETTINGS - Most users can leave these as defaults
# ============================================================================

schedule_retry_interval = 60                      # Wait before recomputing a failed schedule lookup
max_cycles_before_handoff = 10                    # Loop cycles before state is handed to a fresh instance
cancellation_grace_period = 30                    # Time an interrupted attempt gets to unwind
sync_attempt_timeout = 86400                      # Maximum duration of one attempt
status_display_interval = 30                      # How often the daemon logs a status line
ntfy_request_timeout = 10

# Retries of activity calls
activity_max_retries = 5
activity_initial_interval = 1.0
activity_backoff_coefficient = 2.0
activity_max_interval = 60.0
activity_jitter = 0.2

# ============================================================================
# CONNECTIONS
# ============================================================================

[[connections]]
connection_id = "orders-to-warehouse"
source_id = "orders-db"
status = "active"                                 # active, inactive, deprecated
sync_command = ["/usr/local/bin/run-sync", "--connection", "orders-to-warehouse"]

[connections.schedule]
schedule_type = "basic"                           # basic, cron, manual
units = 24
time_unit = "hours"                               # minutes, hours, days, weeks, months

[connections.source_config]
host = "orders.internal"
port = 5432

[[connections]]
connection_id = "events-nightly"
sync_command = ["/usr/local/bin/run-sync", "--connection", "events-nightly"]

[connections.schedule]
schedule_type = "cron"
cron_expression = "0 2 * * *"
timezone = "UTC"
"""

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(sample_config)
