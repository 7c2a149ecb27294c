"""Numeric limits and timeouts - no circular dependencies."""

from __future__ import annotations

# Loop supervision
HEARTBEAT_INTERVAL_SECONDS: float = 5.0
STALE_HEARTBEAT_SECONDS: float = 30.0
PAUSE_POLL_SECONDS: float = 1.0
PAUSE_MAX_SECONDS: float = 24 * 60 * 60

# Retry engine
DEFAULT_RETRIES: int = 1
DEFAULT_BACKOFF_MS: int = 5_000
BACKOFF_FACTOR: int = 2
MAX_RATE_LIMIT_WAITS: int = 10

# Sandbox
DEFAULT_COMMAND_TIMEOUT_SECONDS: float = 600.0
MAX_COMMAND_TIMEOUT_SECONDS: float = 60 * 60.0
SANDBOX_READ_CHUNK_BYTES: int = 4096
SANDBOX_WATCH_INTERVAL_SECONDS: float = 0.05
KILL_GRACE_SECONDS: float = 2.0

# Activity
ACTIVITY_IDLE_SECONDS: float = 10.0
ACTIVITY_WRITE_THROTTLE_SECONDS: float = 1.0

# Event log paging
EVENTS_DEFAULT_LIMIT: int = 50
EVENTS_MAX_LIMIT: int = 500

# Start lock
START_LOCK_TIMEOUT_SECONDS: float = 5.0
STATE_LOCK_TIMEOUT_SECONDS: float = 10.0

# Logging
MAX_LOG_MESSAGE_LENGTH: int = 20_000
MAX_LOG_LINES: int = 2000
MAX_OUTPUT_TAIL_CHARS: int = 4000
