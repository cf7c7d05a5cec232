"""Configuration management for the Pulse service."""

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class DispatchConfig:
    """Settings of the dispatcher and executor."""

    poll_interval_seconds: float = 5.0
    max_concurrent_runs: int = 10
    run_timeout_seconds: float = 30.0
    claim_grace_seconds: float = 60.0
    run_history_limit: int = 20


@dataclass
class BroadcastConfig:
    """Settings of the broadcast hub."""

    terminal_retention_seconds: float = 600.0
    stale_operation_seconds: float = 3600.0
    recent_messages_limit: int = 5
    cleanup_interval_seconds: float = 60.0
    observer_queue_size: int = 100


@dataclass
class PulseConfig:
    """Complete service configuration."""

    # None selects the in-memory store
    database_url: Optional[str] = None
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    start_dispatcher: bool = True

    @classmethod
    def from_environment(cls) -> "PulseConfig":
        """Create configuration from environment variables."""
        config = cls()

        config.database_url = os.getenv("PULSE_DATABASE_URL") or None
        config.log_level = os.getenv("PULSE_LOG_LEVEL", "INFO").upper()
        config.cors_origins = [
            origin.strip()
            for origin in os.getenv("PULSE_CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]
        config.start_dispatcher = os.getenv("PULSE_START_DISPATCHER", "true").lower() == "true"

        # Dispatch settings
        config.dispatch.poll_interval_seconds = float(os.getenv("PULSE_POLL_INTERVAL_SECONDS", "5"))
        config.dispatch.max_concurrent_runs = int(os.getenv("PULSE_MAX_CONCURRENT_RUNS", "10"))
        config.dispatch.run_timeout_seconds = float(os.getenv("PULSE_RUN_TIMEOUT_SECONDS", "30"))
        config.dispatch.claim_grace_seconds = float(os.getenv("PULSE_CLAIM_GRACE_SECONDS", "60"))
        config.dispatch.run_history_limit = int(os.getenv("PULSE_RUN_HISTORY_LIMIT", "20"))

        # Broadcast settings
        config.broadcast.terminal_retention_seconds = float(
            os.getenv("PULSE_TERMINAL_RETENTION_SECONDS", "600")
        )
        config.broadcast.stale_operation_seconds = float(
            os.getenv("PULSE_STALE_OPERATION_SECONDS", "3600")
        )
        config.broadcast.recent_messages_limit = int(os.getenv("PULSE_RECENT_MESSAGES_LIMIT", "5"))

        return config

    def validate(self) -> None:
        """Validate configuration settings."""
        if self.dispatch.poll_interval_seconds <= 0:
            raise ValueError("Poll interval must be positive")

        # Cron granularity is one minute; polling slower would miss due instants
        if self.dispatch.poll_interval_seconds >= 60:
            raise ValueError("Poll interval must be shorter than 60 seconds")

        if self.dispatch.max_concurrent_runs <= 0:
            raise ValueError("Max concurrent runs must be positive")

        if self.dispatch.run_timeout_seconds <= 0:
            raise ValueError("Run timeout must be positive")

        if self.dispatch.claim_grace_seconds < 0:
            raise ValueError("Claim grace period cannot be negative")

        if self.dispatch.run_history_limit <= 0:
            raise ValueError("Run history limit must be positive")

        if self.broadcast.terminal_retention_seconds <= 0:
            raise ValueError("Terminal retention must be positive")

        if self.broadcast.recent_messages_limit <= 0:
            raise ValueError("Recent messages limit must be positive")

        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {self.log_level}")
