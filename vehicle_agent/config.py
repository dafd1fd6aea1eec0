"""Agent configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an
env var.  The core only ever reads this snapshot; persisting user
preferences is the host application's job.

Note: ``env_prefix`` is empty, so field names map directly to env vars
(e.g. ``POLL_INTERVAL_SECONDS``, ``PREFERRED_ADAPTER``).
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from vehicle_agent.schemas import AdapterKind

_DEFAULT_DEVICE_PATHS = [
    "/dev/can0",
    "/dev/canbus",
    "/dev/ttyACM0",
    "/proc/bus/canbus",
    "/dev/mcu",
]


class AgentSettings(BaseSettings):
    """Vehicle agent runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- adapter selection --------------------------------------------------
    preferred_adapter: Optional[AdapterKind] = Field(
        default=None,
        description="Adapter kind to try before the built-in fallback order",
    )

    # -- external ELM327-style adapter --------------------------------------
    elm_port: str = Field(
        default="auto",
        description="Serial port of the adapter, or 'auto' to scan for one",
    )
    elm_baudrate: int = Field(default=38400, description="Serial baud rate")

    # -- built-in bus -------------------------------------------------------
    builtin_device_paths: List[str] = Field(
        default_factory=lambda: list(_DEFAULT_DEVICE_PATHS),
        description="Device nodes probed, in order, for a built-in bus",
    )
    socketcan_channel: str = Field(
        default="can0",
        description="SocketCAN interface used when no device node is readable",
    )
    builtin_frame_batch: int = Field(
        default=1024,
        description="Max frames drained from the bus per poll",
    )
    builtin_frame_max_age_seconds: Optional[float] = Field(
        default=5.0,
        description=(
            "Seconds a broadcast value is carried forward without a new "
            "frame before it reads as unavailable; unset keeps it forever"
        ),
    )

    # -- simulation ---------------------------------------------------------
    sim_scenario: str = Field(
        default="healthy",
        description="Simulation scenario name (from simulation_scenarios.json)",
    )
    sim_connect_delay_seconds: float = Field(
        default=1.0,
        description="Artificial connect delay of the simulated adapter",
    )

    # -- timing -------------------------------------------------------------
    poll_interval_seconds: float = Field(
        default=0.2,
        description="Seconds between telemetry polls",
    )
    exchange_timeout_seconds: float = Field(
        default=2.0,
        description="Upper bound for a single command/response exchange",
    )
    connect_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a whole connect attempt",
    )
    reset_settle_seconds: float = Field(
        default=1.5,
        description="Wait after an adapter reset",
    )
    protocol_settle_seconds: float = Field(
        default=0.1,
        description="Wait after each protocol-init command",
    )
    clear_settle_seconds: float = Field(
        default=2.0,
        description="Wait after a clear-codes request",
    )
    broadcast_queue_size: int = Field(
        default=8,
        description="Unread readings kept per consumer before dropping",
    )

    # -- data logging -------------------------------------------------------
    logging_enabled: bool = Field(
        default=False,
        description="Record readings to CSV while polling",
    )
    log_interval_seconds: float = Field(
        default=1.0,
        description="Minimum seconds between two logged rows",
    )
    log_dir: Path = Field(
        default=Path("vehicle_logs"),
        description="Directory holding the CSV log files",
    )
    log_max_files: int = Field(default=10, description="Log files retained")
    log_max_total_bytes: Optional[int] = Field(
        default=100 * 1024 * 1024,
        description="Total size cap for retained log files (None = no cap)",
    )
    log_flush_interval_seconds: float = Field(
        default=5.0,
        description="Seconds between opportunistic flushes of the active log",
    )

    # -- behaviour ----------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )
