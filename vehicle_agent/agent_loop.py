"""Host-level runners: telemetry polling and one-shot DTC commands."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import List, Optional

import structlog

from vehicle_agent.config import AgentSettings
from vehicle_agent.coordinator import select_transport
from vehicle_agent.data_logger import TelemetryLogger
from vehicle_agent.diagnostics import DiagnosticsSession
from vehicle_agent.schemas import ConnectionState, DecodeStatus, Reading, TroubleCode
from vehicle_agent.session import TelemetrySession

logger = structlog.get_logger(__name__)


def create_data_logger(settings: AgentSettings) -> Optional[TelemetryLogger]:
    """Factory: the CSV logger, or ``None`` when logging is disabled."""
    if not settings.logging_enabled:
        return None
    return TelemetryLogger(
        settings.log_dir,
        max_files=settings.log_max_files,
        max_total_bytes=settings.log_max_total_bytes,
        flush_interval_seconds=settings.log_flush_interval_seconds,
    )


def _print_reading(reading: Reading) -> None:
    """Stand-in display: one structured log line per reading."""
    logger.info(
        "reading",
        speed=reading.speed,
        rpm=reading.engine_speed,
        coolant=reading.coolant_temperature,
        fuel=reading.fuel_level,
        load=reading.engine_load,
        throttle=reading.throttle_position,
        battery=reading.battery_voltage,
        intake=reading.intake_temperature,
        unavailable=[
            name
            for name, status in reading.field_status.items()
            if status is not DecodeStatus.OK
        ],
    )


def _print_state(state: ConnectionState) -> None:
    logger.info("connection_state", state=state.value)


async def run_agent(
    settings: AgentSettings,
    *,
    once: bool = False,
) -> None:
    """Run the telemetry session until interrupted or the transport fails.

    Parameters
    ----------
    settings:
        Fully-resolved agent configuration.
    once:
        If ``True``, take a single reading then exit.
    """
    shutdown_event = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)

    transport = await select_transport(settings)
    session = TelemetrySession(
        transport,
        settings,
        data_logger=create_data_logger(settings),
        on_reading=_print_reading,
        on_state=_print_state,
    )

    try:
        if once:
            reading = await session.poll_once()
            _print_reading(reading)
            return

        await session.start()
        poll_done = asyncio.create_task(session.wait())
        shutdown = asyncio.create_task(shutdown_event.wait())
        await asyncio.wait(
            {poll_done, shutdown}, return_when=asyncio.FIRST_COMPLETED
        )
        shutdown.cancel()
        poll_done.cancel()
    finally:
        await session.stop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


async def run_diagnostics(
    settings: AgentSettings,
    *,
    clear: bool = False,
) -> List[TroubleCode]:
    """Read every stored code, optionally clearing them afterwards."""
    transport = await select_transport(settings)
    diagnostics = DiagnosticsSession(
        transport,
        clear_settle_seconds=settings.clear_settle_seconds,
        timeout_seconds=settings.connect_timeout_seconds,
    )
    try:
        codes = await diagnostics.read_all_codes()
        for code in codes:
            logger.info(
                "dtc",
                code=code.code,
                status=code.status.value,
                severity=code.severity.value,
                description=code.description,
            )
        if clear:
            cleared = await diagnostics.clear_codes()
            logger.info("dtc_clear_result", cleared=cleared)
        return codes
    finally:
        await transport.disconnect()
