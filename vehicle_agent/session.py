"""Telemetry session: one poll loop, many consumers.

A single producer task drives the transport (exchange, decode) on a fixed
interval and broadcasts each ``Reading``.  Consumers -- the display
callback and the CSV logger -- read from their own subscription and
never touch the transport, so requests cannot race on one channel.

A transport error ends the poll loop for good; the host decides whether
to select a new transport.  Teardown order is always: poll loop, logger,
transport.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, List, Optional

import structlog

from vehicle_agent.broadcast import Broadcaster, Subscription
from vehicle_agent.config import AgentSettings
from vehicle_agent.data_logger import TelemetryLogger
from vehicle_agent.diagnostics import DiagnosticsSession
from vehicle_agent.schemas import ConnectionState, Reading
from vehicle_agent.transport.base import Transport

logger = structlog.get_logger(__name__)

ReadingCallback = Callable[[Reading], Any]
StateCallback = Callable[[ConnectionState], Any]


class TelemetrySession:
    """Owns the transport, the poll loop and its consumers."""

    def __init__(
        self,
        transport: Transport,
        settings: AgentSettings,
        *,
        data_logger: Optional[TelemetryLogger] = None,
        on_reading: Optional[ReadingCallback] = None,
        on_state: Optional[StateCallback] = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._data_logger = data_logger
        self._on_reading = on_reading
        self._on_state = on_state
        self._broadcaster: Broadcaster[Reading] = Broadcaster(
            settings.broadcast_queue_size
        )
        self._stop_event = asyncio.Event()
        self._producer: Optional[asyncio.Task] = None
        self._consumers: List[asyncio.Task] = []
        self._last_state: Optional[ConnectionState] = None
        self._latest: Optional[Reading] = None

    # -- properties ---------------------------------------------------------

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def state(self) -> ConnectionState:
        return self._transport.state

    @property
    def running(self) -> bool:
        return self._producer is not None and not self._producer.done()

    @property
    def latest(self) -> Optional[Reading]:
        return self._latest

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start consumers, then the poll loop."""
        if self._producer is not None:
            raise RuntimeError("Session already started")

        if self._on_reading is not None:
            sub = self._broadcaster.subscribe("display")
            self._consumers.append(
                asyncio.create_task(self._display_consumer(sub), name="display")
            )
        if self._data_logger is not None:
            if not self._data_logger.is_logging:
                self._data_logger.start()
            sub = self._broadcaster.subscribe("logger")
            self._consumers.append(
                asyncio.create_task(self._logger_consumer(sub), name="logger")
            )

        await self._notify_state()
        self._producer = asyncio.create_task(self._poll_loop(), name="poll")
        logger.info(
            "session_started",
            kind=self._transport.kind.value,
            interval=self._settings.poll_interval_seconds,
            logging=self._data_logger is not None,
        )

    async def wait(self) -> None:
        """Block until the poll loop ends (transport error or ``stop``)."""
        if self._producer is not None:
            await asyncio.shield(self._producer)

    async def stop(self) -> None:
        """Tear everything down.  Safe to call at any time, repeatedly."""
        self._stop_event.set()
        if self._producer is not None and not self._producer.done():
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._producer),
                    timeout=self._settings.exchange_timeout_seconds * 2,
                )
            except asyncio.TimeoutError:
                self._producer.cancel()
                await asyncio.gather(self._producer, return_exceptions=True)

        self._broadcaster.close()
        if self._consumers:
            await asyncio.gather(*self._consumers, return_exceptions=True)
            self._consumers = []

        if self._data_logger is not None:
            self._data_logger.stop()
        await self._transport.disconnect()
        await self._notify_state()
        logger.info("session_stopped")

    async def poll_once(self) -> Reading:
        """Run one poll and broadcast its reading."""
        reading = await self._transport.read_reading()
        self._latest = reading
        self._broadcaster.publish(reading)
        await self._notify_state()
        return reading

    def diagnostics(self) -> DiagnosticsSession:
        """DTC access over the same transport, serialised with polling."""
        return DiagnosticsSession(
            self._transport,
            clear_settle_seconds=self._settings.clear_settle_seconds,
            timeout_seconds=self._settings.connect_timeout_seconds,
        )

    # -- tasks --------------------------------------------------------------

    async def _poll_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                if not self._transport.is_connected():
                    logger.error(
                        "poll_loop_stopped",
                        state=self._transport.state.value,
                        cause=_cause(self._transport),
                    )
                    return
                await self.poll_once()
                if self._transport.state is ConnectionState.ERROR:
                    logger.error(
                        "poll_loop_stopped",
                        state=self._transport.state.value,
                        cause=_cause(self._transport),
                    )
                    return
                await _interruptible_sleep(
                    self._settings.poll_interval_seconds, self._stop_event
                )
        except Exception:
            logger.exception("poll_loop_crashed")
        finally:
            self._broadcaster.close()

    async def _display_consumer(self, sub: Subscription[Reading]) -> None:
        async for reading in sub:
            try:
                result = self._on_reading(reading)  # type: ignore[misc]
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("display_callback_failed")

    async def _logger_consumer(self, sub: Subscription[Reading]) -> None:
        data_logger = self._data_logger
        if data_logger is None:
            return
        interval = self._settings.log_interval_seconds
        last_logged = None
        async for reading in sub:
            if last_logged is not None:
                elapsed = (reading.captured_at - last_logged).total_seconds()
                if elapsed < interval:
                    continue
            data_logger.log(reading)
            last_logged = reading.captured_at

    async def _notify_state(self) -> None:
        state = self._transport.state
        if state is self._last_state:
            return
        self._last_state = state
        if self._on_state is None:
            return
        try:
            result = self._on_state(state)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("state_callback_failed")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _cause(transport: Transport) -> Optional[str]:
    return transport.last_error.value if transport.last_error else None


async def _interruptible_sleep(
    seconds: float, event: asyncio.Event
) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
