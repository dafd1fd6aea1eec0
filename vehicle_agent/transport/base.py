"""Abstract base class for vehicle-bus transports.

The base owns the connection state machine::

    DISCONNECTED -> CONNECTING -> CONNECTED | ERROR
    CONNECTED    -> DISCONNECTED   (disconnect)
    CONNECTED    -> ERROR          (I/O failure or timeout on an exchange)

Failures never raise out of the public methods: ``connect`` returns
``False``, ``send_command`` returns ``None`` and ``read_reading`` returns
whatever could be decoded.  Pollers watch ``state`` and stop on
``ERROR``; recovery means selecting a transport again.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Optional, Tuple

import structlog

from vehicle_agent.schemas import AdapterKind, ConnectionState, ErrorCause, Reading

logger = structlog.get_logger(__name__)


class Transport(ABC):
    """Unified capability interface over one vehicle-bus backend.

    Concrete implementations: ``BuiltInBusTransport``, ``ElmTransport``
    and ``SimulatedTransport``.
    """

    kind: AdapterKind

    def __init__(
        self,
        *,
        exchange_timeout: float = 2.0,
        connect_timeout: float = 10.0,
    ) -> None:
        self._exchange_timeout = exchange_timeout
        self._connect_timeout = connect_timeout
        self._state = ConnectionState.DISCONNECTED
        self._last_error: Optional[ErrorCause] = None
        self._lock = asyncio.Lock()

    # -- state --------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_error(self) -> Optional[ErrorCause]:
        return self._last_error

    def is_connected(self) -> bool:
        """Return ``True`` if the transport is usable."""
        return self._state is ConnectionState.CONNECTED

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> bool:
        """Open the backend.  Returns ``True`` once connected."""
        if self.is_connected():
            return True
        self._state = ConnectionState.CONNECTING
        self._last_error = None
        try:
            opened = await asyncio.wait_for(
                self._open(), timeout=self._connect_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "transport_connect_timeout",
                kind=self.kind.value,
                timeout=self._connect_timeout,
            )
            await self._release()
            self._fail(ErrorCause.TIMEOUT)
            return False
        except Exception:
            logger.exception("transport_connect_failed", kind=self.kind.value)
            await self._release()
            self._fail(ErrorCause.IO)
            return False

        if not opened:
            await self._release()
            self._fail(ErrorCause.IO)
            return False

        self._state = ConnectionState.CONNECTED
        logger.info("transport_connected", kind=self.kind.value)
        return True

    async def disconnect(self) -> None:
        """Release the backend.  Safe to call in any state."""
        if self._state is ConnectionState.DISCONNECTED:
            return
        await self._release()
        self._state = ConnectionState.DISCONNECTED
        logger.info("transport_disconnected", kind=self.kind.value)

    # -- exchanges ----------------------------------------------------------

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["Transport"]:
        """Hold the transport for a multi-step conversation."""
        async with self._lock:
            yield self

    async def exchange(self, command: str) -> Optional[str]:
        """Single request/response exchange.

        The caller must hold :meth:`exclusive`.  Returns ``None`` when not
        connected, when the backend had nothing to say, or on failure (in
        which case the transport is now in ``ERROR``).
        """
        if not self.is_connected():
            return None
        ok, response = await self._guarded(self._exchange(command), command)
        return response if ok else None

    async def send_command(self, command: str) -> Optional[str]:
        """Send a raw command and return the cleaned reply, if any."""
        async with self._lock:
            return await self.exchange(command)

    async def read_reading(self) -> Reading:
        """Poll every telemetry field once.

        A disconnected transport yields the all-unavailable reading.
        """
        async with self._lock:
            if not self.is_connected():
                return Reading.from_decoded({})
            return await self._read_reading()

    # -- backend hooks ------------------------------------------------------

    @abstractmethod
    async def _open(self) -> bool:
        """Open the backend; ``False`` means "not available here"."""

    @abstractmethod
    async def _close(self) -> None:
        """Release every backend resource.  Must tolerate a partial open."""

    @abstractmethod
    async def _exchange(self, command: str) -> Optional[str]:
        """Send *command* and return the cleaned reply."""

    @abstractmethod
    async def _read_reading(self) -> Reading:
        """Read all fields.  Called with the lock held while connected."""

    # -- internal -----------------------------------------------------------

    async def _guarded(
        self, operation: Awaitable[Any], what: str
    ) -> Tuple[bool, Any]:
        """Run one backend operation under the exchange timeout.

        Returns ``(True, result)`` or ``(False, None)`` after moving to
        ``ERROR``.
        """
        try:
            result = await asyncio.wait_for(
                operation, timeout=self._exchange_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "transport_exchange_timeout",
                kind=self.kind.value,
                operation=what,
                timeout=self._exchange_timeout,
            )
            self._fail(ErrorCause.TIMEOUT)
            return False, None
        except Exception:
            logger.exception(
                "transport_exchange_failed", kind=self.kind.value, operation=what
            )
            self._fail(ErrorCause.IO)
            return False, None
        return True, result

    async def _release(self) -> None:
        try:
            await self._close()
        except Exception:
            logger.exception("transport_close_failed", kind=self.kind.value)

    def _fail(self, cause: ErrorCause) -> None:
        self._state = ConnectionState.ERROR
        self._last_error = cause
        logger.warning("transport_error", kind=self.kind.value, cause=cause.value)
