"""ElmTransport -- external ELM327-style OBD-II adapter.

Talks the adapter's line protocol (``"010C\\r"`` in, ``"41 0C 1F 40\\r>"``
out) over a ``LineChannel``.  The default channel wraps pyserial;
``pyserial`` and ``python-OBD`` (only used to scan for a port) are
imported lazily so simulation works without either installed.  Blocking
serial I/O is offloaded to a thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

from vehicle_agent.protocol import PID_TABLE, build_reading, is_no_data
from vehicle_agent.schemas import AdapterKind, Reading
from vehicle_agent.transport.base import Transport

logger = structlog.get_logger(__name__)

CMD_RESET = "ATZ"
CMD_ECHO_OFF = "ATE0"
CMD_PROTOCOL_AUTO = "ATSP0"

PROMPT = ">"


class LineChannel(ABC):
    """Raw command/response channel to an adapter."""

    @abstractmethod
    async def open(self) -> None:
        """Open the channel.  Raises ``OSError`` if it cannot."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel.  Safe to call when not open."""

    @abstractmethod
    async def transact(self, command: str) -> str:
        """Send *command* and return the raw reply up to the prompt."""


class SerialChannel(LineChannel):
    """pyserial-backed channel (USB or Bluetooth RFCOMM serial port)."""

    def __init__(
        self, port: str = "auto", baudrate: int = 38400, read_timeout: float = 1.5
    ) -> None:
        self._port = port
        self._baudrate = baudrate
        self._read_timeout = read_timeout
        self._serial: Any = None  # serial.Serial instance (lazy)

    async def open(self) -> None:
        serial = _import_serial()
        port = await asyncio.to_thread(self._resolve_port)
        self._serial = await asyncio.to_thread(
            serial.Serial, port, baudrate=self._baudrate, timeout=0.1
        )
        logger.info("serial_channel_open", port=port, baudrate=self._baudrate)

    async def close(self) -> None:
        if self._serial is not None:
            await asyncio.to_thread(self._serial.close)
            self._serial = None

    async def transact(self, command: str) -> str:
        if self._serial is None:
            raise OSError("Serial channel is not open")
        return await asyncio.to_thread(self._transact_blocking, command)

    # -- internal -----------------------------------------------------------

    def _resolve_port(self) -> str:
        if self._port.strip().lower() != "auto":
            return self._port
        obd = _import_obd()
        ports = obd.scan_serial()
        if not ports:
            raise OSError("No serial OBD-II adapter found")
        return ports[0]

    def _transact_blocking(self, command: str) -> str:
        self._serial.reset_input_buffer()
        self._serial.write((command + "\r").encode("ascii"))
        deadline = time.monotonic() + self._read_timeout
        buf = ""
        while time.monotonic() < deadline:
            chunk = self._serial.read(256).decode("ascii", errors="ignore")
            if chunk:
                buf += chunk
                if PROMPT in buf:
                    return buf
        raise TimeoutError(f"No prompt from adapter after {command!r}")


class ElmTransport(Transport):
    """OBD-II over an ELM327-compatible adapter."""

    kind = AdapterKind.EXTERNAL

    def __init__(
        self,
        channel: LineChannel,
        *,
        reset_settle: float = 1.5,
        protocol_settle: float = 0.1,
        exchange_timeout: float = 2.0,
        connect_timeout: float = 10.0,
    ) -> None:
        super().__init__(
            exchange_timeout=exchange_timeout, connect_timeout=connect_timeout
        )
        self._channel = channel
        self._reset_settle = reset_settle
        self._protocol_settle = protocol_settle

    # -- backend hooks ------------------------------------------------------

    async def _open(self) -> bool:
        await self._channel.open()

        banner = await self._init_command(CMD_RESET, self._reset_settle)
        if banner is None:
            logger.warning("adapter_reset_unanswered")
            return False
        logger.info("adapter_identified", banner=banner)

        await self._init_command(CMD_ECHO_OFF, self._protocol_settle)
        await self._init_command(CMD_PROTOCOL_AUTO, self._protocol_settle)
        return True

    async def _close(self) -> None:
        await self._channel.close()

    async def _exchange(self, command: str) -> Optional[str]:
        raw = await self._channel.transact(command)
        return clean_response(raw, command)

    async def _read_reading(self) -> Reading:
        responses: Dict[str, Optional[str]] = {}
        for spec in PID_TABLE:
            responses[spec.command] = await self.exchange(spec.command)
            if not self.is_connected():
                # Remaining fields stay unavailable.
                break
        return build_reading(responses)

    # -- internal -----------------------------------------------------------

    async def _init_command(self, command: str, settle: float) -> Optional[str]:
        raw = await asyncio.wait_for(
            self._channel.transact(command), timeout=self._exchange_timeout
        )
        await asyncio.sleep(settle)
        return clean_response(raw, command)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def clean_response(raw: Optional[str], command: str) -> Optional[str]:
    """Strip prompt, echo and status chatter from an adapter reply.

    Every payload line is kept, one per ``\\n``: several control units
    may answer, and long replies span indexed frames.  Returns ``None``
    for an empty or "no data" style reply.
    """
    if not raw:
        return None
    echo = command.replace(" ", "").upper()
    text = raw.replace("\r", "\n").replace(PROMPT, "")
    lines = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        if line.replace(" ", "").upper() == echo:
            continue
        if line.upper().startswith("SEARCHING"):
            continue
        if is_no_data(line):
            continue
        lines.append(line)
    if not lines:
        return None
    return "\n".join(lines)


def _import_serial() -> Any:
    """Lazy-import pyserial so it's only needed with a real adapter."""
    try:
        import serial  # type: ignore[import-untyped]
        return serial
    except ImportError as exc:
        raise ImportError(
            "pyserial is required for external adapters. "
            "Install it with: pip install pyserial"
        ) from exc


def _import_obd() -> Any:
    """Lazy-import python-OBD, used only to scan for adapter ports."""
    try:
        import obd  # type: ignore[import-untyped]
        return obd
    except ImportError as exc:
        raise ImportError(
            "python-OBD is required for ELM_PORT=auto. "
            "Install it with: pip install obd, or set ELM_PORT explicitly"
        ) from exc
