"""BuiltInBusTransport -- head units with an integrated vehicle-bus module.

Frames come either from a readable device node that emits one text frame
per line, or from a SocketCAN interface via python-can (lazy-imported).
Each poll drains the frames pending on the bus, folds them into a
:class:`~vehicle_agent.bus_frames.FrameCache` and decodes the cached
frames with the fixed layouts in :mod:`vehicle_agent.bus_frames`.

OBD-II requests over SocketCAN use ISO-TP framing.  Replies longer than
one frame are reassembled: first frame, flow control, then consecutive
frames in sequence.
"""

from __future__ import annotations

import asyncio
import os
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import structlog

from vehicle_agent.bus_frames import (
    Frame,
    FrameCache,
    parse_frame_line,
    reading_from_frames,
)
from vehicle_agent.protocol import is_no_data
from vehicle_agent.schemas import AdapterKind, Reading
from vehicle_agent.transport.base import Transport

logger = structlog.get_logger(__name__)

OBD_FUNCTIONAL_ID = 0x7DF
OBD_REPLY_IDS = range(0x7E8, 0x7F0)
# Physical request ID of an ECU = its reply ID - 8.
OBD_PHYSICAL_OFFSET = 8

PCI_SINGLE = 0x0
PCI_FIRST = 0x1
PCI_CONSECUTIVE = 0x2
FLOW_CONTROL_CONTINUE = bytes([0x30, 0x00, 0x00])

# Share of the exchange timeout a SocketCAN request waits for its reply.
# Must stay below 1.
REPLY_WINDOW_FRACTION = 0.8


class FrameSource(ABC):
    """Where raw bus frames come from."""

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def read_frames(self, limit: int) -> List[Frame]:
        """Drain up to *limit* frames already pending on the source."""

    async def request(self, payload: bytes) -> Optional[bytes]:
        """Send an OBD-II request and return the reply payload.

        Sources that can only listen return ``None``.
        """
        return None


class DeviceFrameSource(FrameSource):
    """Line-oriented frames read from a device node."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._fh: Any = None

    async def open(self) -> None:
        self._fh = await asyncio.to_thread(
            open, self.path, "r", encoding="ascii", errors="ignore"
        )

    async def close(self) -> None:
        if self._fh is not None:
            await asyncio.to_thread(self._fh.close)
            self._fh = None

    async def read_frames(self, limit: int) -> List[Frame]:
        if self._fh is None:
            raise OSError(f"Frame source {self.path} is not open")
        return await asyncio.to_thread(self._read_blocking, limit)

    def _read_blocking(self, limit: int) -> List[Frame]:
        frames: List[Frame] = []
        for _ in range(limit):
            line = self._fh.readline()
            if not line:
                break
            frame = parse_frame_line(line)
            if frame is not None:
                frames.append(frame)
        return frames


class SocketCanFrameSource(FrameSource):
    """python-can SocketCAN bus."""

    def __init__(
        self,
        channel: str = "can0",
        recv_timeout: float = 0.05,
        reply_timeout: float = 1.6,
    ) -> None:
        self.channel = channel
        self._recv_timeout = recv_timeout
        self._reply_timeout = reply_timeout
        self._bus: Any = None  # can.BusABC instance (lazy)

    async def open(self) -> None:
        can = _import_can()
        self._bus = await asyncio.to_thread(
            can.interface.Bus, channel=self.channel, interface="socketcan"
        )

    async def close(self) -> None:
        if self._bus is not None:
            await asyncio.to_thread(self._bus.shutdown)
            self._bus = None

    async def read_frames(self, limit: int) -> List[Frame]:
        if self._bus is None:
            raise OSError(f"SocketCAN channel {self.channel} is not open")
        return await asyncio.to_thread(self._read_blocking, limit)

    async def request(self, payload: bytes) -> Optional[bytes]:
        if self._bus is None:
            raise OSError(f"SocketCAN channel {self.channel} is not open")
        return await asyncio.to_thread(self._request_blocking, payload)

    def _read_blocking(self, limit: int) -> List[Frame]:
        frames: List[Frame] = []
        # Wait briefly for the first frame, then take only what is queued.
        timeout = self._recv_timeout
        while len(frames) < limit:
            msg = self._bus.recv(timeout=timeout)
            if msg is None:
                break
            frames.append(Frame(msg.arbitration_id, bytes(msg.data)))
            timeout = 0
        return frames

    def _send(self, arbitration_id: int, data: bytes) -> None:
        can = _import_can()
        self._bus.send(
            can.Message(
                arbitration_id=arbitration_id,
                data=data + bytes(8 - len(data)),
                is_extended_id=False,
            )
        )

    def _request_blocking(self, payload: bytes) -> Optional[bytes]:
        deadline = time.monotonic() + self._reply_timeout
        self._send(OBD_FUNCTIONAL_ID, bytes([len(payload)]) + payload)

        # Only the first ECU to answer is followed.
        reply_id: Optional[int] = None
        buffer = bytearray()
        expected = 0
        sequence = 1
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if reply_id is None:
                    logger.info("obd_request_unanswered", request=payload.hex())
                else:
                    logger.warning(
                        "multi_frame_reply_incomplete",
                        arbitration_id=reply_id,
                        received=len(buffer),
                        expected=expected,
                    )
                return None

            msg = self._bus.recv(timeout=min(self._recv_timeout, remaining))
            if msg is None or not msg.data:
                continue
            if reply_id is None and msg.arbitration_id not in OBD_REPLY_IDS:
                continue
            if reply_id is not None and msg.arbitration_id != reply_id:
                continue

            data = bytes(msg.data)
            kind = data[0] >> 4
            if reply_id is None:
                if kind == PCI_SINGLE:
                    return data[1:1 + (data[0] & 0x0F)]
                if kind == PCI_FIRST and len(data) >= 2:
                    reply_id = msg.arbitration_id
                    expected = ((data[0] & 0x0F) << 8) | data[1]
                    buffer.extend(data[2:8])
                    self._send(reply_id - OBD_PHYSICAL_OFFSET, FLOW_CONTROL_CONTINUE)
                continue

            if kind != PCI_CONSECUTIVE:
                continue
            if data[0] & 0x0F != sequence:
                logger.warning(
                    "multi_frame_out_of_sequence",
                    arbitration_id=reply_id,
                    expected=sequence,
                    got=data[0] & 0x0F,
                )
                return None
            buffer.extend(data[1:8])
            sequence = (sequence + 1) & 0x0F
            if len(buffer) >= expected:
                return bytes(buffer[:expected])


class BuiltInBusTransport(Transport):
    """Reads the vehicle bus through the head unit's own interface."""

    kind = AdapterKind.BUILT_IN

    def __init__(
        self,
        device_paths: Sequence[str] = (),
        *,
        socketcan_channel: Optional[str] = "can0",
        frame_batch: int = 1024,
        frame_max_age: Optional[float] = 5.0,
        exchange_timeout: float = 2.0,
        connect_timeout: float = 10.0,
    ) -> None:
        super().__init__(
            exchange_timeout=exchange_timeout, connect_timeout=connect_timeout
        )
        self._device_paths = list(device_paths)
        self._socketcan_channel = socketcan_channel
        self._frame_batch = frame_batch
        self._cache = FrameCache(max_age=frame_max_age)
        self._source: Optional[FrameSource] = None

    # -- backend hooks ------------------------------------------------------

    async def _open(self) -> bool:
        for path in self._device_paths:
            if os.path.exists(path) and os.access(path, os.R_OK):
                source = DeviceFrameSource(path)
                await source.open()
                self._source = source
                logger.info("builtin_device_found", path=path)
                return True

        logger.info("builtin_device_not_found", tried=self._device_paths)
        if not self._socketcan_channel:
            return False
        return await self._open_socketcan(self._socketcan_channel)

    async def _close(self) -> None:
        self._cache.clear()
        if self._source is not None:
            source, self._source = self._source, None
            await source.close()

    async def _exchange(self, command: str) -> Optional[str]:
        if self._source is None:
            return None
        try:
            payload = bytes.fromhex(command.replace(" ", ""))
        except ValueError:
            # Adapter commands (AT...) have no meaning on a raw bus.
            return None
        reply = await self._source.request(payload)
        if not reply:
            return None
        text = " ".join(f"{b:02X}" for b in reply)
        return None if is_no_data(text) else text

    async def _read_reading(self) -> Reading:
        if self._source is None:
            return Reading.from_decoded({})
        ok, frames = await self._guarded(
            self._source.read_frames(self._frame_batch), "read_frames"
        )
        if not ok:
            return Reading.from_decoded({})
        self._cache.update(frames)
        return reading_from_frames(self._cache.current())

    # -- internal -----------------------------------------------------------

    async def _open_socketcan(self, channel: str) -> bool:
        try:
            can = _import_can()
        except ImportError:
            logger.info("socketcan_unavailable", reason="python-can not installed")
            return False
        source = SocketCanFrameSource(
            channel, reply_timeout=self._exchange_timeout * REPLY_WINDOW_FRACTION
        )
        try:
            await source.open()
        except (OSError, NotImplementedError, can.CanError) as exc:
            logger.info("socketcan_unavailable", channel=channel, reason=str(exc))
            return False
        self._source = source
        logger.info("socketcan_connected", channel=channel)
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _import_can() -> Any:
    """Lazy-import python-can so it's only needed on SocketCAN hosts."""
    try:
        import can  # type: ignore[import-untyped]
        return can
    except ImportError as exc:
        raise ImportError(
            "python-can is required for SocketCAN. "
            "Install it with: pip install python-can"
        ) from exc
