"""Decode readings from raw frames of a head unit's built-in bus.

Built-in bus modules broadcast fixed-identifier frames instead of
answering OBD-II requests.  A layout names the frame identifier and the
byte positions carrying a value; the result is the same ``Reading``
shape the OBD-II text path produces.

The layouts below follow the common VW/Audi powertrain broadcast.
Battery voltage and intake temperature are not broadcast there and are
always reported as unavailable.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from vehicle_agent.schemas import READING_FIELDS, Decoded, Reading

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")

CAN_ID_SPEED = 0x5A0
CAN_ID_ENGINE = 0x280
CAN_ID_COOLANT = 0x288
CAN_ID_FUEL = 0x3D0


@dataclass(frozen=True)
class Frame:
    arbitration_id: int
    data: bytes


@dataclass(frozen=True)
class FrameLayout:
    """Position of one reading field inside a broadcast frame."""

    field: str
    arbitration_id: int
    start: int
    length: int = 1
    offset: int = 0
    divisor: int = 1
    percentage: bool = False

    def decode(self, frame: Optional[Frame]) -> Decoded:
        if frame is None:
            return Decoded.unavailable()
        if len(frame.data) < self.start + self.length:
            return Decoded.malformed()
        raw = int.from_bytes(
            frame.data[self.start:self.start + self.length], "big"
        )
        if self.percentage:
            raw = raw * 100 // 255
        return Decoded.measured(raw // self.divisor + self.offset)


FRAME_LAYOUTS: tuple[FrameLayout, ...] = (
    FrameLayout("speed", CAN_ID_SPEED, start=0, length=2),
    FrameLayout("engine_speed", CAN_ID_ENGINE, start=2, length=2, divisor=4),
    FrameLayout("coolant_temperature", CAN_ID_COOLANT, start=0, offset=-40),
    FrameLayout("fuel_level", CAN_ID_FUEL, start=0, percentage=True),
    FrameLayout("engine_load", CAN_ID_ENGINE, start=4, percentage=True),
    FrameLayout("throttle_position", CAN_ID_ENGINE, start=5, percentage=True),
)

WATCHED_IDS = frozenset(layout.arbitration_id for layout in FRAME_LAYOUTS)


def parse_frame_line(line: str) -> Optional[Frame]:
    """Parse one text frame; ``None`` if the line is not a frame.

    Accepted forms: ``5A0#0102AB``, ``5A0 0102AB`` and ``5A0 01 02 AB``.
    """
    text = line.strip()
    if not text:
        return None
    if "#" in text:
        ident, _, payload = text.partition("#")
        parts = [ident.strip(), payload.strip()]
    else:
        parts = text.split()
    if len(parts) < 2:
        return None
    ident, payload = parts[0], "".join(parts[1:])
    if not _HEX_RE.match(ident):
        return None
    if payload and (len(payload) % 2 or not _HEX_RE.match(payload)):
        return None
    return Frame(int(ident, 16), bytes.fromhex(payload))


def reading_from_frames(
    frames: Iterable[Frame],
    captured_at: Optional[datetime] = None,
) -> Reading:
    """Decode a batch of frames; the newest frame per identifier wins."""
    latest: Dict[int, Frame] = {}
    for frame in frames:
        if frame.arbitration_id in WATCHED_IDS:
            latest[frame.arbitration_id] = frame

    fields: Dict[str, Decoded] = {
        layout.field: layout.decode(latest.get(layout.arbitration_id))
        for layout in FRAME_LAYOUTS
    }
    for name in READING_FIELDS:
        if name not in fields:
            zero = 0.0 if name == "battery_voltage" else 0
            fields[name] = Decoded.unavailable(zero)
    return Reading.from_decoded(fields, captured_at=captured_at)


class FrameCache:
    """Last frame seen per watched identifier.

    Broadcast frames arrive at their own rates, so one poll rarely sees
    every identifier.  The cache carries each frame forward until a newer
    one replaces it or, with *max_age* set, until it is older than
    *max_age* seconds.
    """

    def __init__(
        self,
        max_age: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_age = max_age
        self._clock = clock
        self._frames: Dict[int, Tuple[float, Frame]] = {}

    def update(self, frames: Iterable[Frame]) -> None:
        now = self._clock()
        for frame in frames:
            if frame.arbitration_id in WATCHED_IDS:
                self._frames[frame.arbitration_id] = (now, frame)

    def current(self) -> List[Frame]:
        """Frames still fresh enough to report; stale ones are dropped."""
        if self._max_age is not None:
            cutoff = self._clock() - self._max_age
            for ident in [
                ident for ident, (seen, _) in self._frames.items() if seen < cutoff
            ]:
                del self._frames[ident]
        return [frame for _, frame in self._frames.values()]

    def clear(self) -> None:
        self._frames.clear()
