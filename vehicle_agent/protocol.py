"""Decode OBD-II text responses into physical values.

Response grammar: whitespace-separated two-hex-digit byte tokens.  The
first token echoes the request mode plus ``0x40``, the second echoes the
PID, and the data bytes follow, e.g. ``"41 0C 1F 40"``.

Decoding never raises.  Every decoder returns a :class:`Decoded` whose
status separates a measured value from a missing or garbled response;
``value`` falls back to zero for the latter two.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from vehicle_agent.schemas import Decoded, Reading

_BYTE_RE = re.compile(r"^[0-9A-Fa-f]{2}$")
_DECIMAL_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")

# Adapter replies that mean "nothing to read" rather than "garbled".
_NO_DATA_MARKERS = (
    "NO DATA",
    "UNABLE TO CONNECT",
    "STOPPED",
    "CAN ERROR",
    "BUS BUSY",
    "BUS ERROR",
    "DATA ERROR",
    "?",
)

MODE_CURRENT_DATA = 0x01
RESPONSE_OFFSET = 0x40


def tokenize(response: str) -> List[int]:
    """Split *response* into byte values.

    Raises ``ValueError`` when any token is not exactly two hex digits.
    """
    tokens = response.split()
    for token in tokens:
        if not _BYTE_RE.match(token):
            raise ValueError(f"Not a hex byte token: {token!r}")
    return [int(token, 16) for token in tokens]


def is_no_data(response: Optional[str]) -> bool:
    """Return ``True`` for an absent, empty or adapter "no data" reply."""
    if response is None:
        return True
    text = response.strip().upper()
    if not text:
        return True
    return any(text.startswith(marker) for marker in _NO_DATA_MARKERS)


def _data_bytes(
    response: Optional[str],
    count: int,
    mode: int,
    pid: Optional[int],
) -> tuple[Optional[List[int]], Decoded]:
    """Validate the response header and return ``count`` data bytes.

    On failure the second element carries the non-ok result to return.
    """
    if is_no_data(response):
        return None, Decoded.unavailable()
    try:
        raw = tokenize(response)  # type: ignore[arg-type]
    except ValueError:
        return None, Decoded.malformed()
    if len(raw) < 2 + count:
        return None, Decoded.malformed()
    if raw[0] != mode + RESPONSE_OFFSET:
        return None, Decoded.malformed()
    if pid is not None and raw[1] != pid:
        return None, Decoded.malformed()
    return raw[2:2 + count], Decoded.measured(0)


# ---------------------------------------------------------------------------
# Primitive decoders
# ---------------------------------------------------------------------------

def decode_single_byte(
    response: Optional[str],
    offset: int = 0,
    *,
    mode: int = MODE_CURRENT_DATA,
    pid: Optional[int] = None,
) -> Decoded:
    """Decode ``token[2] + offset``.

    >>> decode_single_byte("41 05 5A", -40).value
    50
    """
    data, result = _data_bytes(response, 1, mode, pid)
    if data is None:
        return result
    return Decoded.measured(data[0] + offset)


def decode_two_byte(
    response: Optional[str],
    offset: int = 0,
    *,
    mode: int = MODE_CURRENT_DATA,
    pid: Optional[int] = None,
) -> Decoded:
    """Decode ``token[2] * 256 + token[3] + offset``."""
    data, result = _data_bytes(response, 2, mode, pid)
    if data is None:
        return result
    return Decoded.measured(data[0] * 256 + data[1] + offset)


def decode_percentage(
    response: Optional[str],
    *,
    mode: int = MODE_CURRENT_DATA,
    pid: Optional[int] = None,
) -> Decoded:
    """Scale a single byte onto 0-100 with truncating integer division."""
    raw = decode_single_byte(response, 0, mode=mode, pid=pid)
    if not raw.ok:
        return raw
    return Decoded.measured(int(raw.value) * 100 // 255)


def decode_voltage(response: Optional[str]) -> Decoded:
    """Parse an adapter voltage reply such as ``"12.6V"``."""
    if is_no_data(response):
        return Decoded.unavailable(0.0)
    text = response.strip()  # type: ignore[union-attr]
    if text[-1:] in ("V", "v"):
        text = text[:-1].strip()
    if not _DECIMAL_RE.match(text):
        return Decoded.malformed(0.0)
    return Decoded.measured(float(text))


# ---------------------------------------------------------------------------
# PID table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PidSpec:
    """How one ``Reading`` field is requested and decoded."""

    field: str
    command: str
    decode: Callable[[Optional[str]], Decoded]


def _rpm(response: Optional[str]) -> Decoded:
    raw = decode_two_byte(response, pid=0x0C)
    if not raw.ok:
        return raw
    return Decoded.measured(int(raw.value) // 4)


PID_TABLE: tuple[PidSpec, ...] = (
    PidSpec("engine_speed", "010C", _rpm),
    PidSpec("speed", "010D", lambda r: decode_single_byte(r, 0, pid=0x0D)),
    PidSpec(
        "coolant_temperature",
        "0105",
        lambda r: decode_single_byte(r, -40, pid=0x05),
    ),
    PidSpec("fuel_level", "012F", lambda r: decode_percentage(r, pid=0x2F)),
    PidSpec("engine_load", "0104", lambda r: decode_percentage(r, pid=0x04)),
    PidSpec(
        "throttle_position", "0111", lambda r: decode_percentage(r, pid=0x11)
    ),
    PidSpec(
        "intake_temperature",
        "010F",
        lambda r: decode_single_byte(r, -40, pid=0x0F),
    ),
    # Not a PID: the adapter measures supply voltage itself.
    PidSpec("battery_voltage", "ATRV", decode_voltage),
)

PID_BY_FIELD: Dict[str, PidSpec] = {spec.field: spec for spec in PID_TABLE}


def decode_pid(spec: PidSpec, response: Optional[str]) -> Decoded:
    return spec.decode(response)


def build_reading(
    responses: Mapping[str, Optional[str]],
    captured_at: Optional[datetime] = None,
) -> Reading:
    """Build a ``Reading`` from raw responses keyed by command.

    Commands missing from *responses* are treated as unanswered.
    """
    fields = {
        spec.field: decode_pid(spec, responses.get(spec.command))
        for spec in PID_TABLE
    }
    return Reading.from_decoded(fields, captured_at=captured_at)
