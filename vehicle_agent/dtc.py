"""Decode Diagnostic Trouble Codes from OBD-II mode 03/07/0A replies.

Reply layout: ``<mode+0x40> <count> <b1> <b2> <b1> <b2> ...``.  Each
two-byte pair packs one code:

* bits 7-6 of ``b1``: system letter (P, C, B, U)
* bits 5-4 of ``b1``: first digit (0-3)
* bits 3-0 of ``b1``: second digit (hex)
* ``b2``: last two hex digits

A reply may span several lines.  Each control unit that has something
to report answers on its own line, and a reply longer than one CAN frame
arrives as a byte-count line followed by indexed frames::

    00A
    0: 43 04 01 33 03 01
    1: 01 71 04 20 00 00 00

Severity here is a coarse triage heuristic, not a diagnosis.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import structlog

from vehicle_agent.protocol import RESPONSE_OFFSET, is_no_data, tokenize
from vehicle_agent.schemas import DecodeStatus, DtcStatus, Severity, TroubleCode

logger = structlog.get_logger(__name__)

MODE_CURRENT_CODES = "03"
MODE_CLEAR_CODES = "04"
MODE_PENDING_CODES = "07"
MODE_PERMANENT_CODES = "0A"

REQUEST_MODES: Dict[DtcStatus, str] = {
    DtcStatus.CURRENT: MODE_CURRENT_CODES,
    DtcStatus.PENDING: MODE_PENDING_CODES,
    DtcStatus.PERMANENT: MODE_PERMANENT_CODES,
}

UNKNOWN_DESCRIPTION = "Unknown DTC"

_SYSTEM_LETTERS = "PCBU"

_BYTE_COUNT_RE = re.compile(r"^[0-9A-Fa-f]{3}$")
_FRAME_INDEX_RE = re.compile(r"^([0-9A-Fa-f]):\s*(.*)$")

# Sensor-circuit failures that stop the engine from running reliably.
_CRITICAL_CODES = frozenset({"P0335", "P0340"})

DTC_DESCRIPTIONS: Dict[str, str] = {
    "P0113": "Intake Air Temperature Sensor Circuit High",
    "P0118": "Engine Coolant Temperature Circuit High",
    "P0128": "Coolant Thermostat (Coolant Temp Below Threshold)",
    "P0133": "O2 Sensor Circuit Slow Response (Bank 1 Sensor 1)",
    "P0171": "System Too Lean (Bank 1)",
    "P0172": "System Too Rich (Bank 1)",
    "P0300": "Random/Multiple Cylinder Misfire Detected",
    "P0301": "Cylinder 1 Misfire Detected",
    "P0302": "Cylinder 2 Misfire Detected",
    "P0303": "Cylinder 3 Misfire Detected",
    "P0304": "Cylinder 4 Misfire Detected",
    "P0335": "Crankshaft Position Sensor Circuit Malfunction",
    "P0340": "Camshaft Position Sensor Circuit Malfunction",
    "P0401": "Exhaust Gas Recirculation Flow Insufficient",
    "P0420": "Catalyst System Efficiency Below Threshold",
    "P0440": "Evaporative Emission System Malfunction",
    "P0442": "Evaporative Emission System Leak Detected (small leak)",
    "P0455": "Evaporative Emission System Leak Detected (large leak)",
}


@dataclass(frozen=True)
class DtcReply:
    """Outcome of one stored-codes request.

    ``OK`` with no codes means the vehicle reported none.  ``UNAVAILABLE``
    and ``MALFORMED`` mean the codes could not be read at all.
    """

    status: DecodeStatus
    codes: Tuple[TroubleCode, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is DecodeStatus.OK


def decode_dtc(b1: int, b2: int) -> str:
    """Decode one two-byte pair into a code string.

    >>> decode_dtc(0x01, 0x33)
    'P0133'
    """
    letter = _SYSTEM_LETTERS[(b1 >> 6) & 0x03]
    first = (b1 >> 4) & 0x03
    second = b1 & 0x0F
    return f"{letter}{first}{second:X}{b2 & 0xFF:02X}"


def classify_severity(code: str) -> Severity:
    if code.startswith("P03") or code in _CRITICAL_CODES:
        return Severity.CRITICAL
    if code.startswith("P04") or code.startswith("P01"):
        return Severity.WARNING
    return Severity.INFORMATIONAL


def describe(code: str) -> str:
    return DTC_DESCRIPTIONS.get(code, UNKNOWN_DESCRIPTION)


def split_reply(response: str) -> List[List[int]]:
    """Split a reply into one byte list per answering control unit.

    Multi-frame replies are reassembled and cut to their byte count.
    Raises ``ValueError`` when a reply cannot be reassembled.
    """
    lines = [
        line.strip()
        for line in response.replace("\r", "\n").split("\n")
        if line.strip()
    ]
    messages: List[List[int]] = []
    pending: Optional[List[int]] = None
    expected = 0
    next_index = 0
    for line in lines:
        if _BYTE_COUNT_RE.match(line):
            if pending is not None:
                raise ValueError("Multi-frame reply interrupted by a new one")
            pending, expected, next_index = [], int(line, 16), 0
            continue

        match = _FRAME_INDEX_RE.match(line)
        if match:
            if pending is None:
                raise ValueError(f"Frame without byte count: {line!r}")
            if int(match.group(1), 16) != next_index:
                raise ValueError(f"Frame out of sequence: {line!r}")
            pending.extend(tokenize(match.group(2)))
            next_index = (next_index + 1) % 16
            if len(pending) >= expected:
                messages.append(pending[:expected])
                pending = None
            continue

        if pending is not None:
            raise ValueError(f"Multi-frame reply truncated before {line!r}")
        messages.append(tokenize(line))

    if pending is not None:
        raise ValueError(
            f"Multi-frame reply truncated at {len(pending)}/{expected} bytes"
        )
    return messages


def _codes_from_message(
    raw: List[int], status: DtcStatus, when: datetime
) -> List[TroubleCode]:
    declared = raw[1]
    available = (len(raw) - 2) // 2
    count = min(declared, available)
    if declared > available:
        logger.warning(
            "dtc_count_exceeds_payload", declared=declared, available=available
        )

    codes: List[TroubleCode] = []
    for index in range(count):
        b1, b2 = raw[2 + 2 * index], raw[3 + 2 * index]
        code = decode_dtc(b1, b2)
        codes.append(
            TroubleCode(
                code=code,
                description=describe(code),
                severity=classify_severity(code),
                status=status,
                observed_at=when,
            )
        )
    return codes


def decode_dtc_reply(
    response: Optional[str],
    status: DtcStatus,
    observed_at: Optional[datetime] = None,
) -> DtcReply:
    """Decode a stored-codes reply, keeping "none stored" apart from failure.

    Codes from every answering control unit are merged; a code reported
    by more than one unit appears once.
    """
    if is_no_data(response):
        return DtcReply(DecodeStatus.UNAVAILABLE)
    try:
        messages = split_reply(response)  # type: ignore[arg-type]
    except ValueError as exc:
        logger.warning("dtc_response_malformed", response=response, reason=str(exc))
        return DtcReply(DecodeStatus.MALFORMED)

    echo = int(REQUEST_MODES[status], 16) + RESPONSE_OFFSET
    when = observed_at or datetime.now(timezone.utc)
    codes: List[TroubleCode] = []
    seen = set()
    for raw in messages:
        if len(raw) < 2 or raw[0] != echo:
            logger.warning("dtc_response_malformed", response=response)
            return DtcReply(DecodeStatus.MALFORMED)
        for code in _codes_from_message(raw, status, when):
            if code.code not in seen:
                seen.add(code.code)
                codes.append(code)
    return DtcReply(DecodeStatus.OK, tuple(codes))


def parse_dtc_response(
    response: Optional[str],
    status: DtcStatus,
    observed_at: Optional[datetime] = None,
) -> List[TroubleCode]:
    """Parse a stored-codes reply into ``TroubleCode`` objects.

    Stops after ``min(declared count, available pairs)`` codes per
    control unit, so a count that overstates the payload cannot read past
    its end.  Codes missing from the description table are kept with a
    generic text.  Unusable replies give an empty list; use
    :func:`decode_dtc_reply` to tell those apart from "no codes".
    """
    return list(decode_dtc_reply(response, status, observed_at).codes)
