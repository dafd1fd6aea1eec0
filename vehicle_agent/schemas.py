"""Pydantic v2 models and enums shared by every layer.

``Reading`` and ``TroubleCode`` are frozen: they are built once from a
transport round-trip and only ever read afterwards.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ErrorCause(str, Enum):
    """Why a transport entered ``ConnectionState.ERROR``."""

    IO = "io"
    TIMEOUT = "timeout"


class AdapterKind(str, Enum):
    """Selection preference tag for a transport variant."""

    BUILT_IN = "built_in"
    EXTERNAL = "external"
    SIMULATED = "simulated"


class Severity(str, Enum):
    INFORMATIONAL = "informational"
    WARNING = "warning"
    CRITICAL = "critical"


class DtcStatus(str, Enum):
    CURRENT = "current"
    PENDING = "pending"
    PERMANENT = "permanent"


class DecodeStatus(str, Enum):
    """Outcome of decoding one field.

    ``UNAVAILABLE`` means nothing usable came back (no response, adapter
    said NO DATA); ``MALFORMED`` means a response arrived but did not fit
    the expected grammar.
    """

    OK = "ok"
    UNAVAILABLE = "unavailable"
    MALFORMED = "malformed"


# ---------------------------------------------------------------------------
# Decode result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decoded:
    """Tri-state decode result.

    ``value`` holds the sentinel zero whenever ``status`` is not ``OK`` so
    callers that only want a number keep working.
    """

    status: DecodeStatus
    value: Union[int, float] = 0

    @property
    def ok(self) -> bool:
        return self.status is DecodeStatus.OK

    @classmethod
    def measured(cls, value: Union[int, float]) -> "Decoded":
        return cls(DecodeStatus.OK, value)

    @classmethod
    def unavailable(cls, zero: Union[int, float] = 0) -> "Decoded":
        return cls(DecodeStatus.UNAVAILABLE, zero)

    @classmethod
    def malformed(cls, zero: Union[int, float] = 0) -> "Decoded":
        return cls(DecodeStatus.MALFORMED, zero)


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

READING_FIELDS = (
    "speed",
    "engine_speed",
    "coolant_temperature",
    "fuel_level",
    "engine_load",
    "throttle_position",
    "battery_voltage",
    "intake_temperature",
)


class Reading(BaseModel):
    """Immutable telemetry snapshot from one poll.

    Unread fields are zero; ``field_status`` tells a measured zero apart
    from a field that could not be read.  Fields missing from
    ``field_status`` count as unavailable.
    """

    model_config = {"frozen": True}

    speed: int = Field(default=0, description="Vehicle speed, km/h")
    engine_speed: int = Field(default=0, description="Engine speed, rpm")
    coolant_temperature: int = Field(default=0, description="Coolant, degC")
    fuel_level: int = Field(default=0, ge=0, le=100, description="Fuel, %")
    engine_load: int = Field(default=0, ge=0, le=100, description="Load, %")
    throttle_position: int = Field(
        default=0, ge=0, le=100, description="Throttle, %"
    )
    battery_voltage: float = Field(default=0.0, description="Battery, volts")
    intake_temperature: int = Field(default=0, description="Intake air, degC")
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Capture timestamp in UTC",
    )
    field_status: Dict[str, DecodeStatus] = Field(default_factory=dict)

    def status_of(self, name: str) -> DecodeStatus:
        if name not in READING_FIELDS:
            raise ValueError(f"Unknown reading field '{name}'")
        return self.field_status.get(name, DecodeStatus.UNAVAILABLE)

    def is_measured(self, name: str) -> bool:
        return self.status_of(name) is DecodeStatus.OK

    @classmethod
    def from_decoded(
        cls,
        fields: Dict[str, Decoded],
        captured_at: Optional[datetime] = None,
    ) -> "Reading":
        """Assemble a reading from per-field decode results."""
        values: Dict[str, object] = {
            name: result.value for name, result in fields.items()
        }
        status = {name: fields[name].status for name in fields}
        for name in READING_FIELDS:
            status.setdefault(name, DecodeStatus.UNAVAILABLE)
        if captured_at is not None:
            values["captured_at"] = captured_at
        return cls(field_status=status, **values)


# ---------------------------------------------------------------------------
# Trouble codes
# ---------------------------------------------------------------------------

_DTC_CODE_RE = re.compile(r"^[PCBU][0-3][0-9A-F]{3}$")


class TroubleCode(BaseModel):
    """A single decoded Diagnostic Trouble Code."""

    model_config = {"frozen": True}

    code: str = Field(
        ...,
        description="Standard 5-character DTC, e.g. P0133",
        examples=["P0133", "C0035", "B1A00", "U0073"],
    )
    description: str = Field(default="Unknown DTC")
    severity: Severity = Severity.INFORMATIONAL
    status: DtcStatus = DtcStatus.CURRENT
    observed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @field_validator("code")
    @classmethod
    def validate_dtc_code(cls, v: str) -> str:
        if not _DTC_CODE_RE.match(v):
            raise ValueError(
                f"DTC code must match ^[PCBU][0-3][0-9A-F]{{3}}$, got '{v}'"
            )
        return v
