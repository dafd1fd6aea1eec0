"""Fixture-based simulated transport (no hardware required).

Loads scenarios from ``fixtures/simulation_scenarios.json``.  Speed and
engine speed follow a bounded random walk; every other field is the
scenario baseline plus Gaussian noise, so consecutive readings vary
realistically.  Connecting always succeeds, which makes this the final
fallback of adapter selection.
"""

from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Dict, Optional

from vehicle_agent.dtc import MODE_CLEAR_CODES, REQUEST_MODES
from vehicle_agent.schemas import AdapterKind, Decoded, DtcStatus, Reading
from vehicle_agent.transport.base import Transport

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"

_SPEED_RANGE = (0, 180)
_RPM_RANGE = (600, 6000)
_PERCENT_FIELDS = ("fuel_level", "engine_load", "throttle_position")

_EMPTY_REPLIES = {
    DtcStatus.CURRENT: "43 00",
    DtcStatus.PENDING: "47 00",
    DtcStatus.PERMANENT: "4A 00",
}


class SimulatedTransport(Transport):
    """Synthesises readings and DTC replies from a named scenario."""

    kind = AdapterKind.SIMULATED

    def __init__(
        self,
        scenario: str = "healthy",
        *,
        connect_delay: float = 1.0,
        exchange_timeout: float = 2.0,
        connect_timeout: float = 10.0,
    ) -> None:
        super().__init__(
            exchange_timeout=exchange_timeout, connect_timeout=connect_timeout
        )
        scenarios = _load_scenarios()
        if scenario not in scenarios:
            available = ", ".join(sorted(scenarios))
            raise ValueError(
                f"Unknown simulation scenario '{scenario}'. "
                f"Available: {available}"
            )
        self._scenario_name = scenario
        self._scenario: Dict[str, Any] = scenarios[scenario]
        self._connect_delay = connect_delay
        self._dtc_replies: Dict[DtcStatus, str] = {}
        self._speed = 0
        self._rpm = 0

    # -- backend hooks ------------------------------------------------------

    async def _open(self) -> bool:
        await asyncio.sleep(self._connect_delay)
        baseline = self._scenario.get("baseline", {})
        self._speed = int(baseline.get("speed", {}).get("base", 0))
        self._rpm = int(baseline.get("engine_speed", {}).get("base", _RPM_RANGE[0]))
        stored = self._scenario.get("dtc", {})
        self._dtc_replies = {
            status: stored.get(status.value, _EMPTY_REPLIES[status])
            for status in DtcStatus
        }
        return True

    async def _close(self) -> None:
        self._speed = 0
        self._rpm = 0

    async def _exchange(self, command: str) -> Optional[str]:
        normalized = command.replace(" ", "").upper()
        if normalized == MODE_CLEAR_CODES:
            self._dtc_replies = dict(_EMPTY_REPLIES)
            return "44"
        for status, mode in REQUEST_MODES.items():
            if normalized == mode:
                return self._dtc_replies[status]
        if normalized == "ATRV":
            return f"{self._sample('battery_voltage'):.1f}V"
        return "OK"

    async def _read_reading(self) -> Reading:
        self._speed = _clamp(self._speed + random.randint(-5, 5), *_SPEED_RANGE)
        self._rpm = _clamp(self._rpm + random.randint(-200, 200), *_RPM_RANGE)

        fields: Dict[str, Decoded] = {
            "speed": Decoded.measured(self._speed),
            "engine_speed": Decoded.measured(self._rpm),
            "battery_voltage": Decoded.measured(
                round(self._sample("battery_voltage"), 2)
            ),
        }
        for name in ("coolant_temperature", "intake_temperature") + _PERCENT_FIELDS:
            value = int(round(self._sample(name)))
            if name in _PERCENT_FIELDS:
                value = _clamp(value, 0, 100)
            fields[name] = Decoded.measured(value)
        return Reading.from_decoded(fields)

    # -- internal -----------------------------------------------------------

    def _sample(self, name: str) -> float:
        pid_def = self._scenario.get("baseline", {}).get(name)
        if pid_def is None:
            return 0.0
        return _apply_noise(pid_def["base"], pid_def.get("noise", 0.0))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def _apply_noise(base: float, noise: float) -> float:
    """Apply Gaussian noise (std-dev = noise) to a base value."""
    if noise <= 0:
        return base
    return base + random.gauss(0, noise)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))
