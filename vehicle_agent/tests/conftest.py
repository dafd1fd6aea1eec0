"""Shared pytest fixtures for vehicle agent tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest

from vehicle_agent.config import AgentSettings
from vehicle_agent.transport.elm import ElmTransport, LineChannel

ELM_BANNER = "ATZ\r\r\rELM327 v1.5\r\r>"


class FakeChannel(LineChannel):
    """Scripted adapter: replies keyed by command, ``NO DATA`` otherwise."""

    def __init__(
        self,
        replies: Optional[Dict[str, str]] = None,
        *,
        fail_on: Optional[str] = None,
        hang_on: Optional[str] = None,
    ) -> None:
        self.replies = {"ATZ": ELM_BANNER, "ATE0": "ATE0\rOK\r\r>", "ATSP0": "OK\r\r>"}
        self.replies.update(replies or {})
        self.fail_on = fail_on
        self.hang_on = hang_on
        self.sent: List[str] = []
        self.opened = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.opened = False

    async def transact(self, command: str) -> str:
        self.sent.append(command)
        if command == self.fail_on:
            raise OSError("link down")
        if command == self.hang_on:
            await asyncio.sleep(10)
        return self.replies.get(command, "NO DATA\r\r>")


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests."""
    from vehicle_agent.transport import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def settings(tmp_path: Path) -> AgentSettings:
    """Fast settings with every real adapter pointed at nothing."""
    return AgentSettings(
        preferred_adapter=None,
        elm_port=str(tmp_path / "no-such-tty"),
        builtin_device_paths=[str(tmp_path / "no-such-can")],
        socketcan_channel="",
        sim_scenario="healthy",
        sim_connect_delay_seconds=0.0,
        poll_interval_seconds=0.01,
        exchange_timeout_seconds=0.5,
        connect_timeout_seconds=2.0,
        reset_settle_seconds=0.0,
        protocol_settle_seconds=0.0,
        clear_settle_seconds=0.0,
        log_dir=tmp_path / "logs",
        log_interval_seconds=0.0,
        log_max_total_bytes=None,
    )


@pytest.fixture()
def elm_responses() -> Dict[str, str]:
    """A warm engine answering every telemetry request."""
    return {
        "010C": "41 0C 1F 40\r\r>",  # 2000 rpm
        "010D": "41 0D 3C\r\r>",  # 60 km/h
        "0105": "41 05 5A\r\r>",  # 50 degC
        "012F": "41 2F 80\r\r>",  # 50 %
        "0104": "41 04 FF\r\r>",  # 100 %
        "0111": "41 11 00\r\r>",  # 0 %
        "010F": "41 0F 46\r\r>",  # 30 degC
        "ATRV": "12.6V\r\r>",
    }


def make_elm(channel: FakeChannel, **overrides: float) -> ElmTransport:
    kwargs = dict(
        reset_settle=0.0,
        protocol_settle=0.0,
        exchange_timeout=0.2,
        connect_timeout=2.0,
    )
    kwargs.update(overrides)
    return ElmTransport(channel, **kwargs)


@pytest.fixture()
def fake_channel():
    """Factory for scripted adapter channels."""
    return FakeChannel


@pytest.fixture()
def elm_factory():
    """Factory for fast ``ElmTransport`` instances over a fake channel."""
    return make_elm
