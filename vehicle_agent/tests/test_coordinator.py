"""Tests for vehicle_agent.coordinator -- adapter selection and fallback."""

from __future__ import annotations

from pathlib import Path

import pytest

from vehicle_agent.config import AgentSettings
from vehicle_agent.coordinator import (
    FALLBACK_ORDER,
    create_transport,
    detect_adapters,
    select_transport,
)
from vehicle_agent.schemas import AdapterKind, ConnectionState
from vehicle_agent.transport.builtin import BuiltInBusTransport
from vehicle_agent.transport.elm import ElmTransport
from vehicle_agent.transport.simulation import SimulatedTransport


def _with_device(settings: AgentSettings, tmp_path: Path) -> AgentSettings:
    device = tmp_path / "canbus"
    device.write_text("5A0#0010\n", encoding="ascii")
    return settings.model_copy(update={"builtin_device_paths": [str(device)]})


def test_fallback_order() -> None:
    assert FALLBACK_ORDER == (
        AdapterKind.BUILT_IN,
        AdapterKind.EXTERNAL,
        AdapterKind.SIMULATED,
    )


@pytest.mark.parametrize(
    "kind, cls",
    [
        (AdapterKind.BUILT_IN, BuiltInBusTransport),
        (AdapterKind.EXTERNAL, ElmTransport),
        (AdapterKind.SIMULATED, SimulatedTransport),
    ],
)
def test_create_transport(settings: AgentSettings, kind, cls) -> None:
    transport = create_transport(kind, settings)
    assert isinstance(transport, cls)
    assert transport.kind is kind
    assert transport.state is ConnectionState.DISCONNECTED


# ---------------------------------------------------------------------------
# select_transport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_falls_back_to_simulation(settings: AgentSettings) -> None:
    transport = await select_transport(settings)
    assert transport.kind is AdapterKind.SIMULATED
    assert transport.is_connected()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_builtin_preferred_by_default_order(
    settings: AgentSettings, tmp_path: Path
) -> None:
    transport = await select_transport(_with_device(settings, tmp_path))
    assert transport.kind is AdapterKind.BUILT_IN
    assert transport.is_connected()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_preferred_kind_tried_first(
    settings: AgentSettings, tmp_path: Path
) -> None:
    transport = await select_transport(
        _with_device(settings, tmp_path), preferred=AdapterKind.SIMULATED
    )
    assert transport.kind is AdapterKind.SIMULATED
    await transport.disconnect()


@pytest.mark.asyncio
async def test_preferred_from_settings(settings: AgentSettings, tmp_path: Path) -> None:
    configured = _with_device(settings, tmp_path).model_copy(
        update={"preferred_adapter": AdapterKind.SIMULATED}
    )
    transport = await select_transport(configured)
    assert transport.kind is AdapterKind.SIMULATED
    await transport.disconnect()


@pytest.mark.asyncio
async def test_failing_preferred_falls_back(settings: AgentSettings) -> None:
    transport = await select_transport(settings, preferred=AdapterKind.EXTERNAL)
    assert transport.kind is AdapterKind.SIMULATED
    assert transport.is_connected()
    await transport.disconnect()


# ---------------------------------------------------------------------------
# detect_adapters
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_detect_only_simulated(settings: AgentSettings) -> None:
    assert await detect_adapters(settings) == [AdapterKind.SIMULATED]


@pytest.mark.asyncio
async def test_detect_builtin(settings: AgentSettings, tmp_path: Path) -> None:
    found = await detect_adapters(_with_device(settings, tmp_path))
    assert found == [AdapterKind.BUILT_IN, AdapterKind.SIMULATED]
