"""Tests for vehicle_agent.diagnostics -- DTC read and clear."""

from __future__ import annotations

import asyncio

import pytest

from vehicle_agent.diagnostics import DiagnosticsSession
from vehicle_agent.schemas import DecodeStatus, DtcStatus, Severity
from vehicle_agent.transport.simulation import SimulatedTransport


async def _connected(scenario: str) -> SimulatedTransport:
    transport = SimulatedTransport(scenario=scenario, connect_delay=0)
    await transport.connect()
    return transport


@pytest.mark.asyncio
async def test_read_current_codes_misfire() -> None:
    transport = await _connected("misfire")
    session = DiagnosticsSession(transport, clear_settle_seconds=0)
    codes = await session.read_current_codes()
    assert [c.code for c in codes] == ["P0301", "P0171"]
    assert codes[0].severity is Severity.CRITICAL
    assert all(c.status is DtcStatus.CURRENT for c in codes)
    await transport.disconnect()


@pytest.mark.asyncio
async def test_read_all_codes_tags_status() -> None:
    transport = await _connected("misfire")
    session = DiagnosticsSession(transport, clear_settle_seconds=0)
    codes = await session.read_all_codes()
    assert [(c.code, c.status) for c in codes] == [
        ("P0301", DtcStatus.CURRENT),
        ("P0171", DtcStatus.CURRENT),
        ("P0133", DtcStatus.PENDING),
        ("P0301", DtcStatus.PERMANENT),
    ]
    pending = await session.read_pending_codes()
    assert [c.code for c in pending] == ["P0133"]
    assert pending[0].severity is Severity.WARNING
    await transport.disconnect()


@pytest.mark.asyncio
async def test_healthy_has_no_codes() -> None:
    transport = await _connected("healthy")
    session = DiagnosticsSession(transport, clear_settle_seconds=0)
    assert await session.read_all_codes() == []
    await transport.disconnect()


@pytest.mark.asyncio
async def test_clear_codes() -> None:
    transport = await _connected("misfire")
    session = DiagnosticsSession(transport, clear_settle_seconds=0)
    assert await session.clear_codes()
    assert await session.read_all_codes() == []
    assert await session.read_permanent_codes() == []
    await transport.disconnect()


@pytest.mark.asyncio
async def test_disconnected_transport() -> None:
    transport = SimulatedTransport(scenario="misfire", connect_delay=0)
    session = DiagnosticsSession(transport, clear_settle_seconds=0)
    assert await session.read_current_codes() == []
    assert not await session.clear_codes()


@pytest.mark.asyncio
async def test_clear_holds_transport_during_settle() -> None:
    transport = await _connected("misfire")
    session = DiagnosticsSession(transport, clear_settle_seconds=0.2)

    clear = asyncio.create_task(session.clear_codes())
    await asyncio.sleep(0.05)
    poll = asyncio.create_task(transport.read_reading())
    await asyncio.sleep(0.05)
    assert not poll.done()

    assert await clear
    await poll
    await transport.disconnect()


@pytest.mark.asyncio
async def test_clear_times_out() -> None:
    transport = await _connected("misfire")
    session = DiagnosticsSession(
        transport, clear_settle_seconds=5.0, timeout_seconds=0.05
    )
    assert not await session.clear_codes()
    await transport.disconnect()


# ---------------------------------------------------------------------------
# query_codes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_query_tells_no_codes_from_no_answer() -> None:
    transport = await _connected("healthy")
    session = DiagnosticsSession(transport, clear_settle_seconds=0)
    reply = await session.query_codes(DtcStatus.CURRENT)
    assert reply.status is DecodeStatus.OK
    assert reply.codes == ()
    await transport.disconnect()

    reply = await session.query_codes(DtcStatus.CURRENT)
    assert reply.status is DecodeStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_multi_line_codes_over_adapter(fake_channel, elm_factory) -> None:
    channel = fake_channel(
        {
            "03": "03\r00A\r0: 43 04 01 33 03 01\r1: 01 71 04 20 00 00 00\r\r>",
            "07": "47 01 01 33\r47 01 03 01\r\r>",
            "0A": "00A\r0: 4A 04 01 33 03 01\r\r>",
        }
    )
    transport = elm_factory(channel)
    await transport.connect()
    session = DiagnosticsSession(transport, clear_settle_seconds=0)

    current = await session.query_codes(DtcStatus.CURRENT)
    assert current.ok
    assert [c.code for c in current.codes] == ["P0133", "P0301", "P0171", "P0420"]

    pending = await session.read_pending_codes()
    assert [c.code for c in pending] == ["P0133", "P0301"]

    truncated = await session.query_codes(DtcStatus.PERMANENT)
    assert truncated.status is DecodeStatus.MALFORMED
    assert transport.is_connected()
    await transport.disconnect()
