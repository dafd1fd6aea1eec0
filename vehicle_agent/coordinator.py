"""Adapter selection: produce a connected transport, always.

Order: the caller's preferred kind (if any), then built-in bus, external
adapter, and finally the simulated transport.  The simulated transport
cannot fail to connect, so selection never ends empty-handed.

Hardware transports are imported lazily so simulation-only environments
need no serial or CAN packages.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from vehicle_agent.config import AgentSettings
from vehicle_agent.schemas import AdapterKind
from vehicle_agent.transport.base import Transport

logger = structlog.get_logger(__name__)

FALLBACK_ORDER = (
    AdapterKind.BUILT_IN,
    AdapterKind.EXTERNAL,
    AdapterKind.SIMULATED,
)


def create_transport(kind: AdapterKind, settings: AgentSettings) -> Transport:
    """Factory: return an unconnected transport of *kind*."""
    timeouts = dict(
        exchange_timeout=settings.exchange_timeout_seconds,
        connect_timeout=settings.connect_timeout_seconds,
    )
    if kind is AdapterKind.SIMULATED:
        from vehicle_agent.transport.simulation import SimulatedTransport

        return SimulatedTransport(
            scenario=settings.sim_scenario,
            connect_delay=settings.sim_connect_delay_seconds,
            **timeouts,
        )

    if kind is AdapterKind.EXTERNAL:
        from vehicle_agent.transport.elm import ElmTransport, SerialChannel

        channel = SerialChannel(
            port=settings.elm_port,
            baudrate=settings.elm_baudrate,
            read_timeout=settings.exchange_timeout_seconds,
        )
        return ElmTransport(
            channel,
            reset_settle=settings.reset_settle_seconds,
            protocol_settle=settings.protocol_settle_seconds,
            **timeouts,
        )

    from vehicle_agent.transport.builtin import BuiltInBusTransport

    return BuiltInBusTransport(
        settings.builtin_device_paths,
        socketcan_channel=settings.socketcan_channel,
        frame_batch=settings.builtin_frame_batch,
        frame_max_age=settings.builtin_frame_max_age_seconds,
        **timeouts,
    )


async def _try_connect(transport: Transport) -> bool:
    try:
        return await transport.connect()
    except Exception:
        logger.exception("adapter_connect_raised", kind=transport.kind.value)
        await transport.disconnect()
        return False


async def select_transport(
    settings: AgentSettings,
    preferred: Optional[AdapterKind] = None,
) -> Transport:
    """Return the first transport that connects.

    Parameters
    ----------
    settings:
        Read-only configuration snapshot.
    preferred:
        Kind to try first; defaults to ``settings.preferred_adapter``.
    """
    preferred = preferred if preferred is not None else settings.preferred_adapter
    logger.debug("adapter_selection_started", preferred=preferred)

    if preferred is not None:
        transport = create_transport(preferred, settings)
        if await _try_connect(transport):
            logger.info("adapter_selected", kind=preferred.value, preferred=True)
            return transport
        logger.warning("preferred_adapter_failed", kind=preferred.value)
        await transport.disconnect()

    for kind in FALLBACK_ORDER:
        transport = create_transport(kind, settings)
        if await _try_connect(transport):
            if kind is AdapterKind.SIMULATED:
                logger.warning("no_real_adapter_available", using=kind.value)
            else:
                logger.info("adapter_selected", kind=kind.value, preferred=False)
            return transport
        await transport.disconnect()

    # Unreachable unless the simulated transport itself was broken.
    raise RuntimeError("Simulated transport failed to connect")


async def detect_adapters(settings: AgentSettings) -> List[AdapterKind]:
    """Probe every kind without keeping any of them connected."""
    available: List[AdapterKind] = []
    for kind in (AdapterKind.BUILT_IN, AdapterKind.EXTERNAL):
        transport = create_transport(kind, settings)
        if await _try_connect(transport):
            available.append(kind)
        await transport.disconnect()

    # Simulated is always available.
    available.append(AdapterKind.SIMULATED)
    logger.info("adapters_detected", available=[k.value for k in available])
    return available
