"""Read and clear Diagnostic Trouble Codes over a connected transport."""

from __future__ import annotations

import asyncio
from typing import List

import structlog

from vehicle_agent.dtc import (
    MODE_CLEAR_CODES,
    REQUEST_MODES,
    DtcReply,
    decode_dtc_reply,
)
from vehicle_agent.schemas import DecodeStatus, DtcStatus, TroubleCode
from vehicle_agent.transport.base import Transport

logger = structlog.get_logger(__name__)


class DiagnosticsSession:
    """On-demand DTC requests.

    Every request runs under the transport's exclusive hold, so it never
    interleaves with a telemetry poll on the same channel.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        clear_settle_seconds: float = 2.0,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._transport = transport
        self._clear_settle = clear_settle_seconds
        self._timeout = timeout_seconds

    async def query_codes(self, status: DtcStatus) -> DtcReply:
        """Request stored codes of one kind.

        The reply's status separates "no codes stored" (``OK`` and empty)
        from an unanswered or unreadable request.
        """
        mode = REQUEST_MODES[status]
        response = await self._transport.send_command(mode)
        if response is None:
            logger.warning("dtc_request_unanswered", mode=mode)
            return DtcReply(DecodeStatus.UNAVAILABLE)
        reply = decode_dtc_reply(response, status)
        if reply.ok:
            logger.info("dtcs_read", status=status.value, count=len(reply.codes))
        return reply

    async def read_codes(self, status: DtcStatus) -> List[TroubleCode]:
        reply = await self.query_codes(status)
        if not reply.ok:
            logger.warning(
                "dtc_read_incomplete", status=status.value, reply=reply.status.value
            )
        return list(reply.codes)

    async def read_current_codes(self) -> List[TroubleCode]:
        return await self.read_codes(DtcStatus.CURRENT)

    async def read_pending_codes(self) -> List[TroubleCode]:
        return await self.read_codes(DtcStatus.PENDING)

    async def read_permanent_codes(self) -> List[TroubleCode]:
        return await self.read_codes(DtcStatus.PERMANENT)

    async def read_all_codes(self) -> List[TroubleCode]:
        codes: List[TroubleCode] = []
        for status in (DtcStatus.CURRENT, DtcStatus.PENDING, DtcStatus.PERMANENT):
            codes.extend(await self.read_codes(status))
        return codes

    async def clear_codes(self) -> bool:
        """Ask the control unit to clear stored codes.

        Returns ``True`` iff the request got any reply.  Whether the codes
        are really gone is not verified.
        """
        try:
            return await asyncio.wait_for(self._clear(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("dtc_clear_timeout", timeout=self._timeout)
            return False

    async def _clear(self) -> bool:
        async with self._transport.exclusive() as transport:
            logger.info("dtc_clear_requested")
            response = await transport.exchange(MODE_CLEAR_CODES)
            # Give the control unit time to finish before anyone talks to it.
            await asyncio.sleep(self._clear_settle)
        if response is None:
            logger.warning("dtc_clear_failed")
            return False
        logger.info("dtc_clear_acknowledged", response=response)
        return True
