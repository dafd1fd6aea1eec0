"""Tests for vehicle_agent.dtc -- trouble code decoding and triage."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from vehicle_agent.dtc import (
    DTC_DESCRIPTIONS,
    REQUEST_MODES,
    UNKNOWN_DESCRIPTION,
    classify_severity,
    decode_dtc,
    decode_dtc_reply,
    describe,
    parse_dtc_response,
    split_reply,
)
from vehicle_agent.schemas import DecodeStatus, DtcStatus, Severity


# ---------------------------------------------------------------------------
# decode_dtc
# ---------------------------------------------------------------------------

class TestDecodeDtc:
    @pytest.mark.parametrize(
        "b1, b2, expected",
        [
            (0x01, 0x33, "P0133"),
            (0x03, 0x01, "P0301"),
            (0x00, 0x00, "P0000"),
            (0x41, 0x23, "C0123"),
            (0x9A, 0x00, "B1A00"),
            (0xC0, 0x73, "U0073"),
            (0xFF, 0xFF, "U3FFF"),
        ],
    )
    def test_bit_layout(self, b1: int, b2: int, expected: str) -> None:
        assert decode_dtc(b1, b2) == expected

    def test_every_pair_is_five_characters(self) -> None:
        for b1 in range(256):
            code = decode_dtc(b1, 0xA5)
            assert len(code) == 5
            assert code[0] in "PCBU"
            assert code[1] in "0123"


# ---------------------------------------------------------------------------
# Severity / description
# ---------------------------------------------------------------------------

class TestSeverity:
    @pytest.mark.parametrize(
        "code, expected",
        [
            ("P0300", Severity.CRITICAL),
            ("P0301", Severity.CRITICAL),
            ("P0335", Severity.CRITICAL),
            ("P0340", Severity.CRITICAL),
            ("P0420", Severity.WARNING),
            ("P0133", Severity.WARNING),
            ("P0171", Severity.WARNING),
            ("P0500", Severity.INFORMATIONAL),
            ("C0035", Severity.INFORMATIONAL),
            ("U0100", Severity.INFORMATIONAL),
        ],
    )
    def test_classify(self, code: str, expected: Severity) -> None:
        assert classify_severity(code) is expected


def test_describe_known_and_unknown() -> None:
    assert describe("P0420") == "Catalyst System Efficiency Below Threshold"
    assert describe("P1234") == UNKNOWN_DESCRIPTION
    assert "P0301" in DTC_DESCRIPTIONS


def test_request_modes() -> None:
    assert REQUEST_MODES == {
        DtcStatus.CURRENT: "03",
        DtcStatus.PENDING: "07",
        DtcStatus.PERMANENT: "0A",
    }


# ---------------------------------------------------------------------------
# parse_dtc_response
# ---------------------------------------------------------------------------

class TestParseResponse:
    def test_two_codes(self) -> None:
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        codes = parse_dtc_response(
            "43 02 03 01 01 71", DtcStatus.CURRENT, observed_at=ts
        )
        assert [c.code for c in codes] == ["P0301", "P0171"]
        assert codes[0].severity is Severity.CRITICAL
        assert codes[0].description == "Cylinder 1 Misfire Detected"
        assert codes[1].severity is Severity.WARNING
        assert all(c.status is DtcStatus.CURRENT for c in codes)
        assert all(c.observed_at == ts for c in codes)

    def test_status_is_carried(self) -> None:
        codes = parse_dtc_response("47 01 01 33", DtcStatus.PENDING)
        assert len(codes) == 1
        assert codes[0].code == "P0133"
        assert codes[0].status is DtcStatus.PENDING

    def test_zero_count(self) -> None:
        assert parse_dtc_response("43 00", DtcStatus.CURRENT) == []

    def test_declared_count_larger_than_payload(self) -> None:
        codes = parse_dtc_response("43 05 01 33", DtcStatus.CURRENT)
        assert [c.code for c in codes] == ["P0133"]

    def test_declared_count_smaller_than_payload(self) -> None:
        codes = parse_dtc_response("43 01 01 33 03 01", DtcStatus.CURRENT)
        assert [c.code for c in codes] == ["P0133"]

    def test_unknown_code_kept_with_generic_description(self) -> None:
        codes = parse_dtc_response("43 01 12 34", DtcStatus.CURRENT)
        assert codes[0].code == "P1234"
        assert codes[0].description == UNKNOWN_DESCRIPTION
        assert codes[0].severity is Severity.INFORMATIONAL

    @pytest.mark.parametrize(
        "response", [None, "", "NO DATA", "43", "43 ZZ 01 33", "garbage"]
    )
    def test_unusable_response_is_empty(self, response) -> None:
        assert parse_dtc_response(response, DtcStatus.CURRENT) == []


# ---------------------------------------------------------------------------
# Multi-line replies
# ---------------------------------------------------------------------------

MULTI_FRAME_REPLY = "00A\n0: 43 04 01 33 03 01\n1: 01 71 04 20 00 00 00"


class TestSplitReply:
    def test_multi_frame_is_reassembled_and_cut_to_count(self) -> None:
        assert split_reply(MULTI_FRAME_REPLY) == [
            [0x43, 0x04, 0x01, 0x33, 0x03, 0x01, 0x01, 0x71, 0x04, 0x20]
        ]

    def test_one_message_per_answering_unit(self) -> None:
        assert split_reply("43 01 01 33\r43 01 03 01") == [
            [0x43, 0x01, 0x01, 0x33],
            [0x43, 0x01, 0x03, 0x01],
        ]

    def test_frame_index_wraps(self) -> None:
        frames = [f"{i % 16:X}: 00 00 00 00 00 00 00" for i in range(17)]
        messages = split_reply("077\n" + "\n".join(frames))
        assert len(messages) == 1
        assert len(messages[0]) == 0x77

    @pytest.mark.parametrize(
        "response",
        [
            "00A\n0: 43 04 01 33 03 01",
            "00A\n0: 43 04 01 33 03 01\n2: 01 71 04 20 00 00 00",
            "0: 43 04 01 33 03 01",
            "00A\n0: 43 04 01 33 03 01\n43 01 01 33",
            "43 01 XY 33",
        ],
    )
    def test_unassemblable_reply_raises(self, response: str) -> None:
        with pytest.raises(ValueError):
            split_reply(response)


class TestDecodeDtcReply:
    def test_multi_frame_reply_yields_every_code(self) -> None:
        reply = decode_dtc_reply(MULTI_FRAME_REPLY, DtcStatus.CURRENT)
        assert reply.ok
        assert [c.code for c in reply.codes] == ["P0133", "P0301", "P0171", "P0420"]

    def test_codes_from_every_unit_are_merged(self) -> None:
        reply = decode_dtc_reply("43 01 01 33\r43 01 03 01", DtcStatus.CURRENT)
        assert [c.code for c in reply.codes] == ["P0133", "P0301"]

    def test_code_reported_twice_appears_once(self) -> None:
        reply = decode_dtc_reply("43 01 01 33\n43 02 01 33 04 20", DtcStatus.CURRENT)
        assert [c.code for c in reply.codes] == ["P0133", "P0420"]

    def test_none_stored_is_ok_and_empty(self) -> None:
        reply = decode_dtc_reply("43 00", DtcStatus.CURRENT)
        assert reply.status is DecodeStatus.OK
        assert reply.codes == ()

    @pytest.mark.parametrize("response", [None, "", "NO DATA"])
    def test_no_reply_is_unavailable(self, response) -> None:
        reply = decode_dtc_reply(response, DtcStatus.CURRENT)
        assert reply.status is DecodeStatus.UNAVAILABLE

    @pytest.mark.parametrize(
        "response",
        [
            "00A\n0: 43 04 01 33 03 01",
            "00A\n0: 43 04 01 33 03 01\n2: 01 71 04 20 00 00 00",
            "43",
            "47 01 01 33",
            "43 01 01 33\n41 0C 1F 40",
            "garbage",
        ],
    )
    def test_unusable_reply_is_malformed_not_empty(self, response: str) -> None:
        reply = decode_dtc_reply(response, DtcStatus.CURRENT)
        assert reply.status is DecodeStatus.MALFORMED
        assert not reply.ok
