#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import dataclasses
import datetime
import ipaddress
from collections.abc import Sequence

import pytest

from check_chrony.exceptions import ProtocolError
from check_chrony.models import (
    LeapStatus,
    SourceMode,
    SourceRecord,
    SourceState,
    TrackingStatus,
    UNSPECIFIED_ADDRESS,
)
from check_chrony.protocol import (
    address_from_bytes,
    address_to_bytes,
    ChronyClient,
    Command,
    decode_reply,
    encode_reply,
    float_from_network,
    float_to_network,
    MAX_DATA_LENGTH,
    ReplyHeader,
    ReplyKind,
    RequestHeader,
    SourceCountReply,
    SourceCountRequest,
    SourceDataReply,
    SourceDataRequest,
    Status,
    TrackingReply,
    TrackingRequest,
)


class FakeConnection:
    def __init__(self, replies: Sequence[bytes]) -> None:
        self.requests: list[bytes] = []
        self._replies = list(replies)

    def exchange(self, request: bytes) -> bytes:
        self.requests.append(request)
        return self._replies.pop(0)


@pytest.mark.parametrize(
    "value",
    [0.0, 0.5, -0.5, 1.0, -1.25, 64.0, 1024.0, -12.5, 2.0**-20, -(2.0**-16), 0.0078125],
)
def test_float_roundtrip(value: float) -> None:
    assert float_from_network(float_to_network(value)) == value


@pytest.mark.parametrize(
    "raw, expected",
    [
        pytest.param(0x00000000, 0.0, id="zero"),
        pytest.param(0x02800000, 0.5, id="half"),
        pytest.param(0x01000000, -0.5, id="minus half"),
        pytest.param(0x04800000, 1.0, id="one"),
    ],
)
def test_float_from_network(raw: int, expected: float) -> None:
    assert float_from_network(raw) == expected


def test_float_precision() -> None:
    # 24 bits of precision
    assert float_from_network(float_to_network(0.1)) == pytest.approx(0.1, rel=2**-23)
    assert float_from_network(float_to_network(-123.456)) == pytest.approx(-123.456, rel=2**-23)


def test_float_saturates() -> None:
    assert float_from_network(float_to_network(1e200)) > 1e18
    assert float_from_network(float_to_network(1e-200)) == 0.0


@pytest.mark.parametrize(
    "address",
    [
        ipaddress.IPv4Address("192.0.2.10"),
        ipaddress.IPv6Address("2001:db8::123"),
        UNSPECIFIED_ADDRESS,
    ],
)
def test_address_roundtrip(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> None:
    raw = address_to_bytes(address)
    assert len(raw) == 20
    assert address_from_bytes(raw) == address


def test_address_invalid_family() -> None:
    with pytest.raises(ProtocolError, match="address family: 9"):
        address_from_bytes(b"\x00" * 16 + b"\x00\x09\x00\x00")


def test_refclock_address() -> None:
    # GPS refclock, identified by its refid
    assert address_from_bytes(b"GPS\x00" + b"\x00" * 12 + b"\x00\x03\x00\x00") == (
        ipaddress.IPv4Address("71.80.83.0")
    )


@pytest.mark.parametrize(
    "request_, command",
    [
        pytest.param(TrackingRequest(), Command.TRACKING, id="tracking"),
        pytest.param(SourceCountRequest(), Command.N_SOURCES, id="sources"),
        pytest.param(SourceDataRequest(3), Command.SOURCE_DATA, id="source data"),
    ],
)
def test_request_layout(request_: TrackingRequest, command: Command) -> None:
    raw = request_.encode(sequence=4711)

    assert len(raw) == RequestHeader.fmt.size + MAX_DATA_LENGTH == 416
    assert raw[:4] == b"\x06\x01\x00\x00"
    assert RequestHeader.from_bytes(raw) == RequestHeader(command, 4711)


def test_source_data_request_index() -> None:
    raw = SourceDataRequest(7).encode(sequence=1)
    body = raw[RequestHeader.fmt.size :]
    assert body[:8] == b"\x00\x00\x00\x07\x00\x00\x00\x00"
    assert SourceDataRequest.from_bytes(body) == SourceDataRequest(7)


def test_reply_header_layout() -> None:
    raw = bytes(ReplyHeader(Command.TRACKING, ReplyKind.TRACKING, Status.SUCCESS, 0x01020304))
    assert len(raw) == 28
    assert raw[:12] == b"\x06\x02\x00\x00\x00\x21\x00\x05\x00\x00\x00\x00"
    assert raw[16:20] == b"\x01\x02\x03\x04"


def test_tracking_reply_roundtrip(tracking_status: TrackingStatus) -> None:
    raw = encode_reply(TrackingReply(tracking_status), command=Command.TRACKING, sequence=5)
    assert len(raw) == 28 + 76

    header, reply = decode_reply(raw)

    assert header.sequence == 5
    assert header.kind == ReplyKind.TRACKING
    assert reply == TrackingReply(tracking_status)


def test_source_count_reply_roundtrip() -> None:
    raw = encode_reply(SourceCountReply(4), command=Command.N_SOURCES, sequence=6)
    assert len(raw) == 28 + 4
    assert decode_reply(raw)[1] == SourceCountReply(4)


@pytest.mark.parametrize(
    "address",
    [ipaddress.IPv4Address("192.0.2.11"), ipaddress.IPv6Address("2001:db8::1")],
)
def test_source_data_reply_roundtrip(
    source_record: SourceRecord, address: ipaddress.IPv4Address | ipaddress.IPv6Address
) -> None:
    source = dataclasses.replace(
        source_record, address=address, state=SourceState.CANDIDATE, reachability=0b1011, poll=-2
    )
    raw = encode_reply(SourceDataReply(source), command=Command.SOURCE_DATA, sequence=7)
    assert len(raw) == 28 + 48
    assert decode_reply(raw)[1] == SourceDataReply(source)


def test_decode_reply_too_short() -> None:
    with pytest.raises(ProtocolError, match="too short"):
        decode_reply(b"\x06\x02\x00")


def test_decode_reply_truncated_body() -> None:
    raw = encode_reply(SourceCountReply(4), command=Command.N_SOURCES, sequence=1)
    with pytest.raises(ProtocolError, match="SourceCountReply too short"):
        decode_reply(raw[:-1])


@pytest.mark.parametrize(
    "header, match",
    [
        pytest.param(
            ReplyHeader(Command.N_SOURCES, ReplyKind.N_SOURCES, Status.SUCCESS, 1, version=5),
            "protocol version",
            id="version",
        ),
        pytest.param(
            ReplyHeader(Command.N_SOURCES, ReplyKind.N_SOURCES, Status.SUCCESS, 1, packet_type=1),
            "Not a reply",
            id="packet type",
        ),
        pytest.param(
            ReplyHeader(Command.N_SOURCES, ReplyKind.N_SOURCES, Status.UNAUTH, 1),
            "Request failed: UNAUTH",
            id="status",
        ),
        pytest.param(
            ReplyHeader(Command.N_SOURCES, 42, Status.SUCCESS, 1),
            "Unknown reply kind: 42",
            id="kind",
        ),
    ],
)
def test_decode_reply_invalid_header(header: ReplyHeader, match: str) -> None:
    raw = bytes(header) + bytes(SourceCountReply(1))
    with pytest.raises(ProtocolError, match=match) as excinfo:
        decode_reply(raw)
    assert excinfo.value.payload == raw


def test_decode_reply_invalid_state(source_record: SourceRecord) -> None:
    raw = bytearray(
        encode_reply(SourceDataReply(source_record), command=Command.SOURCE_DATA, sequence=1)
    )
    # state field of the source data
    raw[28 + 24 : 28 + 26] = b"\x00\x63"
    with pytest.raises(ProtocolError, match="Cannot decode SourceDataReply"):
        decode_reply(bytes(raw))




# Datagrams as sent by chronyd: a 28 byte header followed by the reply data,
# which ends before the EOR marker of the C struct
_TRACKING_DATAGRAM = bytes.fromhex(
    "06020000 0021 0005 0000 000000000000 00000007 0000000000000000"
    "c000020b"
    "c000020b 000000000000000000000000 0001 0000"
    "0002 0000"
    "00000000 664746c0 00000000"
    "02800000 01000000 00000000 04800000 00000000"
    "00000000 02800000 00000000 10800000"
)

_SOURCE_DATA_DATAGRAM = bytes.fromhex(
    "06020000 000f 0003 0000 000000000000 00000008 0000000000000000"
    "c000020b 000000000000000000000000 0001 0000"
    "0006 0001 0004 0000 0000 00ff"
    "00000021"
    "02800000 01000000 04800000"
)


def test_decode_tracking_datagram() -> None:
    assert len(_TRACKING_DATAGRAM) == 28 + 76

    header, reply = decode_reply(_TRACKING_DATAGRAM)

    assert header == ReplyHeader(Command.TRACKING, ReplyKind.TRACKING, Status.SUCCESS, 7)
    assert reply == TrackingReply(
        TrackingStatus(
            ref_id=0xC000020B,
            address=ipaddress.IPv4Address("192.0.2.11"),
            stratum=2,
            leap_status=LeapStatus.NORMAL,
            ref_time=datetime.datetime(2024, 5, 17, 12, 0, 0, tzinfo=datetime.UTC),
            current_correction=0.5,
            last_offset=-0.5,
            rms_offset=0.0,
            freq_ppm=1.0,
            resid_freq_ppm=0.0,
            skew_ppm=0.0,
            root_delay=0.5,
            root_dispersion=0.0,
            last_update_interval=64.0,
        )
    )
    assert bytes(reply) == _TRACKING_DATAGRAM[28:]


def test_decode_source_data_datagram() -> None:
    assert len(_SOURCE_DATA_DATAGRAM) == 28 + 48

    header, reply = decode_reply(_SOURCE_DATA_DATAGRAM)

    assert header.sequence == 8
    assert reply == SourceDataReply(
        SourceRecord(
            address=ipaddress.IPv4Address("192.0.2.11"),
            poll=6,
            stratum=1,
            state=SourceState.CANDIDATE,
            mode=SourceMode.CLIENT,
            flags=0,
            reachability=0xFF,
            since_sample=33,
            orig_latest_meas=0.5,
            latest_meas=-0.5,
            latest_meas_err=1.0,
        )
    )
    assert bytes(reply) == _SOURCE_DATA_DATAGRAM[28:]


def test_decode_reply_timestamp_out_of_range() -> None:
    raw = bytearray(_TRACKING_DATAGRAM)
    # high 32 bits of the reference time
    raw[28 + 28 : 28 + 32] = b"\x7f\xff\xff\xfe"
    with pytest.raises(ProtocolError, match="Cannot decode TrackingReply: Timestamp out of range"):
        decode_reply(bytes(raw))


def test_client_queries(tracking_status: TrackingStatus, source_record: SourceRecord) -> None:
    connection = FakeConnection(
        [
            encode_reply(TrackingReply(tracking_status), command=Command.TRACKING, sequence=1),
            encode_reply(SourceCountReply(1), command=Command.N_SOURCES, sequence=2),
            encode_reply(SourceDataReply(source_record), command=Command.SOURCE_DATA, sequence=3),
        ]
    )
    client = ChronyClient(connection)

    assert client.query_tracking() == tracking_status
    assert client.query_source_count() == 1
    assert client.query_source_data(0) == source_record

    assert [RequestHeader.from_bytes(r) for r in connection.requests] == [
        RequestHeader(Command.TRACKING, 1),
        RequestHeader(Command.N_SOURCES, 2),
        RequestHeader(Command.SOURCE_DATA, 3),
    ]


def test_client_rejects_wrong_sequence() -> None:
    raw = encode_reply(SourceCountReply(3), command=Command.N_SOURCES, sequence=99)
    client = ChronyClient(FakeConnection([raw]))

    with pytest.raises(ProtocolError, match="sequence number 99 \\(expected 1\\)") as excinfo:
        client.query_source_count()
    assert excinfo.value.payload == raw


def test_client_rejects_wrong_reply_kind() -> None:
    raw = encode_reply(SourceCountReply(3), command=Command.N_SOURCES, sequence=1)
    client = ChronyClient(FakeConnection([raw]))

    with pytest.raises(ProtocolError, match="Unexpected reply N_SOURCES to TrackingRequest"):
        client.query_tracking()


def test_client_sequence_increases() -> None:
    connection = FakeConnection(
        [
            encode_reply(SourceCountReply(1), command=Command.N_SOURCES, sequence=seq)
            for seq in (10, 11, 12)
        ]
    )
    client = ChronyClient(connection, sequence=10)
    for _ in range(3):
        client.query_source_count()

    assert [RequestHeader.from_bytes(r).sequence for r in connection.requests] == [10, 11, 12]
