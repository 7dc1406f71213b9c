#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Classes defining the chrony command protocol.

Only the three commands needed by the check are implemented. The layouts are
those of chrony's `candm.h` in protocol version 6, all fields in network byte
order. Every message can be turned into bytes and read back from bytes.
"""

from __future__ import annotations

import abc
import datetime
import enum
import ipaddress
import math
import struct
from collections.abc import Iterator
from typing import ClassVar, Final, NamedTuple, Protocol

from .exceptions import ProtocolError
from .log import logger, VERBOSE
from .models import (
    IPAddress,
    LeapStatus,
    SourceMode,
    SourceRecord,
    SourceState,
    TrackingStatus,
    UNSPECIFIED_ADDRESS,
)

__all__ = [
    "ChronyClient",
    "Command",
    "Reply",
    "ReplyHeader",
    "ReplyKind",
    "RequestHeader",
    "SourceCountReply",
    "SourceCountRequest",
    "SourceDataReply",
    "SourceDataRequest",
    "TrackingReply",
    "TrackingRequest",
    "decode_reply",
]

PROTOCOL_VERSION: Final = 6

# Requests are padded to this size. chronyd never sends a reply longer than
# the request it answers.
MAX_DATA_LENGTH: Final = 396


class PacketType(enum.IntEnum):
    REQUEST = 1
    REPLY = 2


class Command(enum.IntEnum):
    N_SOURCES = 14
    SOURCE_DATA = 15
    TRACKING = 33


class ReplyKind(enum.IntEnum):
    N_SOURCES = 2
    SOURCE_DATA = 3
    TRACKING = 5


class Status(enum.IntEnum):
    SUCCESS = 0
    FAILED = 1
    UNAUTH = 2
    INVALID = 3
    NOSUCHSOURCE = 4
    INVALIDTS = 5
    NOTENABLED = 6
    BADSUBNET = 7
    ACCESSALLOWED = 8
    ACCESSDENIED = 9
    NOHOSTACCESS = 10
    SOURCEALREADYKNOWN = 11
    TOOMANYSOURCES = 12
    NORTC = 13
    BADRTCFILE = 14
    INACTIVE = 15
    BADSAMPLE = 16
    INVALIDAF = 17
    BADPKTVERSION = 18
    BADPKTLENGTH = 19
    INVALIDNAME = 21


class AddressFamily(enum.IntEnum):
    UNSPEC = 0
    INET4 = 1
    INET6 = 2
    ID = 3


#   .--Floats & addresses--------------------------------------------------.
#   |  chrony transmits floating point numbers as 32 bit integers with a   |
#   |  7 bit exponent and a 25 bit coefficient, both signed.               |
#   '----------------------------------------------------------------------'

FLOAT_EXP_BITS: Final = 7
FLOAT_COEF_BITS: Final = 32 - FLOAT_EXP_BITS
FLOAT_EXP_MIN: Final = -(1 << (FLOAT_EXP_BITS - 1))
FLOAT_EXP_MAX: Final = -FLOAT_EXP_MIN - 1
FLOAT_COEF_MAX: Final = (1 << (FLOAT_COEF_BITS - 1)) - 1


def float_from_network(raw: int) -> float:
    """
    >>> float_from_network(0x02800000)
    0.5
    >>> float_from_network(0x01000000)
    -0.5
    """
    exp = raw >> FLOAT_COEF_BITS
    if exp >= 1 << (FLOAT_EXP_BITS - 1):
        exp -= 1 << FLOAT_EXP_BITS
    exp -= FLOAT_COEF_BITS

    coef = raw % (1 << FLOAT_COEF_BITS)
    if coef >= 1 << (FLOAT_COEF_BITS - 1):
        coef -= 1 << FLOAT_COEF_BITS

    return coef * 2.0**exp


def float_to_network(value: float) -> int:
    """
    >>> hex(float_to_network(0.5))
    '0x2800000'
    >>> float_from_network(float_to_network(-1.25))
    -1.25
    """
    neg = int(value < 0.0)
    x = abs(value)

    if x < 1.0e-100:
        exp = coef = 0
    elif x > 1.0e100:
        exp, coef = FLOAT_EXP_MAX, FLOAT_COEF_MAX + neg
    else:
        exp = int(math.log2(x) + 1)
        coef = int(x * 2.0 ** (-exp + FLOAT_COEF_BITS) + 0.5)
        # we may need to shift up to two bits down
        while coef > FLOAT_COEF_MAX + neg:
            coef >>= 1
            exp += 1

        if exp > FLOAT_EXP_MAX:
            exp, coef = FLOAT_EXP_MAX, FLOAT_COEF_MAX + neg
        elif exp < FLOAT_EXP_MIN:
            if exp + FLOAT_COEF_BITS >= FLOAT_EXP_MIN:
                coef >>= FLOAT_EXP_MIN - exp
                exp = FLOAT_EXP_MIN
            else:
                exp = coef = 0

    if neg:
        coef = -coef % (1 << FLOAT_COEF_BITS)

    return ((exp % (1 << FLOAT_EXP_BITS)) << FLOAT_COEF_BITS) | coef


_ADDRESS = struct.Struct("!16sHH")


def address_from_bytes(data: bytes) -> IPAddress:
    raw, family, _pad = _ADDRESS.unpack(data)
    try:
        family = AddressFamily(family)
    except ValueError as e:
        raise ProtocolError(f"Invalid address family: {family}", data) from e

    match family:
        case AddressFamily.UNSPEC:
            return UNSPECIFIED_ADDRESS
        case AddressFamily.INET4 | AddressFamily.ID:
            # reference clocks are identified by their 32 bit refid
            return ipaddress.IPv4Address(raw[:4])
        case AddressFamily.INET6:
            return ipaddress.IPv6Address(raw)
    raise AssertionError(family)


def address_to_bytes(address: IPAddress) -> bytes:
    if address.is_unspecified:
        return _ADDRESS.pack(b"", AddressFamily.UNSPEC, 0)
    if isinstance(address, ipaddress.IPv4Address):
        return _ADDRESS.pack(address.packed, AddressFamily.INET4, 0)
    return _ADDRESS.pack(address.packed, AddressFamily.INET6, 0)


# Timespec: seconds (high and low 32 bits) and nanoseconds
_TV_NOHIGHSEC: Final = 0x7FFFFFFF


def timespec_to_datetime(sec_high: int, sec_low: int, nsec: int) -> datetime.datetime:
    seconds = sec_low if sec_high == _TV_NOHIGHSEC else (sec_high << 32) | sec_low
    try:
        return datetime.datetime.fromtimestamp(seconds + nsec / 1e9, tz=datetime.UTC)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {seconds}") from e


def datetime_to_timespec(value: datetime.datetime) -> tuple[int, int, int]:
    seconds, fraction = divmod(value.timestamp(), 1)
    seconds = int(seconds)
    return seconds >> 32, seconds & 0xFFFFFFFF, round(fraction * 1e9)


#   .--Requests------------------------------------------------------------.


class RequestHeader(NamedTuple):
    command: Command
    sequence: int
    version: int = PROTOCOL_VERSION
    packet_type: int = PacketType.REQUEST
    attempt: int = 0

    fmt = struct.Struct("!BBBBHHIII")

    def __bytes__(self) -> bytes:
        return self.fmt.pack(
            self.version, self.packet_type, 0, 0, self.command, self.attempt, self.sequence, 0, 0
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> RequestHeader:
        version, packet_type, _res1, _res2, command, attempt, sequence, _pad1, _pad2 = (
            cls.fmt.unpack(data[: cls.fmt.size])
        )
        return cls(
            command=Command(command),
            sequence=sequence,
            version=version,
            packet_type=packet_type,
            attempt=attempt,
        )


class Request(abc.ABC):
    command: ClassVar[Command]
    reply_kind: ClassVar[ReplyKind]

    @abc.abstractmethod
    def __bytes__(self) -> bytes:
        """The request body, padded to MAX_DATA_LENGTH"""

    def encode(self, sequence: int) -> bytes:
        return bytes(RequestHeader(self.command, sequence)) + bytes(self)

    @staticmethod
    def _pad(body: bytes) -> bytes:
        return body.ljust(MAX_DATA_LENGTH, b"\x00")


class TrackingRequest(Request):
    command = Command.TRACKING
    reply_kind = ReplyKind.TRACKING

    def __repr__(self) -> str:
        return "%s()" % type(self).__name__

    def __bytes__(self) -> bytes:
        return self._pad(b"")


class SourceCountRequest(Request):
    command = Command.N_SOURCES
    reply_kind = ReplyKind.N_SOURCES

    def __repr__(self) -> str:
        return "%s()" % type(self).__name__

    def __bytes__(self) -> bytes:
        return self._pad(b"")


class SourceDataRequest(Request):
    command = Command.SOURCE_DATA
    reply_kind = ReplyKind.SOURCE_DATA
    fmt = struct.Struct("!ii")

    def __init__(self, index: int) -> None:
        self.index: Final = index

    def __repr__(self) -> str:
        return "%s(%r)" % (type(self).__name__, self.index)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SourceDataRequest) and other.index == self.index

    def __hash__(self) -> int:
        return hash((type(self), self.index))

    def __bytes__(self) -> bytes:
        return self._pad(self.fmt.pack(self.index, 0))

    @classmethod
    def from_bytes(cls, data: bytes) -> SourceDataRequest:
        index, _eor = cls.fmt.unpack(data[: cls.fmt.size])
        return cls(index)


#   .--Replies-------------------------------------------------------------.


class ReplyHeader(NamedTuple):
    command: int
    kind: int
    status: int
    sequence: int
    version: int = PROTOCOL_VERSION
    packet_type: int = PacketType.REPLY

    fmt = struct.Struct("!BBBBHHHHHHIII")

    def __bytes__(self) -> bytes:
        return self.fmt.pack(
            self.version,
            self.packet_type,
            0,
            0,
            self.command,
            self.kind,
            self.status,
            0,
            0,
            0,
            self.sequence,
            0,
            0,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> ReplyHeader:
        if len(data) < cls.fmt.size:
            raise ProtocolError(f"Reply too short: {len(data)} bytes", data)
        (
            version,
            packet_type,
            _res1,
            _res2,
            command,
            kind,
            status,
            _pad1,
            _pad2,
            _pad3,
            sequence,
            _pad4,
            _pad5,
        ) = cls.fmt.unpack(data[: cls.fmt.size])
        return cls(
            command=command,
            kind=kind,
            status=status,
            sequence=sequence,
            version=version,
            packet_type=packet_type,
        )


class TrackingReply(NamedTuple):
    tracking: TrackingStatus

    kind = ReplyKind.TRACKING
    fmt = struct.Struct("!I20sHHIII9I")

    def __bytes__(self) -> bytes:
        t = self.tracking
        return self.fmt.pack(
            t.ref_id,
            address_to_bytes(t.address),
            t.stratum,
            t.leap_status,
            *datetime_to_timespec(t.ref_time),
            *(
                float_to_network(value)
                for value in (
                    t.current_correction,
                    t.last_offset,
                    t.rms_offset,
                    t.freq_ppm,
                    t.resid_freq_ppm,
                    t.skew_ppm,
                    t.root_delay,
                    t.root_dispersion,
                    t.last_update_interval,
                )
            ),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> TrackingReply:
        ref_id, address, stratum, leap, sec_high, sec_low, nsec, *floats = cls.fmt.unpack(data)
        (
            current_correction,
            last_offset,
            rms_offset,
            freq_ppm,
            resid_freq_ppm,
            skew_ppm,
            root_delay,
            root_dispersion,
            last_update_interval,
        ) = (float_from_network(raw) for raw in floats)
        return cls(
            TrackingStatus(
                ref_id=ref_id,
                address=address_from_bytes(address),
                stratum=stratum,
                leap_status=LeapStatus(leap),
                ref_time=timespec_to_datetime(sec_high, sec_low, nsec),
                current_correction=current_correction,
                last_offset=last_offset,
                rms_offset=rms_offset,
                freq_ppm=freq_ppm,
                resid_freq_ppm=resid_freq_ppm,
                skew_ppm=skew_ppm,
                root_delay=root_delay,
                root_dispersion=root_dispersion,
                last_update_interval=last_update_interval,
            )
        )


class SourceCountReply(NamedTuple):
    count: int

    kind = ReplyKind.N_SOURCES
    fmt = struct.Struct("!I")

    def __bytes__(self) -> bytes:
        return self.fmt.pack(self.count)

    @classmethod
    def from_bytes(cls, data: bytes) -> SourceCountReply:
        (count,) = cls.fmt.unpack(data)
        return cls(count)


class SourceDataReply(NamedTuple):
    source: SourceRecord

    kind = ReplyKind.SOURCE_DATA
    fmt = struct.Struct("!20shHHHHHIIII")

    def __bytes__(self) -> bytes:
        s = self.source
        return self.fmt.pack(
            address_to_bytes(s.address),
            s.poll,
            s.stratum,
            s.state,
            s.mode,
            s.flags,
            s.reachability,
            s.since_sample,
            float_to_network(s.orig_latest_meas),
            float_to_network(s.latest_meas),
            float_to_network(s.latest_meas_err),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> SourceDataReply:
        (
            address,
            poll,
            stratum,
            state,
            mode,
            flags,
            reachability,
            since_sample,
            orig_latest_meas,
            latest_meas,
            latest_meas_err,
        ) = cls.fmt.unpack(data)
        return cls(
            SourceRecord(
                address=address_from_bytes(address),
                poll=poll,
                stratum=stratum,
                state=SourceState(state),
                mode=SourceMode(mode),
                flags=flags,
                reachability=reachability,
                since_sample=since_sample,
                orig_latest_meas=float_from_network(orig_latest_meas),
                latest_meas=float_from_network(latest_meas),
                latest_meas_err=float_from_network(latest_meas_err),
            )
        )


Reply = TrackingReply | SourceCountReply | SourceDataReply


def encode_reply(reply: Reply, *, command: Command, sequence: int) -> bytes:
    """Build a reply datagram the way chronyd sends it"""
    return bytes(ReplyHeader(command, reply.kind, Status.SUCCESS, sequence)) + bytes(reply)


def decode_reply(data: bytes) -> tuple[ReplyHeader, Reply]:
    header = ReplyHeader.from_bytes(data)
    if header.version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unsupported protocol version: {header.version}", data)
    if header.packet_type != PacketType.REPLY:
        raise ProtocolError(f"Not a reply packet: type {header.packet_type}", data)
    if header.status != Status.SUCCESS:
        raise ProtocolError(f"Request failed: {_status_name(header.status)}", data)

    body = data[ReplyHeader.fmt.size :]
    reply_type: type[TrackingReply] | type[SourceCountReply] | type[SourceDataReply]
    match header.kind:
        case ReplyKind.TRACKING:
            reply_type = TrackingReply
        case ReplyKind.N_SOURCES:
            reply_type = SourceCountReply
        case ReplyKind.SOURCE_DATA:
            reply_type = SourceDataReply
        case _:
            raise ProtocolError(f"Unknown reply kind: {header.kind}", data)

    if len(body) < reply_type.fmt.size:
        raise ProtocolError(
            f"Reply {reply_type.__name__} too short: {len(body)} bytes, "
            f"expected {reply_type.fmt.size}",
            data,
        )
    try:
        return header, reply_type.from_bytes(body[: reply_type.fmt.size])
    except ValueError as exc:
        raise ProtocolError(f"Cannot decode {reply_type.__name__}: {exc}", data) from exc


def _status_name(status: int) -> str:
    try:
        return Status(status).name
    except ValueError:
        return str(status)


#   .--Client--------------------------------------------------------------.


class Exchanger(Protocol):
    def exchange(self, request: bytes) -> bytes: ...


class ChronyClient:
    """Single flight client: one request, one reply, no pipelining"""

    def __init__(self, connection: Exchanger, *, sequence: int = 1) -> None:
        self._connection: Final = connection
        self._sequences: Iterator[int] = _count(sequence)

    def communicate(self, request: Request) -> Reply:
        sequence = next(self._sequences)
        logger.debug("Request #%d: %r", sequence, request)
        raw = self._connection.exchange(request.encode(sequence))
        header, reply = decode_reply(raw)

        if header.sequence != sequence:
            raise ProtocolError(
                f"Unexpected sequence number {header.sequence} (expected {sequence})", raw
            )
        if header.kind != request.reply_kind:
            raise ProtocolError(
                f"Unexpected reply {_kind_name(header.kind)} to {type(request).__name__}", raw
            )
        logger.log(VERBOSE, "Reply #%d: %r", sequence, reply)
        return reply

    def query_tracking(self) -> TrackingStatus:
        reply = self.communicate(TrackingRequest())
        assert isinstance(reply, TrackingReply)
        return reply.tracking

    def query_source_count(self) -> int:
        reply = self.communicate(SourceCountRequest())
        assert isinstance(reply, SourceCountReply)
        return reply.count

    def query_source_data(self, index: int) -> SourceRecord:
        reply = self.communicate(SourceDataRequest(index))
        assert isinstance(reply, SourceDataReply)
        return reply.source


def _count(start: int) -> Iterator[int]:
    sequence = start
    while True:
        yield sequence
        sequence = (sequence + 1) & 0xFFFFFFFF or 1


def _kind_name(kind: int) -> str:
    try:
        return ReplyKind(kind).name
    except ValueError:
        return str(kind)
