#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Status data reported by the chrony daemon"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import ipaddress
import json
from collections.abc import Sequence
from typing import Any

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

UNSPECIFIED_ADDRESS: IPAddress = ipaddress.IPv6Address("::")


class SourceState(enum.IntEnum):
    SYNC = 0
    UNREACH = 1
    FALSETICKER = 2
    JITTERY = 3
    CANDIDATE = 4
    OUTLIER = 5

    @property
    def is_good(self) -> bool:
        """Only these sources count for the aggregated rules"""
        return self in (SourceState.SYNC, SourceState.CANDIDATE)

    def __str__(self) -> str:
        return self.name.lower()


class SourceMode(enum.IntEnum):
    CLIENT = 0
    PEER = 1
    REFCLOCK = 2


class LeapStatus(enum.IntEnum):
    NORMAL = 0
    INSERT_SECOND = 1
    DELETE_SECOND = 2
    UNSYNCHRONISED = 3


def reachability_percent(mask: int) -> float:
    """Percentage of the last eight polls that got a reply

    >>> reachability_percent(0b11110000)
    50.0
    >>> reachability_percent(0x1FF)
    100.0
    """
    return (mask & 0xFF).bit_count() * 12.5


@dataclasses.dataclass(frozen=True)
class TrackingStatus:
    ref_id: int
    address: IPAddress
    stratum: int
    leap_status: LeapStatus
    ref_time: datetime.datetime
    current_correction: float
    last_offset: float
    rms_offset: float
    freq_ppm: float
    resid_freq_ppm: float
    skew_ppm: float
    root_delay: float
    root_dispersion: float
    last_update_interval: float

    @property
    def has_source(self) -> bool:
        return not self.address.is_unspecified

    @property
    def ref_id_name(self) -> str:
        """The reference ID as chronyc shows it"""
        return "%08X" % self.ref_id


@dataclasses.dataclass(frozen=True)
class SourceRecord:
    address: IPAddress
    poll: int
    stratum: int
    state: SourceState
    mode: SourceMode
    flags: int
    reachability: int
    since_sample: int
    orig_latest_meas: float
    latest_meas: float
    latest_meas_err: float

    @property
    def reachability_percent(self) -> float:
        return reachability_percent(self.reachability)


@dataclasses.dataclass(frozen=True)
class Snapshot:
    tracking: TrackingStatus
    sources: Sequence[SourceRecord]

    def serialize(self) -> str:
        return json.dumps(
            dataclasses.asdict(self, dict_factory=lambda items: {k: _plain(v) for k, v in items}),
            indent=2,
        )


def _plain(value: Any) -> Any:
    # IntEnums would otherwise end up as bare numbers in the dump
    if isinstance(value, enum.Enum):
        return value.name
    if isinstance(value, ipaddress.IPv4Address | ipaddress.IPv6Address):
        return str(value)
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    return value
