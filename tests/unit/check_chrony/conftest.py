#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import datetime
import ipaddress
import socket
import tempfile
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from check_chrony.models import LeapStatus, SourceMode, SourceRecord, SourceState, TrackingStatus


@pytest.fixture(name="tracking_status")
def fixture_tracking_status() -> TrackingStatus:
    return TrackingStatus(
        ref_id=0xC000020A,
        address=ipaddress.IPv4Address("192.0.2.10"),
        stratum=2,
        leap_status=LeapStatus.NORMAL,
        ref_time=datetime.datetime(2024, 5, 17, 12, 0, 0, tzinfo=datetime.UTC),
        current_correction=0.0001220703125,
        last_offset=-0.0000152587890625,
        rms_offset=0.0000305175781250,
        freq_ppm=-12.5,
        resid_freq_ppm=0.0,
        skew_ppm=0.25,
        root_delay=0.0078125,
        root_dispersion=0.001953125,
        last_update_interval=64.0,
    )


@pytest.fixture(name="source_record")
def fixture_source_record() -> SourceRecord:
    return SourceRecord(
        address=ipaddress.IPv4Address("192.0.2.10"),
        poll=6,
        stratum=1,
        state=SourceState.SYNC,
        mode=SourceMode.CLIENT,
        flags=0,
        reachability=0xFF,
        since_sample=33,
        orig_latest_meas=0.000244140625,
        latest_meas=0.0001220703125,
        latest_meas_err=0.0078125,
    )


@pytest.fixture(name="socket_dir")
def fixture_socket_dir() -> Iterator[Path]:
    # tmp_path may exceed the length limit of unix socket addresses
    with tempfile.TemporaryDirectory(prefix="chrony") as directory:
        yield Path(directory)


class FakeChronyd:
    """Answers datagrams on a unix socket in a background thread"""

    def __init__(self, path: Path, answer: Callable[[bytes], bytes | None]) -> None:
        self.path = path
        self.received: list[bytes] = []
        self.peers: list[str] = []
        self._answer = answer
        self._stop = threading.Event()
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        self._sock.bind(str(path))
        self._sock.settimeout(0.05)
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        self._thread.join(timeout=5)
        self._sock.close()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                data, peer = self._sock.recvfrom(4096)
            except TimeoutError:
                continue
            self.received.append(data)
            self.peers.append(peer)
            if (reply := self._answer(data)) is not None:
                self._sock.sendto(reply, peer)


@pytest.fixture(name="chronyd_socket")
def fixture_chronyd_socket(socket_dir: Path) -> Path:
    return socket_dir / "chronyd.sock"


@pytest.fixture(name="fake_chronyd")
def fixture_fake_chronyd(
    chronyd_socket: Path,
) -> Iterator[Callable[[Callable[[bytes], bytes | None]], FakeChronyd]]:
    daemons: list[FakeChronyd] = []

    def _start(answer: Callable[[bytes], bytes | None]) -> FakeChronyd:
        daemons.append(daemon := FakeChronyd(chronyd_socket, answer))
        return daemon

    yield _start

    for daemon in daemons:
        daemon.stop()
