#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from pathlib import Path

from .log import logger, VERBOSE
from .models import Snapshot
from .protocol import ChronyClient
from .transport import Connection, DEFAULT_TIMEOUT

__all__ = ["collect_snapshot", "fetch_snapshot"]


def collect_snapshot(client: ChronyClient) -> Snapshot:
    """Query tracking, the number of sources and every source, in this order

    Errors are not handled here: either all queries succeed or there is no
    snapshot at all.
    """
    tracking = client.query_tracking()
    count = client.query_source_count()
    logger.log(VERBOSE, "Tracking %s, %d sources", tracking.address, count)
    sources = tuple(client.query_source_data(index) for index in range(count))
    return Snapshot(tracking=tracking, sources=sources)


def fetch_snapshot(socket_path: Path, *, timeout: float = DEFAULT_TIMEOUT) -> Snapshot:
    with Connection.open(socket_path, timeout=timeout) as connection:
        return collect_snapshot(ChronyClient(connection))
