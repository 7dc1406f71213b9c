#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Exceptions of the chrony check.

Everything raised here happens before a snapshot could be evaluated and ends
the check with state UNKNOWN."""

__all__ = [
    "ConfigError",
    "ConnectError",
    "MKChronyError",
    "ProtocolError",
    "ReplyTimeoutError",
    "SocketPermissionError",
    "TransportError",
]


# never used directly in the code. Just some wrapper to make all of our
# exceptions handleable with one call
class MKChronyError(Exception):
    pass


class ConfigError(MKChronyError):
    """The configuration can not be used, e.g. the socket path is no socket."""


class TransportError(MKChronyError):
    """An exception common to the local datagram transport."""


class ConnectError(TransportError):
    pass


class ReplyTimeoutError(TransportError):
    """No reply arrived within the deadline of one exchange."""


class SocketPermissionError(TransportError):
    """The local endpoint could not be made accessible for the daemon."""


class ProtocolError(MKChronyError):
    """A reply does not match the outstanding request or can not be decoded.

    The raw reply is kept for diagnostics.
    """

    def __init__(self, message: str, payload: bytes = b"") -> None:
        super().__init__(message)
        self.payload = payload

    def __str__(self) -> str:
        if not self.payload:
            return super().__str__()
        return f"{super().__str__()} (payload: {self.payload[:64].hex()})"
