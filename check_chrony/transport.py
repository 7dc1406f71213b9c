#!/usr/bin/env python3
# Copyright (C) 2024 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Datagram connection to the command socket of chronyd

chronyd answers to the address of the requesting socket, so the client has to
bind a socket file of its own. It lives next to the daemon's socket and is
removed again when the connection is closed.
"""

from __future__ import annotations

import os
import socket
from pathlib import Path
from types import TracebackType
from typing import Final

from .exceptions import ConnectError, ReplyTimeoutError, SocketPermissionError
from .log import logger

__all__ = ["Connection", "DEFAULT_TIMEOUT", "local_socket_path"]

DEFAULT_TIMEOUT: Final = 1.0

# Larger than any reply of the commands we send
_RECV_SIZE: Final = 4096


def local_socket_path(target: Path, pid: int | None = None) -> Path:
    """
    >>> local_socket_path(Path("/var/run/chrony/chronyd.sock"), pid=42)
    PosixPath('/var/run/chrony/client.42.sock')
    """
    return target.parent / f"client.{os.getpid() if pid is None else pid}.sock"


class Connection:
    def __init__(self, target: Path, local: Path, sock: socket.socket) -> None:
        self.target: Final = target
        self.local: Final = local
        self._socket: socket.socket | None = sock

    def __repr__(self) -> str:
        return "%s(%r, %r)" % (type(self).__name__, str(self.target), str(self.local))

    def __enter__(self) -> Connection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @classmethod
    def open(cls, target: Path, *, timeout: float = DEFAULT_TIMEOUT) -> Connection:
        local = local_socket_path(target)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        bound = False
        try:
            try:
                sock.bind(str(local))
            except OSError as e:
                raise ConnectError(f"Cannot bind local socket {local}: {e}") from e
            bound = True

            try:
                # The daemon may run as another user and has to be able to reply
                os.chmod(local, 0o666)
            except OSError as e:
                raise SocketPermissionError(f"Cannot chmod 0666 {local}: {e}") from e

            try:
                sock.connect(str(target))
            except OSError as e:
                raise ConnectError(f"Cannot connect to {target}: {e}") from e

            sock.settimeout(timeout)
        except BaseException:
            sock.close()
            if bound:
                _unlink(local)
            raise

        logger.debug("Connected %s to %s", local, target)
        return cls(target, local, sock)

    def exchange(self, request: bytes) -> bytes:
        if self._socket is None:
            raise ConnectError(f"Connection to {self.target} is closed")
        try:
            self._socket.send(request)
            return self._socket.recv(_RECV_SIZE)
        except TimeoutError as e:
            raise ReplyTimeoutError(
                f"No reply from {self.target} within {self._socket.gettimeout()} s"
            ) from e
        except OSError as e:
            raise ConnectError(f"Cannot communicate with {self.target}: {e}") from e

    def close(self) -> None:
        if self._socket is None:
            return
        self._socket.close()
        self._socket = None
        _unlink(self.local)
        logger.debug("Removed %s", self.local)


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
