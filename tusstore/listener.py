"""Listening sockets whose connections apply read and write timeouts.

Every accepted connection is counted in a process-wide gauge of open
connections, which drops again when the connection is closed.
"""

from __future__ import annotations

import contextlib
import os
import socket
import stat
import threading
from typing import Any, Optional

_gauge_lock = threading.Lock()
_open_connections = 0


def _adjust_open_connections(delta: int) -> None:
    global _open_connections
    with _gauge_lock:
        _open_connections += delta


def open_connections() -> int:
    """Return the number of accepted connections that are not closed yet."""
    with _gauge_lock:
        return _open_connections


def _timeout(value: float) -> Optional[float]:
    return value if value > 0 else None


class Conn:
    """A connection that sets a fresh deadline before every read and write.

    Timeouts are in seconds; zero or less means no timeout.
    """

    def __init__(
        self,
        sock: socket.socket,
        read_timeout: float = 0.0,
        write_timeout: float = 0.0,
        remote_address: Any = None,
    ) -> None:
        self.sock = sock
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.remote_address = remote_address
        self._close_recorded = False

    def recv(self, size: int) -> bytes:
        """Receive up to ``size`` bytes; raise TimeoutError after the read timeout."""
        self.sock.settimeout(_timeout(self.read_timeout))
        return self.sock.recv(size)

    def send(self, data: bytes) -> int:
        """Send all of ``data`` and return its length."""
        self.sock.settimeout(_timeout(self.write_timeout))
        self.sock.sendall(data)
        return len(data)

    def close(self) -> None:
        """Close the connection; the gauge is only lowered on the first call."""
        if not self._close_recorded:
            self._close_recorded = True
            _adjust_open_connections(-1)
        self.sock.close()

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Listener:
    """Accepts connections and wraps them in Conn objects with its timeouts."""

    def __init__(
        self,
        sock: socket.socket,
        read_timeout: float = 0.0,
        write_timeout: float = 0.0,
        unlink_path: Optional[str] = None,
    ) -> None:
        self.sock = sock
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._unlink_path = unlink_path

    @property
    def address(self) -> Any:
        """The local address the listener is bound to."""
        return self.sock.getsockname()

    def accept(self) -> Conn:
        """Wait for the next connection."""
        client, remote = self.sock.accept()
        _adjust_open_connections(1)
        return Conn(
            client,
            read_timeout=self.read_timeout,
            write_timeout=self.write_timeout,
            remote_address=remote,
        )

    def close(self) -> None:
        """Stop listening; a UNIX socket file is removed as well."""
        self.sock.close()
        if self._unlink_path is not None:
            with contextlib.suppress(FileNotFoundError):
                os.remove(self._unlink_path)
            self._unlink_path = None

    def __enter__(self) -> "Listener":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {address}")
    if not port:
        return host, 0
    try:
        number = int(port, 10)
    except ValueError:
        raise ValueError(f"invalid port in address {address}") from None
    if not 0 <= number <= 65535:
        raise ValueError(f"invalid port in address {address}")
    return host, number


def new_listener(
    address: str, read_timeout: float, write_timeout: float
) -> Listener:
    """Listen on a TCP ``host:port`` address."""
    host, port = _split_address(address)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.create_server((host, port), family=family)
    return Listener(sock, read_timeout, write_timeout)


def new_unix_listener(
    path: str, read_timeout: float, write_timeout: float
) -> Listener:
    """Listen on a UNIX socket, replacing a stale socket file at ``path``."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        pass
    else:
        if stat.S_ISSOCK(info.st_mode):
            os.remove(path)
        else:
            raise ValueError("specified path is not a socket")

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen()
    except BaseException:
        sock.close()
        raise
    return Listener(sock, read_timeout, write_timeout, unlink_path=path)