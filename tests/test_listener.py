import os
import socket

import pytest

from tusstore.listener import (
    Conn,
    Listener,
    new_listener,
    new_unix_listener,
    open_connections,
)


@pytest.fixture
def tcp_listener():
    listener = new_listener("127.0.0.1:0", 0, 0)
    yield listener
    listener.close()


def _connect(listener: Listener) -> socket.socket:
    return socket.create_connection(("127.0.0.1", listener.address[1]))


def test_accept_counts_connection_and_close_is_recorded_once(tcp_listener):
    before = open_connections()
    client = _connect(tcp_listener)
    try:
        conn = tcp_listener.accept()
        assert isinstance(conn, Conn)
        assert open_connections() == before + 1
        conn.close()
        conn.close()
        assert open_connections() == before
    finally:
        client.close()


def test_send_and_recv_round_trip(tcp_listener):
    client = _connect(tcp_listener)
    try:
        with tcp_listener.accept() as conn:
            client.sendall(b"ping")
            assert conn.recv(4) == b"ping"
            assert conn.send(b"pong") == 4
            assert client.recv(4) == b"pong"
    finally:
        client.close()


def test_zero_timeout_means_blocking(tcp_listener):
    client = _connect(tcp_listener)
    try:
        with tcp_listener.accept() as conn:
            client.sendall(b"data")
            assert conn.recv(4) == b"data"
            assert conn.sock.gettimeout() is None
    finally:
        client.close()


def test_read_timeout_expires():
    listener = new_listener("127.0.0.1:0", 0.05, 0.05)
    client = _connect(listener)
    try:
        with listener.accept() as conn:
            assert conn.read_timeout == 0.05
            with pytest.raises(TimeoutError):
                conn.recv(10)
    finally:
        client.close()
        listener.close()


@pytest.mark.parametrize("address", ["nohost", "127.0.0.1:port", "::1:80"])
def test_invalid_address(address):
    with pytest.raises(ValueError):
        new_listener(address, 0, 0)


def test_unix_listener_rejects_regular_file(tmp_path):
    path = tmp_path / "f"
    path.write_text("x")
    with pytest.raises(ValueError, match="specified path is not a socket"):
        new_unix_listener(str(path), 0, 0)
    assert path.read_text() == "x"


def test_unix_listener_replaces_stale_socket(tmp_path):
    path = str(tmp_path / "s.sock")
    stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    stale.bind(path)
    stale.close()
    assert os.path.exists(path)

    listener = new_unix_listener(path, 0, 0)
    client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        client.connect(path)
        with listener.accept() as conn:
            client.sendall(b"hi")
            assert conn.recv(2) == b"hi"
    finally:
        client.close()
        listener.close()
    assert not os.path.exists(path)