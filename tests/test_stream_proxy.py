import socket
import threading

import pytest

from vpnproxy.loopback import Loopback
from vpnproxy.stream_proxy import proxy_stream


def _read_all(conn):
    chunks = []
    while True:
        chunk = conn.read(4096)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def _recv_all(sock):
    chunks = []
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def test_copies_both_directions():
    client = Loopback()
    client_peer = client.other_end()
    backend = Loopback()
    backend_peer = backend.other_end()
    client_peer.write(b"hello")
    client_peer.close_write()
    backend_peer.write(b"world")
    backend_peer.close_write()

    total = proxy_stream(client, backend, threading.Event())

    assert total == len(b"hello") + len(b"world")
    assert _read_all(backend_peer) == b"hello"
    assert _read_all(client_peer) == b"world"


def test_backend_is_closed_afterwards():
    client = Loopback()
    client_peer = client.other_end()
    backend = Loopback()
    backend_peer = backend.other_end()
    client_peer.close_write()
    backend_peer.close_write()

    proxy_stream(client, backend)

    with pytest.raises(EOFError):
        backend.write(b"late")


def test_works_with_sockets():
    near, far = socket.socketpair()
    backend = Loopback()
    backend_peer = backend.other_end()
    try:
        far.sendall(b"ping")
        far.shutdown(socket.SHUT_WR)
        backend_peer.write(b"pong")
        backend_peer.close_write()

        total = proxy_stream(near, backend, threading.Event())

        assert total == len(b"ping") + len(b"pong")
        assert _recv_all(far) == b"pong"
        assert _read_all(backend_peer) == b"ping"
    finally:
        near.close()
        far.close()


def test_quit_interrupts_proxy():
    client = Loopback()
    client_peer = client.other_end()
    backend = Loopback()
    backend_peer = backend.other_end()
    client_peer.write(b"abc")
    client_peer.close_write()
    quit = threading.Event()
    quit.set()

    worker = threading.Thread(target=proxy_stream, args=(client, backend, quit))
    worker.start()
    worker.join(5)

    assert not worker.is_alive()
    assert _read_all(client_peer) == b""
    with pytest.raises(EOFError):
        backend_peer.write(b"x")