import socket
import threading
import time
from types import SimpleNamespace

import pytest

from vpnproxy.forward import forward
from vpnproxy.frame import Proto
from vpnproxy.loopback import Loopback
from vpnproxy.udp_encapsulation import UDPEncapsulator


def _serve_stream_echo(server: socket.socket) -> None:
    client, _ = server.accept()
    with client:
        received = b""
        while True:
            chunk = client.recv(4096)
            if not chunk:
                break
            received += chunk
        client.sendall(received)


def _read_all(conn, timeout=5.0) -> bytes:
    conn.set_read_deadline(time.monotonic() + timeout)
    result = b""
    while True:
        chunk = conn.read(4096)
        if not chunk:
            return result
        result += chunk


def _run_forward(conn, destination, quit=None) -> threading.Thread:
    thread = threading.Thread(target=forward, args=(conn, destination, quit), daemon=True)
    thread.start()
    return thread


def test_tcp_forward_echoes():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen()
    port = server.getsockname()[1]
    threading.Thread(target=_serve_stream_echo, args=(server,), daemon=True).start()

    local = Loopback()
    destination = SimpleNamespace(proto=Proto(1), ip="127.0.0.1", port=port, path="")
    thread = _run_forward(local.other_end(), destination)
    local.write(b"hello")
    local.close_write()
    assert _read_all(local) == b"hello"
    thread.join(5)
    assert not thread.is_alive()
    server.close()


def test_unix_forward_echoes(tmp_path):
    path = str(tmp_path / "echo.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(path)
    server.listen()
    threading.Thread(target=_serve_stream_echo, args=(server,), daemon=True).start()

    local = Loopback()
    destination = SimpleNamespace(proto=Proto(3), ip=None, port=0, path=path)
    thread = _run_forward(local.other_end(), destination)
    local.write(b"unix data")
    local.close_write()
    assert _read_all(local) == b"unix data"
    thread.join(5)
    assert not thread.is_alive()
    server.close()


def test_udp_forward_echoes_and_quits():
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    port = server.getsockname()[1]

    def echo() -> None:
        data, addr = server.recvfrom(2048)
        server.sendto(data, addr)

    threading.Thread(target=echo, daemon=True).start()

    loopback = Loopback()
    local = UDPEncapsulator(loopback)
    remote = UDPEncapsulator(loopback.other_end())
    quit = threading.Event()
    destination = SimpleNamespace(proto=Proto(2), ip="127.0.0.1", port=port, path="")
    thread = _run_forward(remote, destination, quit)

    local.write(b"ping")
    local.set_read_deadline(time.monotonic() + 5)
    assert local.read(2048) == b"ping"

    quit.set()
    thread.join(5)
    assert not thread.is_alive()
    server.close()


def test_unknown_protocol_closes_connection():
    local = Loopback()
    destination = SimpleNamespace(proto=None, ip=None, port=0, path="")
    forward(local.other_end(), destination)
    local.set_read_deadline(time.monotonic() + 2)
    assert local.read(10) == b""
    with pytest.raises(EOFError):
        local.other_end().write(b"x")


def test_refused_tcp_backend_closes_connection():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    local = Loopback()
    destination = SimpleNamespace(proto=Proto(1), ip="127.0.0.1", port=port, path="")
    forward(local.other_end(), destination)
    assert _read_all(local, timeout=2) == b""