import socket
import threading

import pytest

from vpnproxy.addresses import TCPAddress
from vpnproxy.tcp_proxy import TCPProxy, handle_tcp_connection

MESSAGE = b"Buffalo buffalo Buffalo buffalo buffalo buffalo Buffalo buffalo"


def _echo(conn):
    with conn:
        while True:
            data = conn.recv(4096)
            if not data:
                break
            conn.sendall(data)


def _serve(listener):
    while True:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        threading.Thread(target=_echo, args=(conn,), daemon=True).start()


@pytest.fixture
def echo_backend():
    listener = socket.create_server(("127.0.0.1", 0))
    threading.Thread(target=_serve, args=(listener,), daemon=True).start()
    yield TCPAddress.from_sockaddr(listener.getsockname())
    listener.close()


def _read_until_eof(conn):
    chunks = []
    while True:
        data = conn.recv(4096)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_proxy_forwards_to_backend(echo_backend):
    listener = socket.create_server(("127.0.0.1", 0))
    proxy = TCPProxy(listener, echo_backend)
    runner = threading.Thread(target=proxy.run, daemon=True)
    runner.start()
    try:
        with socket.create_connection(proxy.frontend_addr.sockaddr(), timeout=10) as client:
            client.sendall(MESSAGE)
            client.shutdown(socket.SHUT_WR)
            assert _read_until_eof(client) == MESSAGE
    finally:
        proxy.close()
    runner.join(5)
    assert not runner.is_alive()


def test_frontend_address_is_the_listening_address(echo_backend):
    listener = socket.create_server(("127.0.0.1", 0))
    proxy = TCPProxy(listener, echo_backend)
    try:
        assert proxy.frontend_addr.sockaddr() == listener.getsockname()
        assert proxy.backend_addr == echo_backend
    finally:
        proxy.close()


def test_handle_connection_returns_bytes_copied(echo_backend):
    near, far = socket.socketpair()
    near.settimeout(10)
    received = []

    def client_side():
        near.sendall(MESSAGE)
        near.shutdown(socket.SHUT_WR)
        received.append(_read_until_eof(near))

    worker = threading.Thread(target=client_side, daemon=True)
    worker.start()
    copied = handle_tcp_connection(far, echo_backend)
    assert copied == 2 * len(MESSAGE)
    worker.join(10)
    assert received == [MESSAGE]
    near.close()
    far.close()


def test_handle_connection_refused():
    near, far = socket.socketpair()
    with near, far:
        with pytest.raises(ConnectionRefusedError):
            handle_tcp_connection(far, TCPAddress("127.0.0.1", _free_port()))