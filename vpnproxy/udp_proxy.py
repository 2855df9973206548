"""Forward UDP datagrams, tracking a backend connection per client."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from .addresses import UDPAddress

log = logging.getLogger(__name__)

UDP_CONN_TRACK_TIMEOUT = 90.0
"""Seconds a client's backend connection lives without replies."""

UDP_BUF_SIZE = 65507
"""Largest datagram the proxy forwards."""

_CLOSED_MESSAGE = "use of closed network connection"
_POLL_INTERVAL = 0.1
_MASK64 = (1 << 64) - 1


@dataclass(frozen=True)
class ConnTrackKey:
    """A client address split into hashable integer fields."""

    ip_high: int
    ip_low: int
    port: int


def conn_track_key(addr: Any) -> ConnTrackKey:
    """Return the tracking key of a UDPAddress or ``(host, port)`` tuple."""
    if isinstance(addr, UDPAddress):
        host, port = addr.host, addr.port
    else:
        host, port = addr[0], addr[1]
    if not host:
        return ConnTrackKey(0, 0, port)
    ip = ipaddress.ip_address(host)
    value = int(ip)
    if ip.version == 4:
        return ConnTrackKey(0, value, port)
    return ConnTrackKey(value >> 64, value & _MASK64, port)


class UDPDialer(Protocol):
    def dial(self, addr: UDPAddress) -> Any: ...


class DefaultUDPDialer:
    """Creates connected UDP sockets."""

    def dial(self, addr: UDPAddress) -> socket.socket:
        sock = socket.socket(addr.family, socket.SOCK_DGRAM)
        try:
            sock.connect(addr.sockaddr())
        except BaseException:
            sock.close()
            raise
        return sock


class _SocketUDPListener:
    """Presents a bound UDP socket as a datagram listener."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._closed = threading.Event()
        sock.settimeout(_POLL_INTERVAL)

    def read_from_udp(self, size: int) -> tuple[bytes, tuple[str, int]]:
        while True:
            if self._closed.is_set():
                raise OSError(_CLOSED_MESSAGE)
            try:
                data, addr = self._sock.recvfrom(size)
            except TimeoutError:
                continue
            except OSError:
                if self._closed.is_set():
                    raise OSError(_CLOSED_MESSAGE) from None
                raise
            return data, (addr[0], addr[1])

    def write_to_udp(self, data: bytes, addr: tuple[str, int]) -> int:
        return self._sock.sendto(data, addr)

    def close(self) -> None:
        self._closed.set()
        self._sock.close()


def _set_read_timeout(conn: Any, seconds: float) -> None:
    if isinstance(conn, socket.socket):
        conn.settimeout(seconds)
    else:
        conn.set_read_deadline(time.monotonic() + seconds)


def _receive(conn: Any, size: int) -> bytes:
    if isinstance(conn, socket.socket):
        return conn.recv(size)
    data = conn.read(size)
    if not data:
        raise EOFError("end of stream")
    return data


def _send(conn: Any, data: bytes) -> None:
    if isinstance(conn, socket.socket):
        conn.send(data)
    else:
        conn.write(data)


def _close_quietly(conn: Any) -> None:
    try:
        conn.close()
    except OSError as exc:
        log.debug("error closing UDP connection: %s", exc)


def _is_closed_error(exc: BaseException) -> bool:
    return str(exc).endswith(_CLOSED_MESSAGE)


class UDPProxy:
    """Forwards datagrams between a frontend listener and a UDP backend.

    The listener is a bound UDP socket or an object with ``read_from_udp``,
    ``write_to_udp`` and ``close``.
    """

    def __init__(
        self,
        frontend_addr: Any,
        listener: Any,
        backend_addr: UDPAddress,
        dialer: UDPDialer | None = None,
    ) -> None:
        if isinstance(listener, socket.socket):
            listener = _SocketUDPListener(listener)
        self._listener = listener
        self.frontend_addr = frontend_addr
        self.backend_addr = backend_addr
        self._dialer = dialer if dialer is not None else DefaultUDPDialer()
        self._table: dict[ConnTrackKey, Any] = {}
        self._lock = threading.Lock()

    def _reply_loop(self, proxy_conn: Any, client_addr: Any, key: ConnTrackKey) -> None:
        try:
            while True:
                _set_read_timeout(proxy_conn, UDP_CONN_TRACK_TIMEOUT)
                while True:
                    try:
                        data = _receive(proxy_conn, UDP_BUF_SIZE)
                    except ConnectionRefusedError:
                        # An earlier write found nothing listening on the
                        # backend; keep waiting until the timeout expires.
                        continue
                    break
                self._listener.write_to_udp(data, client_addr)
        except (OSError, EOFError, ValueError):
            return
        finally:
            with self._lock:
                if self._table.get(key) is proxy_conn:
                    del self._table[key]
            _close_quietly(proxy_conn)

    def _forward(self, proxy_conn: Any, data: bytes) -> None:
        try:
            try:
                _send(proxy_conn, data)
            except ConnectionRefusedError:
                # The error belongs to an earlier datagram.
                _send(proxy_conn, data)
        except (OSError, EOFError) as exc:
            log.warning("can't proxy a datagram to udp/%s: %s", self.backend_addr, exc)

    def run(self) -> None:
        """Forward datagrams until the listener is closed or fails."""
        while True:
            try:
                data, from_addr = self._listener.read_from_udp(UDP_BUF_SIZE)
            except (OSError, EOFError, ValueError) as exc:
                if not _is_closed_error(exc):
                    log.warning(
                        "stopping proxy on %s for udp/%s (%s)",
                        self.frontend_addr, self.backend_addr, exc,
                    )
                break
            key = conn_track_key(from_addr)
            with self._lock:
                proxy_conn = self._table.get(key)
                if proxy_conn is None:
                    try:
                        proxy_conn = self._dialer.dial(self.backend_addr)
                    except OSError as exc:
                        log.warning("can't proxy a datagram to udp/%s: %s", self.backend_addr, exc)
                        continue
                    self._table[key] = proxy_conn
                    threading.Thread(
                        target=self._reply_loop,
                        args=(proxy_conn, from_addr, key),
                        daemon=True,
                    ).start()
            self._forward(proxy_conn, data)

    def close(self) -> None:
        """Stop forwarding and close every tracked backend connection."""
        self._listener.close()
        with self._lock:
            conns = list(self._table.values())
        for conn in conns:
            _close_quietly(conn)