"""Forward one accepted sub-connection to the service it names."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Any

from .addresses import TCPAddress, UDPAddress, UnixAddress
from .frame import Proto
from .tcp_proxy import handle_tcp_connection
from .udp_proxy import UDP_BUF_SIZE, DefaultUDPDialer
from .unix_proxy import handle_unix_connection

log = logging.getLogger(__name__)

_TCP = Proto(1)
_UDP = Proto(2)
_UNIX = Proto(3)
_POLL_INTERVAL = 0.1


def _host(ip: Any) -> str:
    """Return the textual form of a destination IP address."""
    if ip is None or ip == b"" or ip == "":
        return ""
    if isinstance(ip, (bytes, bytearray)):
        ip = ipaddress.ip_address(bytes(ip))
    elif not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = ipaddress.ip_address(str(ip))
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _forward_udp(conn: Any, destination: Any, quit: threading.Event | None) -> None:
    backend_addr = UDPAddress(_host(destination.ip), destination.port)
    try:
        inside = DefaultUDPDialer().dial(backend_addr)
    except OSError as exc:
        log.warning("failed to dial UDP backend for %s: %s", backend_addr, exc)
        return
    log.info("accepted UDP connection to %s", backend_addr)
    inside.settimeout(_POLL_INTERVAL)
    stop = threading.Event()
    finished = threading.Event()

    def from_backend() -> None:
        try:
            while not stop.is_set():
                try:
                    data = inside.recv(UDP_BUF_SIZE)
                except TimeoutError:
                    continue
                conn.write(data)
        except (OSError, EOFError, ValueError) as exc:
            if not stop.is_set():
                log.info("from %s to host: unable to copy UDP: %s", backend_addr, exc)
        finally:
            finished.set()

    def to_backend() -> None:
        try:
            while not stop.is_set():
                data = conn.read(UDP_BUF_SIZE)
                if not data:
                    log.info("from host to %s: end of stream", backend_addr)
                    return
                inside.send(data)
        except (OSError, EOFError, ValueError) as exc:
            if not stop.is_set():
                log.info("from host to %s: unable to copy UDP: %s", backend_addr, exc)
        finally:
            finished.set()

    for target in (from_backend, to_backend):
        threading.Thread(target=target, daemon=True).start()

    while not finished.is_set():
        if quit is not None and quit.is_set():
            break
        finished.wait(_POLL_INTERVAL)
    log.info("closing UDP connection to %s", backend_addr)
    stop.set()
    inside.close()


def forward(conn: Any, destination: Any, quit: threading.Event | None = None) -> None:
    """Connect ``conn`` to ``destination`` until either side finishes.

    ``conn`` is closed afterwards. Failures are logged, not raised.
    """
    try:
        proto = destination.proto
        if proto == _TCP:
            backend_addr = TCPAddress(_host(destination.ip), destination.port)
            try:
                handle_tcp_connection(conn, backend_addr, quit)
            except OSError as exc:
                log.warning("closing TCP proxy because %s", exc)
        elif proto == _UNIX:
            try:
                handle_unix_connection(conn, UnixAddress(destination.path), quit)
            except OSError as exc:
                log.warning("closing Unix proxy because %s", exc)
        elif proto == _UDP:
            _forward_udp(conn, destination, quit)
        else:
            log.warning("unknown protocol: %s", proto)
    finally:
        try:
            conn.close()
        except OSError as exc:
            log.debug("error closing connection: %s", exc)