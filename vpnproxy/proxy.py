"""Create proxies that forward between a frontend and a backend address."""

from __future__ import annotations

import errno
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Union

from .addresses import TCPAddress, UDPAddress, UnixAddress
from .tcp_proxy import TCPProxy
from .udp_proxy import UDPProxy
from .unix_proxy import UnixProxy

log = logging.getLogger(__name__)

AnyProxy = Union[TCPProxy, UDPProxy, UnixProxy, "StubProxy"]


@dataclass
class StubProxy:
    """A proxy that forwards nothing; it only records being run and closed."""

    frontend_addr: Any
    backend_addr: Any
    running: bool = field(default=False, init=False)
    closed: bool = field(default=False, init=False)

    def run(self) -> None:
        """Mark the proxy as running; no traffic is forwarded."""
        self.running = True

    def close(self) -> None:
        """Mark the proxy as stopped."""
        self.running = False
        self.closed = True


def _listen(family: int, sockaddr: Any) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name == "posix" and family != getattr(socket, "AF_UNIX", None):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen()
    except BaseException:
        sock.close()
        raise
    return sock


def _bind_udp(addr: UDPAddress) -> socket.socket:
    sock = socket.socket(addr.family, socket.SOCK_DGRAM)
    try:
        sock.bind(addr.sockaddr())
    except BaseException:
        sock.close()
        raise
    return sock


def _require(backend_addr: Any, kind: type) -> None:
    if not isinstance(backend_addr, kind):
        raise TypeError(
            f"backend address must be a {kind.__name__}, not {type(backend_addr).__name__}"
        )


def new_ip_proxy(frontend_addr: Any, backend_addr: Any) -> AnyProxy:
    """Listen on ``frontend_addr`` and return a proxy to ``backend_addr``."""
    if isinstance(frontend_addr, UDPAddress):
        _require(backend_addr, UDPAddress)
        sock = _bind_udp(frontend_addr)
        return UDPProxy(UDPAddress.from_sockaddr(sock.getsockname()), sock, backend_addr, None)
    if isinstance(frontend_addr, TCPAddress):
        _require(backend_addr, TCPAddress)
        return TCPProxy(_listen(frontend_addr.family, frontend_addr.sockaddr()), backend_addr)
    if isinstance(frontend_addr, UnixAddress):
        _require(backend_addr, UnixAddress)
        return UnixProxy(_listen(socket.AF_UNIX, frontend_addr.sockaddr()), backend_addr)
    raise TypeError("unsupported protocol")


def new_best_effort_ip_proxy(host: Any, container: Any) -> AnyProxy | None:
    """Like new_ip_proxy, but return None if ``host`` is not a local address.

    Software that listens on every address and then connects from a
    container to the external port expects this to succeed even where the
    address exists only outside this machine.
    """
    try:
        return new_ip_proxy(host, container)
    except OSError as exc:
        if exc.errno == errno.EADDRNOTAVAIL:
            log.info("address %s doesn't exist in the VM: only binding on the host", host)
            return None
        raise