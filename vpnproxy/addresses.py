"""Addresses of proxy frontends and backends."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Any, ClassVar


def _normalise_host(host: Any) -> str:
    if host is None:
        return ""
    if isinstance(host, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return str(host)
    if not isinstance(host, str):
        raise TypeError(f"host must be a string or an IP address, not {type(host).__name__}")
    if host == "":
        return ""
    text = host[1:-1] if host.startswith("[") and host.endswith("]") else host
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        raise ValueError(f"invalid IP address {host!r}") from None


@dataclass(frozen=True)
class _InternetAddress:
    """An IP address and port; an empty host means every local address."""

    host: str = ""
    port: int = 0

    network: ClassVar[str] = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "host", _normalise_host(self.host))
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise TypeError(f"port must be an integer, not {type(self.port).__name__}")
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port {self.port} out of range")

    @property
    def family(self) -> int:
        """Return the socket address family matching the host."""
        return socket.AF_INET6 if ":" in self.host else socket.AF_INET

    def sockaddr(self) -> tuple[str, int]:
        """Return the address in the form the socket module takes."""
        return (self.host, self.port)

    @classmethod
    def from_sockaddr(cls, sockaddr: Any):
        """Build an address from a socket-module address tuple."""
        return cls(sockaddr[0], sockaddr[1])

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(frozen=True)
class TCPAddress(_InternetAddress):
    """Address of a TCP endpoint."""

    network: ClassVar[str] = "tcp"


@dataclass(frozen=True)
class UDPAddress(_InternetAddress):
    """Address of a UDP endpoint."""

    network: ClassVar[str] = "udp"


@dataclass(frozen=True)
class UnixAddress:
    """Path of a Unix domain stream socket."""

    path: str

    network: ClassVar[str] = "unix"

    @property
    def family(self) -> int:
        return socket.AF_UNIX

    def sockaddr(self) -> str:
        return self.path

    @classmethod
    def from_sockaddr(cls, sockaddr: Any) -> UnixAddress:
        if isinstance(sockaddr, bytes):
            sockaddr = sockaddr.decode("utf-8", errors="surrogateescape")
        return cls(sockaddr)

    def __str__(self) -> str:
        return self.path