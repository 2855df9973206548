"""UDP datagrams framed inside a reliable stream connection."""

from __future__ import annotations

import io
import ipaddress
import struct
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Address = Tuple[str, int]

_U16 = struct.Struct("<H")


def _read_exact(reader: BinaryIO, count: int) -> bytes:
    """Read exactly ``count`` bytes or raise EOFError."""
    chunks = []
    remaining = count
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            raise EOFError("end of stream")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _write_all(writer: Any, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = writer.write(bytes(view))
        if written is None or written >= len(view):
            return
        if written <= 0:
            raise OSError("short write")
        view = view[written:]


def _split_host(host: Any) -> tuple[IPAddress | None, str]:
    if host is None or host == "":
        return None, ""
    if isinstance(host, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return host, ""
    zone = ""
    if "%" in host:
        host, zone = host.split("%", 1)
    return ipaddress.ip_address(host), zone


def _format_host(ip: IPAddress | None, zone: str) -> str:
    if ip is None:
        return ""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        text = str(ip.ipv4_mapped)
    else:
        text = str(ip)
    return f"{text}%{zone}" if zone else text


def _unsupported_buffer(operation: str, size: int) -> io.UnsupportedOperation:
    if size < 0:
        raise ValueError(f"buffer size {size} must not be negative")
    return io.UnsupportedOperation(f"UDPEncapsulator.{operation} not supported")


@dataclass(frozen=True)
class UDPDatagram:
    """A datagram with the address it came from or is going to."""

    payload: bytes
    ip: Optional[IPAddress] = None
    port: int = 0
    zone: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", bytes(self.payload))
        if self.ip is not None and not isinstance(
            self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)
        ):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port {self.port} out of range")

    def _encode(self) -> bytes:
        raw_ip = self.ip.packed if self.ip is not None else b""
        zone = self.zone.encode("utf-8")
        if len(self.payload) > 0xFFFF or len(zone) > 0xFFFF:
            raise ValueError("datagram too large to encapsulate")
        header = (
            _U16.pack(len(raw_ip))
            + raw_ip
            + struct.pack("<HH", self.port, len(zone))
            + zone
            + _U16.pack(len(self.payload))
        )
        total = 2 + len(header) + len(self.payload)
        if total > 0xFFFF:
            raise ValueError("datagram too large to encapsulate")
        return _U16.pack(total) + header + self.payload

    def marshal(self, writer: Any) -> None:
        """Write the framed datagram to ``writer``."""
        _write_all(writer, self._encode())


def read_datagram(reader: Any) -> UDPDatagram:
    """Read one framed datagram.

    Raise EOFError if the stream ends cleanly before the datagram starts and
    ValueError if it ends part way through.
    """
    _read_exact(reader, 2)  # total frame length, implied by the fields
    try:
        (ip_len,) = _U16.unpack(_read_exact(reader, 2))
        raw_ip = _read_exact(reader, ip_len)
        port, zone_len = struct.unpack("<HH", _read_exact(reader, 4))
        zone = _read_exact(reader, zone_len).decode("utf-8", errors="replace")
        (payload_len,) = _U16.unpack(_read_exact(reader, 2))
        payload = _read_exact(reader, payload_len)
    except EOFError as exc:
        raise ValueError("truncated UDP datagram") from exc
    ip = ipaddress.ip_address(raw_ip) if raw_ip else None
    return UDPDatagram(payload, ip, port, zone)


class UDPEncapsulator:
    """Reads and writes datagrams framed within a stream connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self.addr: Address | None = None
        self.write_shutdown_requested = False

    def read_from_udp(self, size: int) -> tuple[bytes, Address]:
        """Return the next datagram and its ``(host, port)`` address."""
        with self._read_lock:
            datagram = read_datagram(self._conn)
        if len(datagram.payload) > size:
            raise ValueError(
                f"datagram of {len(datagram.payload)} bytes exceeds buffer of {size}"
            )
        return datagram.payload, (_format_host(datagram.ip, datagram.zone), datagram.port)

    def write_to_udp(self, data: bytes, addr: Address | None) -> int:
        """Send ``data`` labelled with ``addr``; return the payload length."""
        host, port = addr if addr is not None else ("", 0)
        ip, zone = _split_host(host)
        datagram = UDPDatagram(bytes(data), ip, port, zone)
        with self._write_lock:
            datagram.marshal(self._conn)
        return len(data)

    def read(self, size: int) -> bytes:
        """Return the next datagram's payload, ``b""`` at end of stream."""
        try:
            data, _addr = self.read_from_udp(size)
        except EOFError:
            return b""
        return data

    def write(self, data: bytes) -> int:
        return self.write_to_udp(data, None)

    def close(self) -> None:
        self._conn.close()

    def close_write(self) -> None:
        """Note the request; datagrams have no half-close, so writes go on."""
        self.write_shutdown_requested = True

    def set_deadline(self, deadline: float | None) -> None:
        self._conn.set_deadline(deadline)

    def set_read_deadline(self, deadline: float | None) -> None:
        self._conn.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: float | None) -> None:
        self._conn.set_write_deadline(deadline)

    def set_read_buffer(self, size: int) -> None:
        """Always raise: buffer sizes cannot be changed on datagram framing."""
        error = _unsupported_buffer("set_read_buffer", size)
        raise error

    def set_write_buffer(self, size: int) -> None:
        """Always raise: buffer sizes cannot be changed on datagram framing."""
        error = _unsupported_buffer("set_write_buffer", size)
        raise error

    def connect(self, addr: Address) -> None:
        self.addr = addr

    def __enter__(self) -> UDPEncapsulator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()