"""Wire format of the frames exchanged by the connection multiplexer."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_HEADER = struct.Struct("<HBI")


def _read_exact(reader: BinaryIO, count: int) -> bytes:
    """Read exactly ``count`` bytes or raise EOFError."""
    chunks = []
    remaining = count
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            if remaining == count:
                raise EOFError("end of stream")
            raise EOFError("unexpected end of stream")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class Proto(IntEnum):
    """Protocol of a proxied flow."""

    TCP = 1
    UDP = 2
    UNIX = 3


_PROTO_NAMES = {Proto.TCP: "TCP", Proto.UDP: "UDP", Proto.UNIX: "Unix"}


def _format_ip(ip: IPAddress) -> str:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


@dataclass(frozen=True)
class Destination:
    """A listening TCP, UDP or Unix domain socket service."""

    proto: Proto
    ip: IPAddress | None = None
    port: int = 0
    path: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "proto", Proto(self.proto))
        if self.ip is not None and not isinstance(
            self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)
        ):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        if self.proto in (Proto.TCP, Proto.UDP) and self.ip is None:
            raise ValueError(f"{_PROTO_NAMES[self.proto]} destination needs an IP address")
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port {self.port} out of range")

    def _encode(self) -> bytes:
        if self.proto in (Proto.TCP, Proto.UDP):
            packed = self.ip.packed
            return (
                struct.pack("<BH", self.proto, len(packed))
                + packed
                + struct.pack("<H", self.port)
            )
        path = self.path.encode("utf-8", errors="surrogateescape")
        return struct.pack("<BH", self.proto, len(path)) + path

    def write(self, writer: BinaryIO) -> None:
        """Serialise the destination to ``writer``."""
        writer.write(self._encode())

    def size(self) -> int:
        """Return the marshalled size in bytes."""
        if self.proto in (Proto.TCP, Proto.UDP):
            return 1 + 2 + len(self.ip.packed) + 2
        return 1 + 2 + len(self.path.encode("utf-8", errors="surrogateescape"))

    def __str__(self) -> str:
        if self.proto is Proto.UNIX:
            return f"Unix:{self.path}"
        return f"{_PROTO_NAMES[self.proto]}:{_format_ip(self.ip)}:{self.port}"


def read_destination(reader: BinaryIO) -> Destination:
    """Read a destination header describing the protocol and address."""
    proto = Proto(_read_exact(reader, 1)[0])
    (length,) = struct.unpack("<H", _read_exact(reader, 2))
    if proto is Proto.UNIX:
        path = _read_exact(reader, length).decode("utf-8", errors="surrogateescape")
        return Destination(proto, path=path)
    ip = ipaddress.ip_address(_read_exact(reader, length))
    (port,) = struct.unpack("<H", _read_exact(reader, 2))
    return Destination(proto, ip=ip, port=port)


class Connection(IntEnum):
    """Whether an opened connection is dedicated or multiplexed."""

    DEDICATED = 1
    MULTIPLEXED = 2

    def __str__(self) -> str:
        return "Dedicated" if self is Connection.DEDICATED else "Multiplexed"


@dataclass(frozen=True)
class OpenFrame:
    """Request to connect to a proxy backend."""

    connection: Connection
    destination: Destination

    def _encode(self) -> bytes:
        return struct.pack("<B", self.connection) + self.destination._encode()

    def write(self, writer: BinaryIO) -> None:
        """Serialise the open payload to ``writer``."""
        writer.write(self._encode())

    def size(self) -> int:
        """Return the marshalled size in bytes."""
        return 1 + self.destination.size()


def read_open(reader: BinaryIO) -> OpenFrame:
    """Read the payload of an Open frame."""
    connection = Connection(_read_exact(reader, 1)[0])
    return OpenFrame(connection, read_destination(reader))


@dataclass(frozen=True)
class CloseFrame:
    """Request to disconnect from a proxy backend."""

    def _encode(self) -> bytes:
        return b""

    def size(self) -> int:
        return 0


@dataclass(frozen=True)
class ShutdownFrame:
    """Request to close the write side of a sub-connection."""

    def _encode(self) -> bytes:
        return b""

    def size(self) -> int:
        return 0


@dataclass(frozen=True)
class DataFrame:
    """Header of a frame carrying user data."""

    payload_len: int

    def _encode(self) -> bytes:
        return struct.pack("<I", self.payload_len)

    def write(self, writer: BinaryIO) -> None:
        """Serialise the data header to ``writer``."""
        writer.write(self._encode())

    def size(self) -> int:
        """Return the marshalled size in bytes."""
        return 4


@dataclass(frozen=True)
class WindowFrame:
    """Window advertisement."""

    seq: int

    def _encode(self) -> bytes:
        return struct.pack("<Q", self.seq)

    def write(self, writer: BinaryIO) -> None:
        """Serialise the window advertisement to ``writer``."""
        writer.write(self._encode())

    def size(self) -> int:
        """Return the marshalled size in bytes."""
        return 8


class Command(IntEnum):
    """Action requested by a frame."""

    OPEN = 1
    CLOSE = 2
    SHUTDOWN = 3
    DATA = 4
    WINDOW = 5


Payload = Union[OpenFrame, CloseFrame, ShutdownFrame, DataFrame, WindowFrame]


@dataclass(frozen=True)
class Frame:
    """Low-level message sent to the multiplexer."""

    command: Command
    channel_id: int
    content: Payload

    def _encode(self) -> bytes:
        return _HEADER.pack(self.size(), self.command, self.channel_id) + self.content._encode()

    def write(self, writer: BinaryIO) -> None:
        """Serialise the frame, including its length prefix, to ``writer``."""
        writer.write(self._encode())

    def size(self) -> int:
        """Return the marshalled size, including the length field."""
        return _HEADER.size + self.content.size()

    def payload(self) -> Payload:
        """Return the command-specific payload."""
        return self.content

    def open(self) -> OpenFrame:
        """Return the Open payload; raise ValueError for other commands."""
        if self.command is not Command.OPEN:
            raise ValueError("frame is not an Open")
        return self.content

    def data(self) -> DataFrame:
        """Return the Data payload; raise ValueError for other commands."""
        if self.command is not Command.DATA:
            raise ValueError("frame is not Data")
        return self.content

    def window(self) -> WindowFrame:
        """Return the Window payload; raise ValueError for other commands."""
        if self.command is not Command.WINDOW:
            raise ValueError("frame is not a Window")
        return self.content

    def __str__(self) -> str:
        if self.command is Command.OPEN:
            return f"{self.channel_id} Open {self.content.connection} {self.content.destination}"
        if self.command is Command.CLOSE:
            return f"{self.channel_id} Close"
        if self.command is Command.SHUTDOWN:
            return f"{self.channel_id} Shutdown"
        if self.command is Command.WINDOW:
            return f"{self.channel_id} Window {self.content.seq}"
        return f"{self.channel_id} Data length {self.content.payload_len}"


def read_frame(reader: BinaryIO) -> Frame:
    """Read one frame header and its command payload from ``reader``."""
    _length, raw_command, channel_id = _HEADER.unpack(_read_exact(reader, _HEADER.size))
    try:
        command = Command(raw_command)
    except ValueError:
        raise ValueError(f"unknown command {raw_command}") from None
    if command is Command.OPEN:
        content: Payload = read_open(reader)
    elif command is Command.CLOSE:
        content = CloseFrame()
    elif command is Command.SHUTDOWN:
        content = ShutdownFrame()
    elif command is Command.WINDOW:
        content = WindowFrame(struct.unpack("<Q", _read_exact(reader, 8))[0])
    else:
        content = DataFrame(struct.unpack("<I", _read_exact(reader, 4))[0])
    return Frame(command, channel_id, content)


def new_window(channel_id: int, seq: int) -> Frame:
    """Create a Window frame."""
    return Frame(Command.WINDOW, channel_id, WindowFrame(seq))


def new_open(channel_id: int, destination: Destination) -> Frame:
    """Create a multiplexed Open frame."""
    return Frame(Command.OPEN, channel_id, OpenFrame(Connection.MULTIPLEXED, destination))


def new_data(channel_id: int, payload_len: int) -> Frame:
    """Create a Data header frame."""
    return Frame(Command.DATA, channel_id, DataFrame(payload_len))


def new_shutdown(channel_id: int) -> Frame:
    """Create a Shutdown frame."""
    return Frame(Command.SHUTDOWN, channel_id, ShutdownFrame())


def new_close(channel_id: int) -> Frame:
    """Create a Close frame."""
    return Frame(Command.CLOSE, channel_id, CloseFrame())