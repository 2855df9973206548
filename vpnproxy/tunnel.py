"""Requests and responses for opening a tunnel to a remote service."""

from __future__ import annotations

import ipaddress
import json
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_U16 = struct.Struct("<H")


class Protocol(str, Enum):
    """Transport protocol carried by a tunnel."""

    TCP = "tcp"
    UDP = "udp"

    @classmethod
    def parse(cls, text: Any) -> Protocol:
        """Return the protocol named ``text``; raise ValueError if unknown."""
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"unknown protocol: {text}") from None

    def __str__(self) -> str:
        return self.value


def _read_exact(reader: BinaryIO, count: int) -> bytes:
    chunks = []
    remaining = count
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            raise EOFError("end of stream")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_message(reader: BinaryIO, what: str) -> Any:
    try:
        (length,) = _U16.unpack(_read_exact(reader, 2))
    except EOFError as exc:
        raise EOFError(f"reading {what} length: {exc}") from exc
    try:
        body = _read_exact(reader, length)
    except EOFError as exc:
        raise EOFError(f"reading {what}: {exc}") from exc
    try:
        raw = json.loads(body)
    except ValueError as exc:
        raise ValueError(f"parsing {what} json: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"parsing {what} json: expected an object")
    return raw


def _write_message(writer: BinaryIO, message: dict) -> None:
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    if len(body) > 0xFFFF:
        raise ValueError("message too long")
    writer.write(_U16.pack(len(body)) + body)


def _parse_ip(text: Any, name: str) -> IPAddress:
    if isinstance(text, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return text
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        raise ValueError(f"invalid {name} {text}") from None


def _parse_port(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"invalid {name} {value!r}")
    return value


@dataclass(frozen=True)
class Request:
    """Request to open a tunnel from a source to a destination."""

    protocol: Protocol
    dst_ip: IPAddress
    dst_port: int
    src_ip: IPAddress
    src_port: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", Protocol.parse(self.protocol))
        object.__setattr__(self, "dst_ip", _parse_ip(self.dst_ip, "DstIP"))
        object.__setattr__(self, "src_ip", _parse_ip(self.src_ip, "SrcIP"))

    def write(self, writer: BinaryIO) -> None:
        """Write the length-prefixed JSON request to ``writer``."""
        _write_message(
            writer,
            {
                "protocol": self.protocol.value,
                "dst_ip": str(self.dst_ip),
                "dst_port": self.dst_port,
                "src_ip": str(self.src_ip),
                "src_port": self.src_port,
            },
        )


def read_request(reader: BinaryIO) -> Request:
    """Read a length-prefixed JSON tunnel request."""
    raw = _read_message(reader, "request")
    return Request(
        protocol=Protocol.parse(raw.get("protocol", "")),
        dst_ip=_parse_ip(raw.get("dst_ip", ""), "DstIP"),
        dst_port=_parse_port(raw.get("dst_port", 0), "DstPort"),
        src_ip=_parse_ip(raw.get("src_ip", ""), "SrcIP"),
        src_port=_parse_port(raw.get("src_port", 0), "SrcPort"),
    )


@dataclass(frozen=True)
class Response:
    """Answer to a tunnel request; ``accepted`` is true once connected."""

    accepted: bool = False

    def write(self, writer: BinaryIO) -> None:
        """Write the length-prefixed JSON response to ``writer``."""
        _write_message(writer, {"accepted": bool(self.accepted)})


def read_response(reader: BinaryIO) -> Response:
    """Read a length-prefixed JSON tunnel response."""
    raw = _read_message(reader, "response")
    accepted = raw.get("accepted", False)
    if not isinstance(accepted, bool):
        raise ValueError(f"parsing response json: invalid accepted {accepted!r}")
    return Response(accepted)