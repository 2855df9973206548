"""Handshake exchanged when a multiplexed connection is established."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO

MAGIC = b"https://github.com/moby/vpnkit multiplexer protocol\n"


def _read_exact(reader: BinaryIO, count: int) -> bytes:
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


@dataclass(frozen=True)
class Handshake:
    """Handshake message; the payload is reserved for feature negotiation."""

    payload: bytes = b""

    def write(self, writer: BinaryIO) -> None:
        """Serialise the magic string, length and payload to ``writer``."""
        if len(self.payload) > 0xFFFF:
            raise ValueError("handshake payload must be shorter than 64KiB")
        writer.write(MAGIC + struct.pack("<H", len(self.payload)) + self.payload)


def read_handshake(reader: BinaryIO) -> Handshake:
    """Read a handshake; raise ValueError if the magic string is wrong."""
    magic = _read_exact(reader, len(MAGIC))
    if magic != MAGIC:
        text = magic.decode("utf-8", errors="replace")
        raise ValueError(
            f"not a connection to a multiplexer; received bad magic string '{text}'"
        )
    (length,) = struct.unpack("<H", _read_exact(reader, 2))
    return Handshake(_read_exact(reader, length))