"""Specification of which traffic is sent through tunnel servers."""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass
from typing import Any, Iterable, Union

from .tunnel import Protocol

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

EVERY_PORT = 0
"""A destination port of zero sends every port through the tunnel."""

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _parse_cidr(text: Any) -> IPNetwork:
    if isinstance(text, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return text
    if not isinstance(text, str) or "/" not in text:
        raise ValueError(f"parsing IP network {text}")
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError as exc:
        raise ValueError(f"parsing IP network {text}: {exc}") from exc


@dataclass(frozen=True)
class Forward:
    """Send traffic for a destination prefix and port to the tunnel at ``path``."""

    protocol: Protocol
    dst_prefix: IPNetwork
    dst_port: int = EVERY_PORT
    path: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", Protocol.parse(self.protocol))
        object.__setattr__(self, "dst_prefix", _parse_cidr(self.dst_prefix))


def unmarshal_forwards(data: Union[bytes, str]) -> list[Forward]:
    """Parse a JSON forwards specification."""
    try:
        raw = json.loads(data)
    except ValueError as exc:
        raise ValueError(f"unmarshalling forwards: {exc}") from exc
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("unmarshalling forwards: expected a list")
    results = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("unmarshalling forwards: expected an object")
        port = item.get("dst_port", 0)
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"unmarshalling forwards: invalid dst_port {port!r}")
        path = item.get("path", "")
        if not isinstance(path, str):
            raise ValueError(f"unmarshalling forwards: invalid path {path!r}")
        results.append(
            Forward(
                protocol=Protocol.parse(item.get("protocol", "")),
                dst_prefix=_parse_cidr(item.get("dst_prefix", "")),
                dst_port=port,
                path=path,
            )
        )
    return results


def marshal_forwards(forwards: Iterable[Forward]) -> bytes:
    """Return the forwards specification as JSON; an empty list gives ``null``."""
    raw = [
        {
            "protocol": f.protocol.value,
            "dst_prefix": str(f.dst_prefix),
            "dst_port": f.dst_port,
            "path": f.path,
        }
        for f in forwards
    ]
    text = json.dumps(raw or None, separators=(",", ":"), ensure_ascii=False)
    return "".join(_JSON_ESCAPES.get(ch, ch) for ch in text).encode("utf-8")