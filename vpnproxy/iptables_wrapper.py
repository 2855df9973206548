"""Wrap iptables, exposing swarm ingress ports through vpnkit-expose-port.

Recognised rules have the form::

    --wait -t nat -I DOCKER-INGRESS -p tcp --dport 80 -j DNAT --to-destination 172.18.0.2:80

with ``-I`` to expose and ``-D`` to stop exposing. The arguments are always
passed on to iptables afterwards.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Sequence

log = logging.getLogger(__name__)

IPTABLES_PATH = "/sbin/iptables"
CONFIG_KEY = "/var/config/vpnkit/native-port-forwarding"
VPNKIT_EXPOSE_PORT = "vpnkit-expose-port"
PID_DIR = "/var/run/service-port-opener"


@dataclass(frozen=True)
class ExposedPort:
    """A host port forwarded to a container address."""

    proto: str
    dport: str
    ip: str
    port: str


def pid_file_name(port: ExposedPort, pid_dir: str = PID_DIR) -> str:
    """Return the path of the pid file for ``port``."""
    return f"{pid_dir}/{port.proto}.{port.dport}.{port.ip}.{port.port}.pid"


def insert(expose_port_path: str, port: ExposedPort, pid_dir: str = PID_DIR) -> subprocess.Popen:
    """Start an expose-port process for ``port`` and record its pid."""
    process = subprocess.Popen(
        [
            expose_port_path,
            "-proto", port.proto,
            "-container-ip", port.ip,
            "-container-port", port.port,
            "-host-ip", "0.0.0.0",
            "-host-port", port.dport,
            "-i",
            "-no-local-ip",
        ],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    path = pid_file_name(port, pid_dir)
    with open(path, "w", encoding="ascii") as handle:
        handle.write(str(process.pid))
    os.chmod(path, 0o644)
    return process


def remove(port: ExposedPort, pid_dir: str = PID_DIR) -> None:
    """Stop the expose-port process recorded for ``port`` and delete its pid file."""
    path = pid_file_name(port, pid_dir)
    with open(path, encoding="ascii") as handle:
        text = handle.read()
    try:
        pid = int(text)
    except ValueError:
        raise ValueError(f"invalid pid {text!r} in {path}") from None
    os.kill(pid, signal.SIGTERM)
    os.remove(path)


def use_native_port_forwarding(config_key: str = CONFIG_KEY) -> bool:
    """Return true if the config file's first line is ``1`` or ``true``."""
    try:
        with open(config_key, encoding="utf-8", errors="replace") as handle:
            first = handle.readline()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log.error("error opening %s: %s", config_key, exc)
        return False
    if not first:
        return False
    line = first.rstrip("\n").rstrip("\r")
    value = line.strip(" \n").lower()
    return value in ("1", "true")


@dataclass
class StringValue:
    """A pattern slot that captures one argument."""

    value: str = ""

    def set(self, text: str) -> None:
        self.value = text

    def __str__(self) -> str:
        return self.value


@dataclass
class IPPortValue:
    """A pattern slot that captures an ``ip:port`` argument."""

    ip: str = ""
    port: str = ""

    def set(self, text: str) -> None:
        parts = text.split(":", 1)
        if len(parts) != 2:
            raise ValueError("invalid ip:port pair")
        self.ip, self.port = parts

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


def match_string_array(items: Sequence[str], pattern: Sequence[Any]) -> None:
    """Match ``items`` against ``pattern``, filling its value slots.

    Strings must equal the item in the same place; objects with a ``set``
    method receive it. Slots before a failure keep what they captured.
    Raise ValueError if the pattern does not match.
    """
    if len(items) < len(pattern):
        raise ValueError("input shorter than pattern")
    for expected, item in zip(pattern, items):
        if isinstance(expected, str):
            if expected != item:
                raise ValueError("input doesn't match pattern")
        elif callable(getattr(expected, "set", None)):
            expected.set(item)
        else:
            raise TypeError("unknown type in pattern")


def _expose(args: Sequence[str], expose_port_path: str) -> None:
    action, proto, dport = StringValue(), StringValue(), StringValue()
    target = IPPortValue()
    pattern = [
        "--wait", "-t", "nat", action, "DOCKER-INGRESS", "-p", proto,
        "--dport", dport, "-j", "DNAT", "--to-destination", target,
    ]
    try:
        match_string_array(args, pattern)
    except ValueError:
        return  # not ours: only pass it on to iptables
    port = ExposedPort(proto.value, dport.value, target.ip, target.port)
    try:
        if action.value == "-D":
            remove(port)
        elif action.value == "-I":
            insert(expose_port_path, port)
    except (OSError, ValueError) as exc:
        log.warning("cannot update exposed port %s: %s", port, exc)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the wrapper with iptables arguments; return the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)

    iptables = shutil.which(IPTABLES_PATH)
    if iptables is None:
        log.error("exec: %r: executable file not found", IPTABLES_PATH)
        return 1

    if not use_native_port_forwarding():
        expose_port_path = shutil.which(VPNKIT_EXPOSE_PORT)
        if expose_port_path is None:
            log.error("exec: %r: executable file not found in PATH", VPNKIT_EXPOSE_PORT)
            return 1
        try:
            os.makedirs(PID_DIR, 0o755, exist_ok=True)
        except OSError as exc:
            log.error("%s", exc)
            return 1
        # Drop the many descriptors inherited from the caller.
        os.closerange(3, 1024)
        _expose(args, expose_port_path)

    try:
        completed = subprocess.run([iptables, *args])
    except OSError as exc:
        print(exc)
        return 1
    code = completed.returncode
    return code if code >= 0 else 255


if __name__ == "__main__":
    sys.exit(main())