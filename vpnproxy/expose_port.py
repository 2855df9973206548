"""Ask the host to expose a port through a control filesystem."""

from __future__ import annotations

import contextlib
import logging
import os
from typing import Any, BinaryIO

log = logging.getLogger(__name__)

DEFAULT_ROOT = "/port"
_RESPONSE_SIZE = 100
_ERROR_PREFIX = "ERROR "


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        if written <= 0:
            raise OSError("short write")
        view = view[written:]


def expose_port(host: Any, container: Any, root: str = DEFAULT_ROOT) -> BinaryIO:
    """Expose ``host`` forwarding to ``container``; return the open control file.

    Keep the returned file open: closing it shuts the forward down on the
    host side. Raise RuntimeError with the host's message if it refuses.
    """
    name = f"{host.network}:{host}:{container.network}:{container}"
    log.info("exposePort %s", name)
    directory = os.path.join(root, name)
    try:
        os.mkdir(directory, 0)
    except OSError as exc:
        log.warning("failed to mkdir %s: %s", directory, exc)
        raise
    ctl = os.path.join(directory, "ctl")
    try:
        fd = os.open(ctl, os.O_RDWR)
    except OSError as exc:
        log.warning("failed to open %s: %s", ctl, exc)
        raise
    try:
        _write_all(fd, name.encode("utf-8"))
        os.lseek(fd, 0, os.SEEK_SET)
        raw = os.read(fd, _RESPONSE_SIZE)
    except OSError as exc:
        log.warning("failed to talk to %s: %s", ctl, exc)
        os.close(fd)
        raise
    response = raw.decode("utf-8", errors="replace")
    if response.startswith(_ERROR_PREFIX):
        with contextlib.suppress(OSError):
            os.remove(ctl)
        os.close(fd)
        message = response[len(_ERROR_PREFIX):].strip(" \t\r\n")
        raise RuntimeError(message)
    return os.fdopen(fd, "r+b", buffering=0)