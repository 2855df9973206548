"""Copy a stream in both directions between a client and a backend."""

from __future__ import annotations

import errno
import logging
import queue
import socket
import threading
from typing import Any

log = logging.getLogger(__name__)

_CHUNK = 32 * 1024
_POLL_INTERVAL = 0.05
_QUIET_ERRNOS = {errno.EBADF, errno.ENOTCONN}


def _recv(conn: Any, size: int) -> bytes:
    recv = getattr(conn, "recv", None)
    if recv is not None:
        return recv(size)
    return conn.read(size)


def _send_all(conn: Any, data: bytes) -> None:
    sendall = getattr(conn, "sendall", None)
    if sendall is not None:
        sendall(data)
        return
    view = memoryview(data)
    while view:
        written = conn.write(bytes(view))
        if written is None or written >= len(view):
            return
        if written <= 0:
            raise OSError("short write")
        view = view[written:]


def _shutdown_write(conn: Any) -> None:
    if isinstance(conn, socket.socket):
        conn.shutdown(socket.SHUT_WR)
    else:
        conn.close_write()


def _is_quiet(exc: BaseException) -> bool:
    if isinstance(exc, EOFError):
        return True
    if isinstance(exc, OSError) and exc.errno in _QUIET_ERRNOS:
        return True
    return str(exc).endswith("is being closed.")


def _copy(to: Any, source: Any) -> int:
    written = 0
    try:
        while True:
            chunk = _recv(source, _CHUNK)
            if not chunk:
                break
            _send_all(to, chunk)
            written += len(chunk)
    except (OSError, EOFError) as exc:
        if not _is_quiet(exc):
            log.warning("error copying: %s", exc)
    return written


def _broker(to: Any, source: Any, results: queue.SimpleQueue) -> None:
    written = 0
    try:
        written = _copy(to, source)
        try:
            _shutdown_write(to)
        except (OSError, EOFError) as exc:
            if not _is_quiet(exc):
                log.warning("error CloseWrite to: %s", exc)
    finally:
        results.put(written)


def _close(conn: Any) -> None:
    try:
        conn.close()
    except OSError as exc:
        log.debug("error closing backend: %s", exc)


def proxy_stream(client: Any, backend: Any, quit: threading.Event | None = None) -> int:
    """Proxy data until both directions reach end of stream or ``quit`` is set.

    Connections are sockets or objects with ``read``, ``write`` and
    ``close_write``. The backend is closed afterwards. Return the number of
    bytes copied in both directions.
    """
    results: queue.SimpleQueue = queue.SimpleQueue()
    for to, source in ((client, backend), (backend, client)):
        threading.Thread(target=_broker, args=(to, source, results), daemon=True).start()

    transferred = 0
    pending = 2
    while pending:
        if quit is not None and quit.is_set():
            # Interrupt the brokers and wait for both of them.
            _close(backend)
            while pending:
                transferred += results.get()
                pending -= 1
            return transferred
        try:
            transferred += results.get(timeout=_POLL_INTERVAL if quit is not None else None)
        except queue.Empty:
            continue
        pending -= 1
    _close(backend)
    return transferred