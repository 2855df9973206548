"""Forward Unix domain socket connections to a backend socket."""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Any

from .addresses import UnixAddress
from .stream_proxy import proxy_stream

log = logging.getLogger(__name__)

_ACCEPT_POLL = 0.1
_RETRY_TIMEOUT = 120
_RETRY_INTERVAL = 5


def handle_unix_connection(
    client: Any, backend_addr: UnixAddress, quit: threading.Event | None = None
) -> int:
    """Connect to the backend and proxy ``client`` to it; return bytes copied.

    While the backend refuses connections it is retried every few seconds,
    for up to two minutes.
    """
    start = time.monotonic()
    while True:
        backend = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            backend.connect(backend_addr.sockaddr())
        except ConnectionRefusedError:
            backend.close()
            if time.monotonic() - start > _RETRY_TIMEOUT:
                log.error(
                    "failed to connect to %s after %ds. The server appears to be down.",
                    backend_addr, _RETRY_TIMEOUT,
                )
                raise
            log.info(
                "%s appears to not be started yet: will retry in %ds",
                backend_addr, _RETRY_INTERVAL,
            )
            time.sleep(_RETRY_INTERVAL)
            continue
        except OSError as exc:
            backend.close()
            raise ConnectionError(
                f"can't forward traffic to backend unix/{backend_addr}: {exc}"
            ) from exc
        return proxy_stream(client, backend, quit)


class UnixProxy:
    """Forwards connections from a listening socket to a Unix socket backend."""

    def __init__(self, listener: socket.socket, backend_addr: UnixAddress) -> None:
        self._listener = listener
        self._closed = threading.Event()
        self.frontend_addr = UnixAddress.from_sockaddr(listener.getsockname())
        self.backend_addr = backend_addr
        log.info("new unix proxy from %s -> %s", self.frontend_addr, backend_addr)

    def run(self) -> None:
        """Accept and forward connections until the proxy is closed."""
        quit = threading.Event()
        try:
            self._listener.settimeout(_ACCEPT_POLL)
            while not self._closed.is_set():
                try:
                    client, _ = self._listener.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    log.info(
                        "stopping proxy on unix/%s for unix/%s (%s)",
                        self.frontend_addr, self.backend_addr, exc,
                    )
                    return
                client.setblocking(True)
                threading.Thread(
                    target=self._handle, args=(client, quit), daemon=True
                ).start()
            log.info("stopping proxy on unix/%s for unix/%s", self.frontend_addr, self.backend_addr)
        finally:
            quit.set()

    def _handle(self, client: socket.socket, quit: threading.Event) -> None:
        with client:
            try:
                handle_unix_connection(client, self.backend_addr, quit)
            except OSError as exc:
                log.warning("closing Unix proxy because %s", exc)

    def close(self) -> None:
        """Stop accepting connections."""
        self._closed.set()
        self._listener.close()