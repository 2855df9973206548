"""Forward TCP connections accepted on a listener to a backend."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any

from .addresses import TCPAddress
from .stream_proxy import proxy_stream

log = logging.getLogger(__name__)

_ACCEPT_POLL = 0.1


def handle_tcp_connection(
    client: Any, backend_addr: TCPAddress, quit: threading.Event | None = None
) -> int:
    """Connect to the backend and proxy ``client`` to it; return bytes copied."""
    try:
        backend = socket.create_connection(backend_addr.sockaddr())
    except ConnectionRefusedError:
        raise
    except OSError as exc:
        raise ConnectionError(
            f"can't forward traffic to backend tcp/{backend_addr}: {exc}"
        ) from exc
    return proxy_stream(client, backend, quit)


class TCPProxy:
    """Forwards connections from a listening socket to a TCP backend."""

    def __init__(self, listener: socket.socket, backend_addr: TCPAddress) -> None:
        self._listener = listener
        self._closed = threading.Event()
        # The listener may have picked the port itself.
        self.frontend_addr = TCPAddress.from_sockaddr(listener.getsockname())
        self.backend_addr = backend_addr

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
                        "stopping proxy on tcp/%s for tcp/%s (%s)",
                        self.frontend_addr, self.backend_addr, exc,
                    )
                    return
                client.setblocking(True)
                threading.Thread(
                    target=self._handle, args=(client, quit), daemon=True
                ).start()
            log.info("stopping proxy on tcp/%s for tcp/%s", self.frontend_addr, self.backend_addr)
        finally:
            quit.set()

    def _handle(self, client: socket.socket, quit: threading.Event) -> None:
        with client:
            try:
                handle_tcp_connection(client, self.backend_addr, quit)
            except OSError as exc:
                log.warning("closing TCP proxy because %s", exc)

    def close(self) -> None:
        """Stop accepting connections."""
        self._closed.set()
        self._listener.close()