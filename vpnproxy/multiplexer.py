"""Many sub-connections muxed over a single stream connection.

The underlying connection needs ``read(size)``, ``write(data)`` and
``close()``. Deadlines are absolute values of ``time.monotonic()``.
"""

from __future__ import annotations

import enum
import io
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional, TextIO, Union

from .frame import (
    CloseFrame,
    Connection,
    DataFrame,
    Destination,
    Frame,
    OpenFrame,
    Proto,
    ShutdownFrame,
    WindowFrame,
    new_close,
    new_data,
    new_open,
    new_shutdown,
    new_window,
    read_frame,
)
from .handshake import Handshake, read_handshake
from .loopback import BufferedPipe, IOTimeoutError
from .udp_encapsulation import UDPEncapsulator

log = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 65536
_EVENT_LOG_SIZE = 500
_READ_CHUNK = 65536
_ID_MASK = 0xFFFFFFFF


class NotRunningError(ConnectionError):
    """Raised by ``accept`` when the multiplexer is not running."""

    def __init__(self, message: str = "multiplexer is not running") -> None:
        super().__init__(message)


@dataclass
class WindowState:
    """Flow-control window of one direction of a channel."""

    current: int = 0
    allowed: int = 0
    maximum: int = DEFAULT_WINDOW_SIZE

    def size(self) -> int:
        """Return the number of bytes that may still be sent."""
        return self.allowed - self.current

    def is_almost_closed(self) -> bool:
        """Return true when less than half of the window is left."""
        return self.size() < self.maximum // 2

    def advance(self) -> None:
        """Open the window by its maximum beyond the current position."""
        self.allowed = self.current + self.maximum

    def __str__(self) -> str:
        return f"current {self.current}, allowed {self.allowed}, max {self.maximum}"


class _BufferedReader:
    """Read buffering over a connection with a ``read`` method."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._buffer = b""
        self._pos = 0

    def read(self, size: int) -> bytes:
        if self._pos >= len(self._buffer):
            chunk = self._conn.read(max(size, _READ_CHUNK))
            if not chunk:
                return b""
            self._buffer = bytes(chunk)
            self._pos = 0
        taken = self._buffer[self._pos:self._pos + size]
        self._pos += len(taken)
        return taken


def _read_exact(reader: _BufferedReader, count: int) -> bytes:
    chunks = []
    remaining = count
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            raise EOFError("end of stream")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class _EventType(enum.Enum):
    SEND = "send "
    RECV = "recv "
    OPEN = "open "
    CLOSE = "close"


@dataclass(frozen=True)
class _Event:
    kind: _EventType
    frame: Optional[Frame] = None
    channel_id: int = 0
    destination: Optional[Destination] = None

    def __str__(self) -> str:
        if self.kind in (_EventType.SEND, _EventType.RECV):
            return f"{self.kind.value} {self.frame}"
        return f"{self.kind.value} {self.channel_id} -> {self.destination}"


class Channel:
    """A sub-connection within a multiplexed connection."""

    def __init__(self, multiplexer: Multiplexer, channel_id: int, destination: Destination) -> None:
        self._mux = multiplexer
        self.channel_id = channel_id
        self.destination = destination
        self.read_window = WindowState()
        self.write_window = WindowState()
        self._read_pipe = BufferedPipe()
        self._cond = threading.Condition()
        self._close_received = False
        self._close_sent = False
        self._shutdown_sent = False
        self._write_deadline: float | None = None
        self._allow_data_after_close_write = False
        self._ref_count = 2  # sender and receiver; guarded by the multiplexer

    def __str__(self) -> str:
        with self._cond:
            flags = "".join(
                name
                for name, on in (
                    ("closeReceived ", self._close_received),
                    ("closeSent ", self._close_sent),
                    ("shutdownSent ", self._shutdown_sent),
                )
                if on
            )
        return f"ID {self.channel_id} -> {self.destination} {flags}"

    def _send_window_update(self) -> None:
        with self._cond:
            self.read_window.advance()
            seq = self.read_window.allowed
        self._mux._send(new_window(self.channel_id, seq))

    def _recv_window_update(self, seq: int) -> None:
        with self._cond:
            self.write_window.allowed = seq
            self._cond.notify_all()

    def _recv_close(self) -> None:
        with self._cond:
            self._close_received = True
            self._cond.notify_all()

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes, ``b""`` at end of stream."""
        data = self._read_pipe.read(size)
        with self._cond:
            self.read_window.current += len(data)
            need_update = self.read_window.is_almost_closed()
        if need_update:
            try:
                self._send_window_update()
            except (OSError, EOFError) as exc:
                log.debug("cannot send window update on %d: %s", self.channel_id, exc)
        return data

    def write(self, data: bytes) -> int:
        """Send all of ``data`` as the peer's window allows; return its length.

        Raise EOFError once the channel is closed or shut down and
        IOTimeoutError when the write deadline passes.
        """
        view = memoryview(bytes(data))
        written = 0
        with self._cond:
            while True:
                if not view:
                    return written
                if (
                    self._close_received
                    or self._close_sent
                    or (self._shutdown_sent and not self._allow_data_after_close_write)
                ):
                    raise EOFError("write on closed channel")
                available = self.write_window.size()
                if available > 0:
                    count = min(available, len(view))
                    # Claim the space before dropping the lock.
                    self.write_window.current += count
                    chunk = bytes(view[:count])
                    self._cond.release()
                    try:
                        self._mux._send(new_data(self.channel_id, count), chunk)
                    finally:
                        self._cond.acquire()
                    view = view[count:]
                    written += count
                    continue
                deadline = self._write_deadline
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    self._cond.wait(remaining)
                if time.monotonic() >= deadline:
                    raise IOTimeoutError()

    def close(self) -> None:
        """Send Close once; later calls do nothing."""
        with self._cond:
            already_closed = self._close_sent
            self._close_sent = True
        if already_closed:
            return
        self._mux._send(new_close(self.channel_id))
        with self._cond:
            self._cond.notify_all()
        self._mux._decr_channel_ref(self.channel_id)

    def close_read(self) -> None:
        self._read_pipe.close_write()

    def close_write(self) -> None:
        """Send Shutdown once, unless the channel is already closed."""
        with self._cond:
            already_shutdown = self._shutdown_sent or self._close_sent
            self._shutdown_sent = True
        if already_shutdown:
            return
        self._mux._send(new_shutdown(self.channel_id))
        with self._cond:
            self._cond.notify_all()

    def set_read_buffer(self, size: int) -> None:
        """Set the read window size; takes effect at the next window update."""
        with self._cond:
            self.read_window.maximum = size

    def set_write_buffer(self, size: int) -> None:
        with self._cond:
            self.write_window.maximum = size

    def set_read_deadline(self, deadline: float | None) -> None:
        self._read_pipe.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: float | None) -> None:
        with self._cond:
            self._write_deadline = deadline
            self._cond.notify_all()

    def set_deadline(self, deadline: float | None) -> None:
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def __enter__(self) -> Channel:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Multiplexer:
    """Muxes and demuxes sub-connections over a single connection.

    The constructor performs the handshake; ``run`` must be called before
    ``dial`` and ``accept`` work.
    """

    def __init__(self, label: str, conn: Any, allocate_backwards: bool = False) -> None:
        self.label = label
        self._conn = conn
        self._reader = _BufferedReader(conn)
        self._write_lock = threading.Lock()
        self._meta = threading.Condition()
        self._channels: dict[int, Channel] = {}
        self._pending_accept: deque[Channel] = deque()
        self._running = False
        self._events: deque[_Event] = deque(maxlen=_EVENT_LOG_SIZE)
        self._events_lock = threading.Lock()
        self._allocate_backwards = allocate_backwards
        self._next_channel_id = _ID_MASK if allocate_backwards else 0
        self._handshake()

    def _handshake(self) -> None:
        buffer = io.BytesIO()
        Handshake().write(buffer)
        errors: list[BaseException] = []

        def send() -> None:
            try:
                self._write_all(buffer.getvalue())
            except (OSError, EOFError) as exc:
                errors.append(exc)

        sender = threading.Thread(target=send, daemon=True)
        sender.start()
        try:
            read_handshake(self._reader)
        finally:
            sender.join()
        if errors:
            raise errors[0]

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = self._conn.write(bytes(view))
            if written is None or written >= len(view):
                return
            if written <= 0:
                raise OSError("short write")
            view = view[written:]

    def _append_event(self, event: _Event) -> None:
        with self._events_lock:
            self._events.append(event)

    def _send(self, frame: Frame, payload: bytes = b"") -> None:
        buffer = io.BytesIO()
        frame.write(buffer)
        buffer.write(payload)
        with self._write_lock:
            self._append_event(_Event(_EventType.SEND, frame=frame))
            self._write_all(buffer.getvalue())

    def _find_free_channel_id(self) -> int:
        step = -1 if self._allocate_backwards else 1
        channel_id = self._next_channel_id
        while channel_id in self._channels:
            channel_id = (channel_id + step) & _ID_MASK
        self._next_channel_id = (channel_id + step) & _ID_MASK
        return channel_id

    def _decr_channel_ref(self, channel_id: int) -> None:
        with self._meta:
            channel = self._channels.get(channel_id)
            if channel is None:
                return
            if channel._ref_count == 1:
                self._append_event(
                    _Event(_EventType.CLOSE, channel_id=channel_id, destination=channel.destination)
                )
                del self._channels[channel_id]
                return
            channel._ref_count -= 1

    def close(self) -> None:
        """Stop the multiplexer and close the underlying connection."""
        with self._meta:
            self._running = False
            self._meta.notify_all()
        self._conn.close()

    def is_running(self) -> bool:
        """Return true while the multiplexer is running normally."""
        with self._meta:
            return self._running

    def dial(self, destination: Destination) -> Union[Channel, UDPEncapsulator]:
        """Open a sub-connection to ``destination`` on the remote side."""
        with self._meta:
            if not self._running:
                raise ConnectionRefusedError("connection refused")
            channel_id = self._find_free_channel_id()
            channel = Channel(self, channel_id, destination)
            self._channels[channel_id] = channel
        self._send(new_open(channel_id, destination))
        channel._send_window_update()
        if destination.proto is Proto.UDP:
            return UDPEncapsulator(channel)
        return channel

    def accept(self) -> tuple[Union[Channel, UDPEncapsulator], Destination]:
        """Wait for the next incoming sub-connection and its destination."""
        channel = self._next_pending_accept()
        channel._send_window_update()
        if channel.destination.proto is Proto.UDP:
            return UDPEncapsulator(channel), channel.destination
        return channel, channel.destination

    def _next_pending_accept(self) -> Channel:
        with self._meta:
            while True:
                if not self._running:
                    raise NotRunningError()
                if self._pending_accept:
                    return self._pending_accept.popleft()
                self._meta.wait()

    def run(self) -> None:
        """Start handling frames from the other side in a background thread."""
        with self._meta:
            self._running = True
        threading.Thread(target=self._serve, name=f"multiplexer-{self.label}", daemon=True).start()

    def _serve(self) -> None:
        error: BaseException | None = None
        try:
            self._loop()
        except Exception as exc:  # the main loop ends only by an exception
            error = exc
        with self._meta:
            expected = isinstance(error, EOFError) or not self._running
        if expected:
            log.info("disconnected data connection: multiplexer is offline")
        elif error is not None:
            state = io.StringIO()
            self.dump_state(state)
            log.error("multiplexer main loop failed with %s\n%s", error, state.getvalue())
        with self._meta:
            self._running = False
            self._meta.notify_all()
            channels = list(self._channels.values())
        for channel in channels:
            channel._read_pipe.close_write()
            channel._recv_close()
            self._decr_channel_ref(channel.channel_id)

    def _lookup(self, frame: Frame) -> Channel:
        with self._meta:
            channel = self._channels.get(frame.channel_id)
        if channel is None:
            raise ValueError(f"unknown channel id: {frame}")
        return channel

    def _loop(self) -> None:
        while True:
            frame = read_frame(self._reader)
            self._append_event(_Event(_EventType.RECV, frame=frame))
            payload = frame.payload()
            if isinstance(payload, OpenFrame):
                if payload.connection is Connection.DEDICATED:
                    raise ValueError("dedicated connections are not implemented")
                with self._meta:
                    channel = Channel(self, frame.channel_id, payload.destination)
                    self._channels[frame.channel_id] = channel
                    self._pending_accept.append(channel)
                    self._meta.notify_all()
                self._append_event(
                    _Event(_EventType.OPEN, channel_id=frame.channel_id, destination=payload.destination)
                )
            elif isinstance(payload, WindowFrame):
                self._lookup(frame)._recv_window_update(payload.seq)
            elif isinstance(payload, DataFrame):
                channel = self._lookup(frame)
                try:
                    data = _read_exact(self._reader, payload.payload_len)
                except EOFError as exc:
                    raise ValueError(
                        f"failed to read payload of {payload.payload_len} bytes: {frame}"
                    ) from exc
                try:
                    channel._read_pipe.write(data)
                except EOFError:
                    # Data after Shutdown or Close: the stream stays in sync.
                    log.warning("discarded %d bytes from %s", len(data), frame)
            elif isinstance(payload, ShutdownFrame):
                self._lookup(frame)._read_pipe.close_write()
            elif isinstance(payload, CloseFrame):
                channel = self._lookup(frame)
                channel._read_pipe.close_write()
                channel._recv_close()
                self._decr_channel_ref(channel.channel_id)
            else:
                raise ValueError(f"unknown command type: {frame}")

    def dump_state(self, writer: TextIO) -> None:
        """Write the event trace and the active channels to ``writer``."""
        with self._events_lock:
            events = list(self._events)
        writer.write("Event trace:\n")
        for event in events:
            writer.write(f"{event}\n")
        with self._meta:
            channels = list(self._channels.values())
        writer.write("Active channels:\n")
        for channel in channels:
            writer.write(f"{channel}\n")
        writer.write("End of state dump\n")

    def __enter__(self) -> Multiplexer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()