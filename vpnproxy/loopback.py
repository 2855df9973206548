"""In-memory bidirectional buffered connection.

Deadlines are absolute values of ``time.monotonic()``; ``None`` clears them.
"""

from __future__ import annotations

import threading
import time
from collections import deque


class IOTimeoutError(TimeoutError):
    """Raised when a read or write deadline passes."""

    def __init__(self, message: str = "i/o timeout") -> None:
        super().__init__(message)


class BufferedPipe:
    """One direction of a connection: writes never block, reads wait for data.

    After ``close_write`` further writes raise EOFError and reads return
    ``b""`` once the buffered data is exhausted.
    """

    def __init__(self) -> None:
        self._chunks: deque[memoryview] = deque()
        self._eof = False
        self._cond = threading.Condition()
        self._read_deadline: float | None = None

    def _try_read_locked(self, size: int) -> bytes | None:
        if self._chunks:
            first = self._chunks[0]
            taken = bytes(first[:size])
            if len(taken) == len(first):
                self._chunks.popleft()
            else:
                self._chunks[0] = first[len(taken):]
            return taken or None
        if self._eof:
            return b""
        return None

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes, ``b""`` at end of stream."""
        with self._cond:
            while True:
                result = self._try_read_locked(size)
                if result is not None:
                    return result
                if self._read_deadline is None:
                    self._cond.wait()
                    continue
                remaining = self._read_deadline - time.monotonic()
                if remaining <= 0:
                    raise IOTimeoutError()
                self._cond.wait(remaining)

    def write(self, data: bytes) -> int:
        """Buffer ``data`` and return its length; raise EOFError once closed."""
        chunk = memoryview(bytes(data))
        with self._cond:
            if self._eof:
                raise EOFError("write on closed pipe")
            if not chunk:
                return 0
            self._chunks.append(chunk)
            self._cond.notify_all()
        return len(chunk)

    def close_write(self) -> None:
        """Mark the end of the stream."""
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    def set_read_deadline(self, deadline: float | None) -> None:
        """Set the absolute monotonic time after which reads time out."""
        with self._cond:
            self._read_deadline = deadline
            self._cond.notify_all()


class Loopback:
    """A bidirectional buffered connection, mostly useful for testing."""

    def __init__(
        self,
        read_pipe: BufferedPipe | None = None,
        write_pipe: BufferedPipe | None = None,
    ) -> None:
        self._read = read_pipe if read_pipe is not None else BufferedPipe()
        self._write = write_pipe if write_pipe is not None else BufferedPipe()
        self.simulate_latency = 0.0
        self.write_deadline: float | None = None

    def other_end(self) -> Loopback:
        """Return the peer sharing this connection's pipes in reverse."""
        return Loopback(read_pipe=self._write, write_pipe=self._read)

    def read(self, size: int) -> bytes:
        return self._read.read(size)

    def write(self, data: bytes) -> int:
        written = self._write.write(data)
        if self.simulate_latency > 0:
            time.sleep(self.simulate_latency)
        return written

    def close_read(self) -> None:
        self._read.close_write()

    def close_write(self) -> None:
        self._write.close_write()

    def close(self) -> None:
        self.close_read()
        self.close_write()

    def set_read_deadline(self, deadline: float | None) -> None:
        self._read.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: float | None) -> None:
        """Record the write deadline; writes never block, so it never fires."""
        self.write_deadline = deadline

    def set_deadline(self, deadline: float | None) -> None:
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def __enter__(self) -> Loopback:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()