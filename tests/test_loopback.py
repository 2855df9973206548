import threading
import time

import pytest

from vpnproxy.loopback import BufferedPipe, IOTimeoutError, Loopback


def _later(action, delay=0.05):
    def work():
        time.sleep(delay)
        action()

    thread = threading.Thread(target=work, daemon=True)
    thread.start()
    return thread


def test_write():
    local = Loopback()
    assert local.write(b"hello") == 5


def test_write_read():
    local = Loopback()
    assert local.write(b"hello") == 5
    remote = local.other_end()
    assert remote.read(5) == b"hello"


def test_write_close_write_read():
    local = Loopback()
    assert local.write(b"hello") == 5
    local.close_write()
    remote = local.other_end()
    assert remote.read(5) == b"hello"
    assert remote.read(5) == b""


def test_write_close_read():
    local = Loopback()
    assert local.write(b"hello") == 5
    local.close()
    remote = local.other_end()
    assert remote.read(5) == b"hello"
    assert remote.read(5) == b""


def test_partial_reads_preserve_order():
    local = Loopback()
    local.write(b"hello")
    local.write(b"world")
    remote = local.other_end()
    assert remote.read(3) == b"hel"
    assert remote.read(10) == b"lo"
    assert remote.read(10) == b"world"


def test_write_after_close_write_raises_eof():
    local = Loopback()
    local.close_write()
    with pytest.raises(EOFError):
        local.write(b"x")


def test_empty_write_returns_zero():
    pipe = BufferedPipe()
    assert pipe.write(b"") == 0
    pipe.close_write()
    assert pipe.read(4) == b""


def test_read_deadline_times_out():
    local = Loopback()
    local.set_read_deadline(time.monotonic() + 0.05)
    with pytest.raises(IOTimeoutError, match="i/o timeout"):
        local.read(10)


def test_data_available_before_deadline_is_returned():
    local = Loopback()
    remote = local.other_end()
    remote.write(b"abc")
    local.set_deadline(time.monotonic() - 1)
    assert local.read(10) == b"abc"


def test_blocked_read_woken_by_write():
    local = Loopback()
    remote = local.other_end()
    writer = _later(lambda: local.write(b"ping"))
    assert remote.read(10) == b"ping"
    writer.join(5)


def test_blocked_read_woken_by_close():
    local = Loopback()
    remote = local.other_end()
    closer = _later(local.close_write)
    assert remote.read(10) == b""
    closer.join(5)


def test_context_manager_closes_both_directions():
    with Loopback() as local:
        remote = local.other_end()
    assert remote.read(1) == b""
    with pytest.raises(EOFError):
        remote.write(b"x")
    assert isinstance(IOTimeoutError(), TimeoutError)