import io
import ipaddress
import time

import pytest

from vpnproxy.loopback import IOTimeoutError, Loopback
from vpnproxy.udp_encapsulation import UDPDatagram, UDPEncapsulator, read_datagram


def _pair():
    near = Loopback()
    return UDPEncapsulator(near), UDPEncapsulator(near.other_end())


def _encode(datagram):
    buf = io.BytesIO()
    datagram.marshal(buf)
    return buf.getvalue()


def test_wire_format():
    encoded = _encode(UDPDatagram(b"hi", "127.0.0.1", 53))
    assert encoded == bytes.fromhex("1000" "0400" "7f000001" "3500" "0000" "0200") + b"hi"


def test_datagram_round_trip():
    datagram = UDPDatagram(b"payload", ipaddress.ip_address("2001:db8::5"), 4242, "eth0")
    assert read_datagram(io.BytesIO(_encode(datagram))) == datagram


def test_datagram_without_address_round_trip():
    datagram = UDPDatagram(b"anon")
    decoded = read_datagram(io.BytesIO(_encode(datagram)))
    assert decoded.ip is None
    assert decoded.payload == b"anon"


def test_truncated_datagram_raises():
    encoded = _encode(UDPDatagram(b"hello", "192.0.2.1", 7))
    with pytest.raises(ValueError):
        read_datagram(io.BytesIO(encoded[:-1]))


def test_empty_stream_is_eof():
    with pytest.raises(EOFError):
        read_datagram(io.BytesIO(b""))


def test_write_to_udp_read_from_udp():
    a, b = _pair()
    assert a.write_to_udp(b"hello", ("10.0.0.7", 5353)) == 5
    data, addr = b.read_from_udp(1024)
    assert data == b"hello"
    assert addr == ("10.0.0.7", 5353)


def test_ipv6_zone_round_trip():
    a, b = _pair()
    a.write_to_udp(b"z", ("fe80::1%eth0", 9))
    assert b.read_from_udp(16) == (b"z", ("fe80::1%eth0", 9))


def test_encapsulation_is_transparent_and_keeps_boundaries():
    a, b = _pair()
    message = b"hello world"
    assert a.write(message) == len(message)
    a.write(b"second")
    assert b.read(1024) == message
    assert b.read(1024) == b"second"


def test_buffer_too_small_keeps_stream_in_sync():
    a, b = _pair()
    a.write(b"0123456789")
    a.write(b"next")
    with pytest.raises(ValueError):
        b.read_from_udp(4)
    assert b.read(4) == b"next"


def test_read_after_close_is_eof():
    a, b = _pair()
    a.close()
    assert b.read(10) == b""
    with pytest.raises(EOFError):
        b.read_from_udp(10)


def test_read_deadline_is_delegated():
    a, _b = _pair()
    a.set_read_deadline(time.monotonic() + 0.05)
    with pytest.raises(IOTimeoutError):
        a.read(10)


def test_buffer_sizes_unsupported():
    a, _b = _pair()
    with pytest.raises(io.UnsupportedOperation):
        a.set_read_buffer(10)
    with pytest.raises(io.UnsupportedOperation):
        a.set_write_buffer(10)


def test_connect_records_address():
    a, _b = _pair()
    a.connect(("192.0.2.9", 1000))
    assert a.addr == ("192.0.2.9", 1000)