import io
import json
import struct

import pytest

from vpnproxy.tunnel import Protocol, Request, Response, read_request, read_response


def _message(obj):
    body = json.dumps(obj).encode()
    return io.BytesIO(struct.pack("<H", len(body)) + body)


def test_read_write_request():
    req = Request(
        protocol=Protocol.TCP,
        src_ip="127.0.0.1",
        dst_ip="10.0.0.1",
        src_port=80,
        dst_port=8080,
    )
    buf = io.BytesIO()
    req.write(buf)
    req2 = read_request(io.BytesIO(buf.getvalue()))
    assert req2.protocol == req.protocol
    assert str(req2.src_ip) == str(req.src_ip)
    assert str(req2.dst_ip) == str(req.dst_ip)
    assert req2.src_port == req.src_port
    assert req2.dst_port == req.dst_port


def test_read_write_response():
    res = Response(accepted=True)
    buf = io.BytesIO()
    res.write(buf)
    res2 = read_response(io.BytesIO(buf.getvalue()))
    assert res2.accepted == res.accepted


def test_response_wire_format():
    buf = io.BytesIO()
    Response(accepted=True).write(buf)
    assert buf.getvalue() == b'\x11\x00{"accepted":true}'


def test_unknown_protocol():
    reader = _message(
        {"protocol": "sctp", "dst_ip": "10.0.0.1", "dst_port": 1, "src_ip": "127.0.0.1", "src_port": 2}
    )
    with pytest.raises(ValueError, match="unknown protocol: sctp"):
        read_request(reader)


def test_invalid_dst_ip():
    reader = _message(
        {"protocol": "udp", "dst_ip": "not-an-ip", "dst_port": 1, "src_ip": "127.0.0.1", "src_port": 2}
    )
    with pytest.raises(ValueError, match="invalid DstIP not-an-ip"):
        read_request(reader)


def test_invalid_src_ip():
    reader = _message({"protocol": "udp", "dst_ip": "10.0.0.1", "dst_port": 1, "src_port": 2})
    with pytest.raises(ValueError, match="invalid SrcIP"):
        read_request(reader)


def test_truncated_request():
    buf = io.BytesIO()
    Request(Protocol.UDP, "10.0.0.1", 53, "127.0.0.1", 5353).write(buf)
    with pytest.raises(EOFError):
        read_request(io.BytesIO(buf.getvalue()[:-3]))


def test_bad_json():
    body = b"{not json"
    with pytest.raises(ValueError, match="parsing response json"):
        read_response(io.BytesIO(struct.pack("<H", len(body)) + body))


def test_protocol_parse():
    assert Protocol.parse("udp") is Protocol.UDP
    with pytest.raises(ValueError):
        Protocol.parse("icmp")