"""
tests.test_protocol
~~~~~~~~~~~~~~~~~~~

Bilibili 弹幕数据包编解码测试。
"""
from __future__ import annotations

import json
import struct
import zlib

import pytest

from danmaku_relay.core.exceptions import ProtocolError
from danmaku_relay.upstream.protocol import (
    HEADER_LENGTH,
    Operation,
    ProtocolVersion,
    auth_body,
    decode_packets,
    encode_packet,
)


def test_encode_auth_packet_header() -> None:
    """认证包头部: 总长度、头长 16、协议版本 1、操作码 7、序列号 1。"""
    data = encode_packet(Operation.AUTH, auth_body(7))

    length, header_length, version, operation, sequence = struct.unpack(">IHHII", data[:16])
    assert length == len(data)
    assert header_length == HEADER_LENGTH == 16
    assert version == ProtocolVersion.INT32
    assert operation == Operation.AUTH
    assert sequence == 1
    assert json.loads(data[16:]) == {
        "uid": 0, "roomid": 7, "protover": 2, "platform": "web", "type": 2,
    }


def test_heartbeat_has_empty_body() -> None:
    assert len(encode_packet(Operation.HEARTBEAT)) == HEADER_LENGTH


def test_decode_concatenated_packets() -> None:
    data = (
        encode_packet(Operation.AUTH_REPLY, {"code": 0}, ProtocolVersion.JSON)
        + encode_packet(Operation.HEARTBEAT_REPLY, (1234).to_bytes(4, "big"))
    )

    packets = decode_packets(data)

    assert [p.operation for p in packets] == [Operation.AUTH_REPLY, Operation.HEARTBEAT_REPLY]
    assert packets[0].json() == {"code": 0}
    assert packets[1].int32() == 1234


def test_decode_zlib_batch() -> None:
    """协议版本 2 的包体是压缩后的多个数据包，应被展开。"""
    inner = b"".join(
        encode_packet(Operation.MESSAGE, {"cmd": "DANMU_MSG", "n": i}, ProtocolVersion.JSON)
        for i in range(3)
    )
    data = encode_packet(Operation.MESSAGE, zlib.compress(inner), ProtocolVersion.ZLIB)

    packets = decode_packets(data)

    assert [p.json()["n"] for p in packets] == [0, 1, 2]


def test_brotli_packets_are_skipped() -> None:
    data = encode_packet(Operation.MESSAGE, b"\x00\x01", ProtocolVersion.BROTLI)

    assert decode_packets(data) == []


def test_truncated_packet_raises() -> None:
    data = encode_packet(Operation.MESSAGE, {"cmd": "DANMU_MSG"}, ProtocolVersion.JSON)

    with pytest.raises(ProtocolError):
        decode_packets(data[:-3])


def test_short_header_raises() -> None:
    with pytest.raises(ProtocolError):
        decode_packets(b"\x00\x00\x00")


def test_invalid_zlib_raises() -> None:
    data = encode_packet(Operation.MESSAGE, b"not zlib", ProtocolVersion.ZLIB)

    with pytest.raises(ProtocolError):
        decode_packets(data)


def test_non_json_body_raises() -> None:
    [packet] = decode_packets(encode_packet(Operation.MESSAGE, b"\xff\xfe", ProtocolVersion.JSON))

    with pytest.raises(ProtocolError):
        packet.json()
