"""
danmaku_relay.upstream.protocol
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Bilibili 直播弹幕服务器的数据包编解码。

每个数据包由 16 字节头部和包体组成，头部字段（大端序）:

  ======== ====== ===========================
  偏移      长度    含义
  ======== ====== ===========================
  0        4      整个数据包长度
  4        2      头部长度（固定 16）
  6        2      协议版本
  8        4      操作码
  12       4      序列号（固定 1）
  ======== ====== ===========================

协议版本 2 的包体是 zlib 压缩后的若干个完整数据包，需要递归解析。
"""
from __future__ import annotations

import json
import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from danmaku_relay.core.exceptions import ProtocolError
from danmaku_relay.core.logging import get_logger

logger = get_logger(__name__)

HEADER = struct.Struct(">IHHII")
HEADER_LENGTH: int = HEADER.size
SEQUENCE: int = 1


class Operation(IntEnum):
    """数据包操作码。"""

    HEARTBEAT = 2
    HEARTBEAT_REPLY = 3
    MESSAGE = 5
    AUTH = 7
    AUTH_REPLY = 8


class ProtocolVersion(IntEnum):
    """包体编码方式。"""

    JSON = 0
    INT32 = 1
    ZLIB = 2
    BROTLI = 3


@dataclass(frozen=True)
class Packet:
    """一个解析后的数据包。"""

    operation: int
    version: int
    body: bytes

    def json(self) -> dict[str, Any]:
        """将包体按 JSON 解析。"""
        try:
            data = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"包体不是合法的 JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("包体 JSON 不是对象")
        return data

    def int32(self) -> int:
        """读取心跳回复中的人气值。"""
        if len(self.body) < 4:
            raise ProtocolError("心跳回复包体长度不足")
        return int.from_bytes(self.body[:4], "big")


def encode_packet(
    operation: Operation,
    body: bytes | dict[str, Any] = b"",
    version: ProtocolVersion = ProtocolVersion.INT32,
) -> bytes:
    """编码一个待发送的数据包。``dict`` 包体按紧凑 JSON 编码。"""
    if isinstance(body, dict):
        body = json.dumps(body, separators=(",", ":")).encode("utf-8")
    header = HEADER.pack(HEADER_LENGTH + len(body), HEADER_LENGTH, version, operation, SEQUENCE)
    return header + body


def auth_body(room_id: int) -> dict[str, Any]:
    """进入直播间的认证包体，声明客户端支持 zlib 压缩。"""
    return {
        "uid": 0,
        "roomid": room_id,
        "protover": int(ProtocolVersion.ZLIB),
        "platform": "web",
        "type": 2,
    }


def read_header(data: bytes) -> tuple[int, int, int, int]:
    """解析头部，返回 (包长度, 头部长度, 协议版本, 操作码)。"""
    if len(data) < HEADER_LENGTH:
        raise ProtocolError(f"数据包头部不完整: {len(data)} 字节")
    packet_length, header_length, version, operation, _ = HEADER.unpack_from(data)
    if header_length < HEADER_LENGTH or packet_length < header_length:
        raise ProtocolError(
            f"非法的数据包头部: packet_length={packet_length}, header_length={header_length}",
        )
    return packet_length, header_length, version, operation


def decode_packets(data: bytes) -> list[Packet]:
    """把一段字节流拆分为数据包列表，zlib 压缩的批量包会被展开。

    Raises:
        ProtocolError: 头部非法或数据被截断。
    """
    packets: list[Packet] = []
    offset = 0
    while offset < len(data):
        packet_length, header_length, version, operation = read_header(data[offset:])
        end = offset + packet_length
        if end > len(data):
            raise ProtocolError(f"数据包被截断: 需要 {packet_length} 字节，剩余 {len(data) - offset} 字节")
        body = data[offset + header_length:end]
        offset = end

        if version == ProtocolVersion.ZLIB:
            try:
                packets.extend(decode_packets(zlib.decompress(body)))
            except zlib.error as e:
                raise ProtocolError(f"zlib 解压失败: {e}") from e
        elif version == ProtocolVersion.BROTLI:
            logger.warning("收到 brotli 压缩的数据包，暂不支持，已跳过 | op=%d", operation)
        else:
            packets.append(Packet(operation=operation, version=version, body=body))
    return packets
