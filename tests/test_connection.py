"""
tests.test_connection
~~~~~~~~~~~~~~~~~~~~~

UpstreamConnection 公共逻辑测试：握手、事件入队、断线保活和关闭。

传输层由 ``ScriptedConnection`` 替代，收到的数据由测试逐段喂入。
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from danmaku_relay.core.exceptions import ConnectionCreationError, ConnectionRuntimeError, ProtocolError
from danmaku_relay.upstream.connection import (
    EventKind,
    TcpConnection,
    UpstreamConnection,
    WebSocketConnection,
)
from danmaku_relay.upstream.factory import TransportMode, UpstreamConnectionFactory
from danmaku_relay.upstream.protocol import HEADER, Operation, ProtocolVersion, decode_packets, encode_packet
from tests.fakes import danmu_payload, eventually


class ScriptedConnection(UpstreamConnection):
    """收发都在内存中完成的连接。"""

    RETRY_DELAY = 0.0

    def __init__(self, room_id: int) -> None:
        super().__init__(room_id)
        self.sent: list[bytes] = []
        self.incoming: asyncio.Queue[bytes | Exception] = asyncio.Queue()
        self.connects = 0
        self.disconnects = 0

    async def _connect(self) -> None:
        self.connects += 1

    async def _send(self, data: bytes) -> None:
        self.sent.append(data)

    async def _receive(self) -> bytes:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def _disconnect(self) -> None:
        self.disconnects += 1


def auth_reply(code: int = 0) -> bytes:
    return encode_packet(Operation.AUTH_REPLY, {"code": code}, ProtocolVersion.JSON)


def message(payload: dict) -> bytes:
    return encode_packet(Operation.MESSAGE, payload, ProtocolVersion.JSON)


class TestHandshake:
    """测试进房认证。"""

    @pytest.mark.asyncio
    async def test_open_sends_auth_packet(self) -> None:
        connection = ScriptedConnection(7)

        await connection.open()

        [packet] = decode_packets(connection.sent[0])
        assert packet.operation == Operation.AUTH
        assert json.loads(packet.body)["roomid"] == 7
        assert connection.live is False
        await connection.close()

    @pytest.mark.asyncio
    async def test_auth_reply_marks_live(self) -> None:
        connection = ScriptedConnection(7)
        await connection.open()

        connection.incoming.put_nowait(auth_reply())
        event = await asyncio.wait_for(connection.events.get(), 1.0)

        assert event.kind is EventKind.LIVE
        assert connection.live is True
        await connection.close()

    @pytest.mark.asyncio
    async def test_rejected_auth_emits_error(self) -> None:
        connection = ScriptedConnection(7)
        await connection.open()

        connection.incoming.put_nowait(auth_reply(code=-101))
        event = await asyncio.wait_for(connection.events.get(), 1.0)

        assert event.kind is EventKind.ERROR
        assert connection.live is False
        await connection.close()


class TestEvents:
    """测试消息与错误事件。"""

    @pytest.mark.asyncio
    async def test_message_event_strips_command_suffix(self) -> None:
        connection = ScriptedConnection(7)
        await connection.open()
        payload = danmu_payload()
        payload["cmd"] = "DANMU_MSG:4:0:2:2:2:0"

        connection.incoming.put_nowait(message(payload))
        event = await asyncio.wait_for(connection.events.get(), 1.0)

        assert event.kind is EventKind.MESSAGE
        assert event.command == "DANMU_MSG"
        assert event.payload == payload
        await connection.close()

    @pytest.mark.asyncio
    async def test_garbage_frame_emits_error_and_keeps_reading(self) -> None:
        """无法解析的数据只产生一个错误事件，后续数据照常处理。"""
        connection = ScriptedConnection(7)
        await connection.open()

        connection.incoming.put_nowait(b"\x00\x00\x00")
        connection.incoming.put_nowait(message({"cmd": "DANMU_MSG"}))
        first = await asyncio.wait_for(connection.events.get(), 1.0)
        second = await asyncio.wait_for(connection.events.get(), 1.0)

        assert first.kind is EventKind.ERROR
        assert isinstance(first.error, ConnectionRuntimeError)
        assert second.kind is EventKind.MESSAGE
        assert not connection.closed
        await connection.close()

    @pytest.mark.asyncio
    async def test_transport_drop_reopens(self) -> None:
        """传输层断开时发出错误事件并重新握手，连接保持打开。"""
        connection = ScriptedConnection(7)
        await connection.open()
        connection.incoming.put_nowait(auth_reply())
        await asyncio.wait_for(connection.events.get(), 1.0)

        connection.incoming.put_nowait(ConnectionResetError("reset by peer"))
        event = await asyncio.wait_for(connection.events.get(), 1.0)
        connection.incoming.put_nowait(auth_reply())
        relive = await asyncio.wait_for(connection.events.get(), 1.0)

        assert event.kind is EventKind.ERROR
        assert relive.kind is EventKind.LIVE
        assert connection.connects == 2
        assert len(connection.sent) == 2
        assert not connection.closed
        await connection.close()


class TestClose:
    """测试关闭。"""

    @pytest.mark.asyncio
    async def test_close_ends_event_stream(self) -> None:
        connection = ScriptedConnection(7)
        await connection.open()
        connection.incoming.put_nowait(auth_reply())
        await asyncio.wait_for(connection.events.get(), 1.0)

        await connection.close()

        assert connection.live is False
        assert connection.disconnects == 1
        assert await asyncio.wait_for(connection.events.get(), 1.0) is None

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        connection = ScriptedConnection(7)
        await connection.open()

        await connection.close()
        await connection.close()

        assert connection.disconnects == 1


class FedTcpConnection(TcpConnection):
    """读端换成由测试喂数据的 ``StreamReader``，每次握手换一个新的。"""

    RETRY_DELAY = 0.0

    def __init__(self, room_id: int) -> None:
        super().__init__(room_id)
        self.readers: list[asyncio.StreamReader] = []

    async def _connect(self) -> None:
        self._reader = asyncio.StreamReader()
        self.readers.append(self._reader)

    async def _send(self, data: bytes) -> None:
        pass

    async def _disconnect(self) -> None:
        self._reader = None


class TestTcpFraming:
    """测试 TCP 按长度前缀切分数据包。"""

    @pytest.mark.asyncio
    async def test_packet_split_across_reads(self) -> None:
        """一个数据包分几段到达时拼成完整的包，后面的包留给下一次读取。"""
        connection = TcpConnection(7)
        connection._reader = asyncio.StreamReader()
        first = message(danmu_payload(text="first"))
        second = message(danmu_payload(text="second"))

        pending = asyncio.create_task(connection._receive())
        for chunk in (first[:10], first[10:20], first[20:] + second[:5]):
            connection._reader.feed_data(chunk)
            await asyncio.sleep(0)
        connection._reader.feed_data(second[5:])

        assert await asyncio.wait_for(pending, 1.0) == first
        assert await connection._receive() == second

    @pytest.mark.asyncio
    async def test_longer_header_is_read_whole(self) -> None:
        """头部长度大于 16 时按包长度读出整个包。"""
        connection = TcpConnection(7)
        connection._reader = asyncio.StreamReader()
        body = b'{"cmd":"X"}'
        packet = HEADER.pack(20 + len(body), 20, ProtocolVersion.JSON, Operation.MESSAGE, 1) + b"\x00" * 4 + body
        connection._reader.feed_data(packet)

        assert await connection._receive() == packet

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "header",
        [
            HEADER.pack(8, 16, 0, Operation.MESSAGE, 1),
            HEADER.pack(32, 12, 0, Operation.MESSAGE, 1),
        ],
    )
    async def test_invalid_length_raises_protocol_error(self, header: bytes) -> None:
        connection = TcpConnection(7)
        connection._reader = asyncio.StreamReader()
        connection._reader.feed_data(header + b"\x00" * 16)

        with pytest.raises(ProtocolError):
            await connection._receive()

    @pytest.mark.asyncio
    async def test_truncated_stream_raises(self) -> None:
        connection = TcpConnection(7)
        connection._reader = asyncio.StreamReader()
        connection._reader.feed_data(message({"cmd": "X"})[:20])
        connection._reader.feed_eof()

        with pytest.raises(asyncio.IncompleteReadError):
            await connection._receive()

    @pytest.mark.asyncio
    async def test_invalid_header_reopens_stream(self) -> None:
        """读到非法头部后发出错误事件并重新握手，新连接上的数据照常处理。"""
        connection = FedTcpConnection(7)
        await connection.open()

        connection.readers[0].feed_data(HEADER.pack(8, 16, 0, Operation.MESSAGE, 1))
        error = await asyncio.wait_for(connection.events.get(), 1.0)
        await eventually(lambda: len(connection.readers) == 2)
        connection.readers[1].feed_data(auth_reply())
        relive = await asyncio.wait_for(connection.events.get(), 1.0)

        assert error.kind is EventKind.ERROR
        assert relive.kind is EventKind.LIVE
        await connection.close()


class TestFactory:
    """测试按传输协议创建连接。"""

    def test_build_by_mode(self) -> None:
        assert isinstance(UpstreamConnectionFactory(TransportMode.WEBSOCKET).build(7), WebSocketConnection)
        assert isinstance(UpstreamConnectionFactory(TransportMode("tcp")).build(7), TcpConnection)

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(ValueError):
            UpstreamConnectionFactory("udp")

    @pytest.mark.asyncio
    async def test_open_failure_raises_creation_error(self) -> None:
        factory = UpstreamConnectionFactory(TransportMode.TCP)

        with patch(
            "danmaku_relay.upstream.connection.asyncio.open_connection",
            new=AsyncMock(side_effect=OSError("connection refused")),
        ):
            with pytest.raises(ConnectionCreationError):
                await factory.create(7)
