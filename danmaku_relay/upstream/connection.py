"""
danmaku_relay.upstream.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

上游直播间连接 —— 与 Bilibili 弹幕服务器保持一条长连接。

每条连接把收到的事件依次放入自己的 ``events`` 队列:

  - ``LIVE``    —— 认证成功，已进入直播间
  - ``MESSAGE`` —— 一条业务消息（``DANMU_MSG`` 等）
  - ``ERROR``   —— 运行中的错误（不致命，连接保持打开）

``close()`` 之后队列末尾会放入 ``None`` 作为结束标记。

传输层意外断开时连接会自行重新建立（保活），对连接池而言它始终是打开的。
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from websockets.asyncio.client import ClientConnection, connect

from danmaku_relay.core.exceptions import ConnectionRuntimeError, ProtocolError
from danmaku_relay.core.logging import get_logger
from danmaku_relay.upstream.protocol import (
    HEADER_LENGTH,
    Operation,
    Packet,
    auth_body,
    decode_packets,
    encode_packet,
    read_header,
)

logger = get_logger(__name__)


class EventKind(str, Enum):
    """上游连接事件类型。"""

    LIVE = "live"
    MESSAGE = "message"
    ERROR = "error"


@dataclass(frozen=True)
class UpstreamEvent:
    """上游连接产生的一个事件。

    Attributes:
        kind: 事件类型。
        command: ``MESSAGE`` 事件的命令名（去掉 ``:`` 之后的后缀）。
        payload: ``MESSAGE`` 事件的原始 JSON。
        error: ``ERROR`` 事件携带的异常。
    """

    kind: EventKind
    command: str | None = None
    payload: dict[str, Any] | None = None
    error: Exception | None = None


class UpstreamConnection(ABC):
    """一条上游直播间连接的公共逻辑：认证、心跳、读循环和保活。

    子类只需实现传输层的建立、收发和断开。

    Attributes:
        room_id: 直播间 ID。
        live: 是否已完成认证握手。
        closed: 是否已被主动关闭。
        events: 事件队列，``None`` 表示连接已关闭。
    """

    HEARTBEAT_INTERVAL: float = 30.0
    RETRY_DELAY: float = 1.0
    MAX_RETRY_DELAY: float = 30.0

    def __init__(self, room_id: int) -> None:
        self.room_id = room_id
        self.live = False
        self.closed = False
        self.events: asyncio.Queue[UpstreamEvent | None] = asyncio.Queue()
        self._read_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None

    # ── 传输层 ────────────────────────────────────────────────────────

    @abstractmethod
    async def _connect(self) -> None:
        """建立传输层连接。"""

    @abstractmethod
    async def _send(self, data: bytes) -> None:
        """发送一段原始字节。"""

    @abstractmethod
    async def _receive(self) -> bytes:
        """接收下一段原始字节（一个或多个完整数据包）。"""

    @abstractmethod
    async def _disconnect(self) -> None:
        """断开传输层连接。"""

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def open(self) -> None:
        """连接并发送进房认证包，然后启动读循环和心跳。"""
        await self._handshake()
        self._read_task = asyncio.create_task(
            self._read_loop(), name=f"upstream-read-{self.room_id}",
        )
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"upstream-heartbeat-{self.room_id}",
        )

    async def close(self) -> None:
        """关闭连接。重复调用无副作用。"""
        if self.closed:
            return
        self.closed = True
        self.live = False
        tasks = [t for t in (self._read_task, self._heartbeat_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self._disconnect()
        finally:
            self.events.put_nowait(None)

    async def _handshake(self) -> None:
        await self._connect()
        try:
            await self._send(encode_packet(Operation.AUTH, auth_body(self.room_id)))
        except BaseException:
            await self._disconnect()
            raise

    # ── 后台任务 ──────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        while not self.closed:
            try:
                data = await self._receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.closed:
                    return
                self.live = False
                self._emit_error(f"连接中断: {e!r}")
                await self._reopen()
                continue

            try:
                packets = decode_packets(data)
            except ProtocolError as e:
                self._emit_error(f"数据包解析失败: {e}")
                continue
            for packet in packets:
                self._handle_packet(packet)

    async def _reopen(self) -> None:
        """传输层断开后按指数退避重新建立连接，直到成功或被关闭。"""
        delay = self.RETRY_DELAY
        while not self.closed:
            await asyncio.sleep(delay)
            try:
                await self._disconnect()
                await self._handshake()
                logger.debug("上游连接已重新建立 | room=%s", self.room_id)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._emit_error(f"重新连接失败: {e!r}")
                delay = min(delay * 2, self.MAX_RETRY_DELAY)

    async def _heartbeat_loop(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.HEARTBEAT_INTERVAL)
            if not self.live:
                continue
            try:
                await self._send(encode_packet(Operation.HEARTBEAT))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # 断线由读循环负责处理
                logger.debug("心跳发送失败 | room=%s | %r", self.room_id, e)

    # ── 事件 ──────────────────────────────────────────────────────────

    def _handle_packet(self, packet: Packet) -> None:
        try:
            if packet.operation == Operation.AUTH_REPLY:
                code = packet.json().get("code", 0)
                if code != 0:
                    self._emit_error(f"进房认证失败: code={code}")
                    return
                self.live = True
                self.events.put_nowait(UpstreamEvent(kind=EventKind.LIVE))
            elif packet.operation == Operation.HEARTBEAT_REPLY:
                logger.debug("人气值 | room=%s | %d", self.room_id, packet.int32())
            elif packet.operation == Operation.MESSAGE:
                data = packet.json()
                command = str(data.get("cmd", "")).split(":", 1)[0]
                self.events.put_nowait(
                    UpstreamEvent(kind=EventKind.MESSAGE, command=command, payload=data),
                )
        except ProtocolError as e:
            self._emit_error(f"数据包内容非法: {e}")

    def _emit_error(self, message: str) -> None:
        self.events.put_nowait(
            UpstreamEvent(
                kind=EventKind.ERROR,
                error=ConnectionRuntimeError(self.room_id, message),
            ),
        )


class WebSocketConnection(UpstreamConnection):
    """基于 WebSocket 的上游连接。"""

    URL: str = "wss://broadcastlv.chat.bilibili.com/sub"

    def __init__(self, room_id: int, url: str | None = None) -> None:
        super().__init__(room_id)
        self.url = url or self.URL
        self._ws: ClientConnection | None = None

    async def _connect(self) -> None:
        self._ws = await connect(self.url)

    async def _send(self, data: bytes) -> None:
        if self._ws is None:
            raise ConnectionError("WebSocket 未连接")
        await self._ws.send(data)

    async def _receive(self) -> bytes:
        if self._ws is None:
            raise ConnectionError("WebSocket 未连接")
        message = await self._ws.recv()
        if isinstance(message, str):
            return message.encode("utf-8")
        return message

    async def _disconnect(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()


class TcpConnection(UpstreamConnection):
    """基于原始 TCP 套接字的上游连接。"""

    HOST: str = "broadcastlv.chat.bilibili.com"
    PORT: int = 2243

    def __init__(self, room_id: int, host: str | None = None, port: int | None = None) -> None:
        super().__init__(room_id)
        self.host = host or self.HOST
        self.port = port or self.PORT
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def _connect(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)

    async def _send(self, data: bytes) -> None:
        if self._writer is None:
            raise ConnectionError("TCP 未连接")
        self._writer.write(data)
        await self._writer.drain()

    async def _receive(self) -> bytes:
        """按头部的包长度读出一个完整数据包（包长度含头部）。

        头部非法时抛出 ``ProtocolError``，此时字节流已无法对齐，由读循环重连。
        """
        if self._reader is None:
            raise ConnectionError("TCP 未连接")
        header = await self._reader.readexactly(HEADER_LENGTH)
        packet_length, _, _, _ = read_header(header)
        rest = await self._reader.readexactly(packet_length - len(header))
        return header + rest

    async def _disconnect(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            await writer.wait_closed()
