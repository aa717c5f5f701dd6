"""
danmaku_relay.upstream.factory
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

上游连接工厂 —— 根据传输协议为指定直播间创建并打开一条连接。
"""
from __future__ import annotations

from enum import Enum

from danmaku_relay.core.exceptions import ConnectionCreationError
from danmaku_relay.upstream.connection import TcpConnection, UpstreamConnection, WebSocketConnection


class TransportMode(str, Enum):
    """上游传输协议，进程启动时确定。"""

    WEBSOCKET = "ws"
    TCP = "tcp"


class UpstreamConnectionFactory:
    """按传输协议实例化上游连接。

    Attributes:
        mode: 本进程使用的传输协议。
    """

    def __init__(self, mode: TransportMode = TransportMode.WEBSOCKET) -> None:
        self.mode = TransportMode(mode)

    def build(self, room_id: int) -> UpstreamConnection:
        """仅实例化连接对象，不建立网络连接。"""
        if self.mode is TransportMode.TCP:
            return TcpConnection(room_id)
        return WebSocketConnection(room_id)

    async def create(self, room_id: int) -> UpstreamConnection:
        """创建并打开一条连接。

        Raises:
            ConnectionCreationError: 传输层无法建立或认证包发送失败。
        """
        connection = self.build(room_id)
        try:
            await connection.open()
        except (OSError, ConnectionError) as e:
            raise ConnectionCreationError(room_id, f"无法建立 {self.mode.value} 连接: {e!r}") from e
        except Exception as e:
            raise ConnectionCreationError(room_id, f"连接初始化失败: {e!r}") from e
        return connection
