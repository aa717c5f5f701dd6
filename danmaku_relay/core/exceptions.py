"""
danmaku_relay.core.exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

弹幕转发服务的异常体系。

房间连接池的生命周期操作会在发生处捕获并记录这些异常，
不会向调度器或订阅端传播。
"""
from __future__ import annotations


class RelayError(Exception):
    """所有业务异常的基类。"""


class RoomConnectionError(RelayError):
    """与某个直播间上游连接相关的异常。"""

    def __init__(self, room_id: int, message: str) -> None:
        super().__init__(f"room_id={room_id}: {message}")
        self.room_id = room_id


class ConnectionCreationError(RoomConnectionError):
    """上游连接创建失败（网络不可达、认证失败、超时等）。"""


class ConnectionRuntimeError(RoomConnectionError):
    """已建立的上游连接在运行中发生错误（连接保持打开，不会自动恢复）。"""


class CloseError(RoomConnectionError):
    """关闭上游连接时出错（条目照常移除）。"""


class MalformedPayloadError(RelayError):
    """上游弹幕事件缺少必需字段，无法规范化。"""


class ProtocolError(RelayError):
    """上游数据包无法解析。"""
