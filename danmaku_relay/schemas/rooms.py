"""
danmaku_relay.schemas.rooms
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间状态与订阅者指令相关的 Pydantic 模型。
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SubscriberAction = Literal["join", "leave", "reconnect"]


class RoomStatus(BaseModel):
    """连接池中一个房间的摘要信息。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    room_id: int = Field(..., description="直播间 ID")
    subscriber_count: int = Field(..., ge=0, description="订阅计数")
    connected: bool = Field(..., description="上游连接是否已完成握手")


class SubscriberCommand(BaseModel):
    """订阅者通过 WebSocket 发送的指令。

    .. code-block:: json

        {"action": "join", "roomId": 7}
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: SubscriberAction = Field(..., description="join / leave / reconnect")
    room_id: int = Field(..., gt=0, description="直播间 ID")
