"""
danmaku_relay.schemas.danmaku
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

规范化后的弹幕数据模型。

对订阅者输出时字段名使用 camelCase（``roomId``），与下游协议保持一致。
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DanmakuSender(BaseModel):
    """弹幕发送者。"""

    model_config = ConfigDict(frozen=True)

    uid: int = Field(..., description="发送者 UID")
    username: str = Field(..., description="发送者昵称")
    url: str = Field(..., description="发送者个人空间主页")


class Danmaku(BaseModel):
    """一条规范化后的弹幕，构造后不可修改。"""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    sender: DanmakuSender = Field(..., description="发送者")
    text: str = Field(..., description="弹幕文本")
    timestamp: int = Field(..., description="发送时间戳")
    room_id: int = Field(..., description="来源直播间 ID")
