"""
danmaku_relay.services.normalizer
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

把上游 ``DANMU_MSG`` 事件转换为规范化的 ``Danmaku``。

``DANMU_MSG`` 的 ``info`` 数组中用到的字段:

  - ``info[1]``        —— 弹幕文本
  - ``info[2][0]``     —— 发送者 UID
  - ``info[2][1]``     —— 发送者昵称
  - ``info[9]["ts"]``  —— 时间戳
"""
from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from danmaku_relay.core.exceptions import MalformedPayloadError
from danmaku_relay.schemas.danmaku import Danmaku, DanmakuSender

DANMAKU_COMMAND: str = "DANMU_MSG"
SPACE_URL_PREFIX: str = "https://space.bilibili.com/"


def profile_url(uid: int) -> str:
    """发送者个人空间地址。"""
    return f"{SPACE_URL_PREFIX}{uid}"


def normalize_danmaku(payload: dict[str, Any], room_id: int) -> Danmaku:
    """将一条 ``DANMU_MSG`` 事件转换为 ``Danmaku``。

    Args:
        payload: 上游事件的原始 JSON。
        room_id: 事件所属的直播间 ID。

    Raises:
        MalformedPayloadError: 缺少发送者 UID、昵称、文本或时间戳。
    """
    try:
        info = payload["info"]
        sender_info = info[2]
        uid = sender_info[0]
        username = sender_info[1]
        text = info[1]
        timestamp = info[9]["ts"]
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedPayloadError(f"弹幕事件缺少必需字段: {e!r}") from e

    if isinstance(uid, bool) or not isinstance(uid, int):
        raise MalformedPayloadError(f"发送者 UID 不是整数: {uid!r}")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise MalformedPayloadError(f"时间戳不是整数: {timestamp!r}")

    try:
        return Danmaku(
            sender=DanmakuSender(uid=uid, username=username, url=profile_url(uid)),
            text=text,
            timestamp=timestamp,
            room_id=room_id,
        )
    except ValidationError as e:
        raise MalformedPayloadError(f"弹幕字段类型非法: {e}") from e
