"""
danmaku_relay.services.subscriber_hub
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

订阅者广播器 —— 维护每个直播间的订阅者连接，并把弹幕推送给它们。
"""
from __future__ import annotations

import asyncio
from collections import defaultdict

from fastapi import WebSocket

from danmaku_relay.core.logging import get_logger
from danmaku_relay.schemas.danmaku import Danmaku

logger = get_logger(__name__)


class SubscriberHub:
    """按房间分组的订阅者 WebSocket 集合。

    同一个连接可以订阅多个房间，也可以重复订阅同一房间（只会收到一份弹幕）。
    """

    def __init__(self) -> None:
        self._rooms: defaultdict[int, set[WebSocket]] = defaultdict(set)

    def attach(self, room_id: int, websocket: WebSocket) -> None:
        """把连接加入房间的广播列表。"""
        self._rooms[room_id].add(websocket)

    def detach(self, room_id: int, websocket: WebSocket) -> None:
        """把连接移出房间的广播列表。"""
        subscribers = self._rooms.get(room_id)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self._rooms[room_id]

    def online_count(self, room_id: int) -> int:
        """房间当前的订阅连接数。"""
        return len(self._rooms.get(room_id, ()))

    async def send_danmaku(self, danmaku: Danmaku) -> None:
        """向订阅了该房间的所有连接广播弹幕。"""
        subscribers = list(self._rooms.get(danmaku.room_id, ()))
        if not subscribers:
            return
        message = {"type": "danmaku", "data": danmaku.model_dump(by_alias=True)}
        results = await asyncio.gather(
            *(ws.send_json(message) for ws in subscribers), return_exceptions=True,
        )
        for ws, result in zip(subscribers, results):
            if isinstance(result, Exception):
                logger.warning("广播失败，移除断开的连接 | room=%s", danmaku.room_id)
                self.detach(danmaku.room_id, ws)
