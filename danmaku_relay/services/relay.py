"""
danmaku_relay.services.relay
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

弹幕转发编排 —— 把订阅者的加入/离开事件接到连接池，把上游弹幕送往订阅者。

``DanmakuRelay`` 在 FastAPI lifespan 中创建并挂载于 ``app.state.relay``。
"""
from __future__ import annotations

from danmaku_relay.core.config import Settings
from danmaku_relay.core.exceptions import MalformedPayloadError
from danmaku_relay.core.logging import get_logger
from danmaku_relay.services.normalizer import DANMAKU_COMMAND, normalize_danmaku
from danmaku_relay.services.reconnect_scheduler import ReconnectScheduler
from danmaku_relay.services.room_pool import RoomConnectionPool
from danmaku_relay.services.subscriber_hub import SubscriberHub
from danmaku_relay.upstream.connection import EventKind, UpstreamEvent
from danmaku_relay.upstream.factory import TransportMode, UpstreamConnectionFactory

logger = get_logger(__name__)


class DanmakuRelay:
    """弹幕源服务的编排者，持有连接池、调度器和订阅者广播器。

    Attributes:
        pool: 房间连接池。
        hub: 订阅者广播器。
        scheduler: 定时批量重连调度器。
    """

    def __init__(
        self,
        factory: UpstreamConnectionFactory,
        hub: SubscriberHub | None = None,
        *,
        reconnect_cron: str | None = None,
        reconnect_delay: float = 10.0,
        timeout: float = 10.0,
    ) -> None:
        self.hub = hub or SubscriberHub()
        self.pool = RoomConnectionPool(factory, self.handle_event, timeout=timeout)
        self.scheduler = ReconnectScheduler(self.pool, reconnect_cron, delay=reconnect_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> DanmakuRelay:
        """按配置组装。"""
        return cls(
            UpstreamConnectionFactory(TransportMode(settings.BILIBILI_PROTOCOL)),
            reconnect_cron=settings.RECONNECT_CRON,
            reconnect_delay=settings.BATCH_RECONNECT_DELAY,
            timeout=settings.CONNECTION_TIMEOUT,
        )

    # ── 订阅者事件 ────────────────────────────────────────────────────

    async def on_subscriber_join(self, room_id: int) -> None:
        await self.pool.join(room_id)

    async def on_subscriber_leave(self, room_id: int) -> None:
        await self.pool.leave(room_id)

    async def on_subscriber_reconnect(self, room_id: int) -> None:
        await self.pool.reconnect(room_id)

    # ── 上游事件 ──────────────────────────────────────────────────────

    async def handle_event(self, room_id: int, event: UpstreamEvent) -> None:
        """处理一条上游事件，由连接池的分发任务按顺序调用。"""
        if event.kind is EventKind.LIVE:
            logger.debug("已连接到直播间: %s", room_id)
        elif event.kind is EventKind.ERROR:
            logger.error("上游连接错误 | room=%s | %s", room_id, event.error)
        elif event.kind is EventKind.MESSAGE and event.command == DANMAKU_COMMAND:
            try:
                danmaku = normalize_danmaku(event.payload or {}, room_id)
            except MalformedPayloadError as e:
                logger.warning("丢弃格式错误的弹幕 | room=%s | %s", room_id, e)
                return
            await self.hub.send_danmaku(danmaku)

    # ── 进程生命周期 ──────────────────────────────────────────────────

    def start(self) -> None:
        self.scheduler.start()

    async def shutdown(self) -> None:
        """停止调度并关闭所有上游连接。"""
        await self.scheduler.stop()
        await self.pool.close_all()
