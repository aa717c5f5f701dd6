"""
danmaku_relay.services.reconnect_scheduler
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

定时批量重连 —— 按 cron 表达式周期性地重建所有上游连接，避免长连接失效。

每次触发时先对当前打开的房间取快照，再按顺序逐个重连，相邻两个房间之间
等待固定间隔，避免同时向远端发起大量连接。批量任务执行期间错过的触发会被跳过。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime

from croniter import croniter

from danmaku_relay.core.config import normalize_cron_expression
from danmaku_relay.core.logging import get_logger
from danmaku_relay.services.room_pool import RoomConnectionPool

logger = get_logger(__name__)

BATCH_RECONNECT_DELAY: float = 10.0


class ReconnectScheduler:
    """批量重连调度器。

    Attributes:
        expression: cron 表达式，为 None 时不启用定时重连。
        delay: 相邻两个房间重连之间的间隔（秒）。
    """

    def __init__(
        self,
        pool: RoomConnectionPool,
        expression: str | None,
        delay: float = BATCH_RECONNECT_DELAY,
    ) -> None:
        self.expression = expression
        self.delay = delay
        self._pool = pool
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """启动后台调度任务。未配置表达式时只记录一条日志。"""
        if not self.expression:
            logger.info("未配置重连计划，定时批量重连已关闭")
            return
        if self.running:
            return
        logger.info('重连任务计划于 "%s" 执行', self.expression)
        self._task = asyncio.create_task(self._run(), name="batch-reconnect")

    async def stop(self) -> None:
        """取消调度任务（包括正在执行的批量重连）。"""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def next_fire_time(self, now: datetime | None = None) -> datetime:
        """下一次触发时间。"""
        return next(self.fire_times(now))

    def fire_times(self, start: datetime | None = None) -> Iterator[datetime]:
        """从 ``start`` 之后依次产出严格递增的触发时间。"""
        if not self.expression:
            raise ValueError("未配置重连计划")
        schedule = croniter(normalize_cron_expression(self.expression), start or self._now())
        while True:
            yield schedule.get_next(datetime)

    async def batch_reconnect(self) -> None:
        """对当前打开的房间快照逐个重连。"""
        room_ids = self._pool.room_ids()
        logger.debug("开始批量重连 | 房间数=%d", len(room_ids))
        for index, room_id in enumerate(room_ids):
            if index > 0:
                await asyncio.sleep(self.delay)
            await self._pool.reconnect(room_id)
        logger.debug("批量重连完成 | 房间数=%d", len(room_ids))

    def _now(self) -> datetime:
        return datetime.now()

    async def _run(self) -> None:
        # 触发时间沿同一个 croniter 推进，墙钟回拨也不会重复触发同一时刻
        fires = self.fire_times()
        fire = next(fires)
        while True:
            wait = (fire - self._now()).total_seconds()
            await asyncio.sleep(max(wait, 0.0))
            try:
                await self.batch_reconnect()
            except Exception as e:
                logger.error("批量重连异常: %s", e, exc_info=True)
            now = self._now()
            fire = next(fires)
            while fire <= now:
                fire = next(fires)
