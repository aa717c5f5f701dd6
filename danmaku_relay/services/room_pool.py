"""
danmaku_relay.services.room_pool
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间连接池 —— 每个直播间只保持一条上游连接，由多个订阅者按引用计数共享。

连接池是唯一创建和销毁上游连接的地方:

  - ``join(room_id)``      → 首次加入时创建连接，之后只增加订阅计数
  - ``leave(room_id)``     → 减少订阅计数，归零时关闭连接并移除房间
  - ``reconnect(room_id)`` → 关闭旧连接并换上新连接，订阅计数不变

同一房间上的操作通过按房间加锁串行执行，不同房间互不阻塞。
所有异常都在池内捕获并记录，不会抛给调用方。
"""
from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from danmaku_relay.core.exceptions import CloseError, ConnectionCreationError
from danmaku_relay.core.logging import get_logger
from danmaku_relay.schemas.rooms import RoomStatus
from danmaku_relay.upstream.connection import UpstreamConnection, UpstreamEvent
from danmaku_relay.upstream.factory import UpstreamConnectionFactory

logger = get_logger(__name__)

EventHandler = Callable[[int, UpstreamEvent], Awaitable[None]]


class KeyedLock:
    """按键分配的异步锁，没有协程等待时自动回收。"""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: Counter[int] = Counter()

    @asynccontextmanager
    async def hold(self, key: int) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] <= 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class RoomEntry:
    """连接池中的一个房间。

    Attributes:
        room_id: 直播间 ID。
        connection: 独占持有的上游连接；重连全部失败后为 ``None``，房间和计数保留。
        subscriber_count: 尚未离开的加入次数。
    """

    room_id: int
    connection: UpstreamConnection | None
    subscriber_count: int = 1

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.live


class RoomConnectionPool:
    """直播间 ID → 上游连接 + 订阅计数 的映射。

    Attributes:
        timeout: 创建/关闭连接的超时时间（秒），超时视为失败。
    """

    RECONNECT_ATTEMPTS: int = 3
    RECONNECT_BACKOFF: float = 1.0

    def __init__(
        self,
        factory: UpstreamConnectionFactory,
        event_handler: EventHandler | None = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        self.timeout = timeout
        self._factory = factory
        self._event_handler = event_handler
        self._entries: dict[int, RoomEntry] = {}
        self._locks = KeyedLock()
        self._dispatchers: set[asyncio.Task[None]] = set()

    # ── 生命周期操作 ──────────────────────────────────────────────────

    async def join(self, room_id: int) -> None:
        """订阅者加入房间。

        首次加入时创建失败不留下任何条目，之后的加入可以重试。
        房间已存在但连接已断开（重连放弃）时，计数照常增加，并顺带尝试重建连接。
        """
        async with self._locks.hold(room_id):
            entry = self._entries.get(room_id)
            if entry is not None:
                entry.subscriber_count += 1
                logger.debug("复用房间连接 | room=%s | 订阅计数=%d", room_id, entry.subscriber_count)
                if entry.connection is None:
                    await self._restore(entry)
                return
            try:
                connection = await self._create(room_id)
            except ConnectionCreationError as e:
                logger.error("上游连接创建失败 | room=%s | %s", room_id, e)
                return
            self._entries[room_id] = RoomEntry(room_id=room_id, connection=connection)
            logger.info("已打开房间连接 | room=%s", room_id)

    async def leave(self, room_id: int) -> None:
        """订阅者离开房间。房间不存在时什么也不做。"""
        async with self._locks.hold(room_id):
            entry = self._entries.get(room_id)
            if entry is None:
                return
            entry.subscriber_count -= 1
            if entry.subscriber_count > 0:
                logger.debug("订阅者离开 | room=%s | 订阅计数=%d", room_id, entry.subscriber_count)
                return
            del self._entries[room_id]
            logger.debug("房间 %s 已无订阅者，关闭连接", room_id)
            if entry.connection is not None:
                await self._close(room_id, entry.connection)

    async def reconnect(self, room_id: int) -> None:
        """关闭旧连接并换上新连接，订阅计数保持不变。

        新连接创建失败时按指数退避重试；全部失败则保留房间和订阅计数，
        只把连接标记为断开。之后的 ``join`` 或 ``reconnect`` 会重新创建连接。
        """
        async with self._locks.hold(room_id):
            entry = self._entries.get(room_id)
            if entry is None:
                return
            if entry.connection is not None:
                await self._close(room_id, entry.connection)
                entry.connection = None

            for attempt in range(1, self.RECONNECT_ATTEMPTS + 1):
                try:
                    entry.connection = await self._create(room_id)
                except ConnectionCreationError as e:
                    logger.error(
                        "重连失败 | room=%s | 第 %d/%d 次 | %s",
                        room_id, attempt, self.RECONNECT_ATTEMPTS, e,
                    )
                    if attempt < self.RECONNECT_ATTEMPTS:
                        await asyncio.sleep(self.RECONNECT_BACKOFF * 2 ** (attempt - 1))
                    continue
                logger.info("已重连房间 | room=%s | 订阅计数=%d", room_id, entry.subscriber_count)
                return

            logger.error(
                "多次重连失败，房间保持断开 | room=%s | 订阅计数=%d",
                room_id, entry.subscriber_count,
            )

    async def close_all(self) -> None:
        """进程关闭时释放所有连接。"""
        for room_id in list(self._entries):
            async with self._locks.hold(room_id):
                entry = self._entries.pop(room_id, None)
                if entry is not None and entry.connection is not None:
                    await self._close(room_id, entry.connection)
        for task in list(self._dispatchers):
            task.cancel()
        await asyncio.gather(*self._dispatchers, return_exceptions=True)

    # ── 查询 ──────────────────────────────────────────────────────────

    def is_connected(self, room_id: int) -> bool:
        """房间存在且上游连接已完成握手。"""
        entry = self._entries.get(room_id)
        return entry is not None and entry.connected

    def room_ids(self) -> list[int]:
        """当前打开的房间 ID 快照。"""
        return list(self._entries)

    def subscriber_count(self, room_id: int) -> int:
        """房间的订阅计数，房间不存在时为 0。"""
        entry = self._entries.get(room_id)
        return entry.subscriber_count if entry is not None else 0

    def statuses(self) -> list[RoomStatus]:
        """所有房间的摘要信息。"""
        return [
            RoomStatus(
                room_id=entry.room_id,
                subscriber_count=entry.subscriber_count,
                connected=entry.connected,
            )
            for entry in self._entries.values()
        ]

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── 内部实现 ──────────────────────────────────────────────────────

    async def _restore(self, entry: RoomEntry) -> None:
        try:
            entry.connection = await self._create(entry.room_id)
        except ConnectionCreationError as e:
            logger.error("断开的房间重建连接失败 | room=%s | %s", entry.room_id, e)
            return
        logger.info("已恢复房间连接 | room=%s | 订阅计数=%d", entry.room_id, entry.subscriber_count)

    async def _create(self, room_id: int) -> UpstreamConnection:
        try:
            connection = await asyncio.wait_for(self._factory.create(room_id), self.timeout)
        except ConnectionCreationError:
            raise
        except asyncio.TimeoutError as e:
            raise ConnectionCreationError(room_id, f"创建超时（{self.timeout}s）") from e
        except Exception as e:
            raise ConnectionCreationError(room_id, repr(e)) from e
        self._start_dispatcher(room_id, connection)
        return connection

    async def _close(self, room_id: int, connection: UpstreamConnection) -> None:
        try:
            await asyncio.wait_for(connection.close(), self.timeout)
        except asyncio.TimeoutError:
            logger.error("%s", CloseError(room_id, f"关闭超时（{self.timeout}s）"))
        except Exception as e:
            logger.error("%s", CloseError(room_id, repr(e)), exc_info=True)

    def _start_dispatcher(self, room_id: int, connection: UpstreamConnection) -> None:
        task = asyncio.create_task(
            self._dispatch(room_id, connection), name=f"dispatch-{room_id}",
        )
        self._dispatchers.add(task)
        task.add_done_callback(self._dispatchers.discard)

    async def _dispatch(self, room_id: int, connection: UpstreamConnection) -> None:
        """按到达顺序把一条连接的事件交给处理函数，直到连接关闭。"""
        while True:
            event = await connection.events.get()
            if event is None:
                return
            if self._event_handler is None:
                continue
            try:
                await self._event_handler(room_id, event)
            except Exception as e:
                logger.error("事件处理失败 | room=%s | %s", room_id, e, exc_info=True)
