"""
danmaku_relay.api.room
~~~~~~~~~~~~~~~~~~~~~~

房间 REST 接口。

端点:
  - ``GET  /rooms``                      → 当前打开的房间及订阅计数
  - ``POST /rooms/{room_id}/reconnect``  → 手动重连指定房间
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, status

from danmaku_relay.api.deps import get_relay
from danmaku_relay.core.security import require_basic_auth
from danmaku_relay.schemas.api_response import ApiResponse
from danmaku_relay.schemas.rooms import RoomStatus
from danmaku_relay.services.relay import DanmakuRelay

router: APIRouter = APIRouter(dependencies=[Depends(require_basic_auth)])


@router.get("/rooms", summary="获取已打开的房间列表")
async def list_rooms(relay: DanmakuRelay = Depends(get_relay)) -> ApiResponse[list[RoomStatus]]:
    """返回连接池中所有房间的订阅计数和连接状态。"""
    return ApiResponse.ok(data=relay.pool.statuses())


@router.post("/rooms/{room_id}/reconnect", summary="重连指定房间")
async def reconnect_room(
    room_id: int = Path(..., gt=0, description="直播间 ID"),
    relay: DanmakuRelay = Depends(get_relay),
) -> ApiResponse[RoomStatus]:
    """关闭并重建指定房间的上游连接。

    Args:
        room_id: 直播间 ID，必须已被订阅。
    """
    if room_id not in relay.pool:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"房间 {room_id} 未打开")
    await relay.on_subscriber_reconnect(room_id)
    return ApiResponse.ok(
        data=RoomStatus(
            room_id=room_id,
            subscriber_count=relay.pool.subscriber_count(room_id),
            connected=relay.pool.is_connected(room_id),
        ),
    )
