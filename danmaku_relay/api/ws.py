"""
danmaku_relay.api.ws
~~~~~~~~~~~~~~~~~~~~

订阅者 WebSocket 接口。

握手时校验 HTTP Basic 凭据（未配置凭据时放行）。

消息协议:
  - 订阅者 → 服务端: ``{"action": "join" | "leave" | "reconnect", "roomId": 7}``
  - 服务端 → 订阅者: ``{"type": "ack", "action": "join", "roomId": 7}``
  - 服务端 → 订阅者: ``{"type": "danmaku", "data": {...}}``
  - 服务端 → 订阅者: ``{"type": "error", "msg": "..."}``

连接断开时，该连接尚未离开的每一次加入都会补一次离开。
"""
from __future__ import annotations

from collections import Counter

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from danmaku_relay.core.logging import get_logger
from danmaku_relay.core.security import is_authorized_header
from danmaku_relay.schemas.rooms import SubscriberCommand
from danmaku_relay.services.relay import DanmakuRelay

logger = get_logger(__name__)

router: APIRouter = APIRouter()


async def _apply_command(
    websocket: WebSocket,
    relay: DanmakuRelay,
    command: SubscriberCommand,
    joined: Counter[int],
) -> None:
    room_id = command.room_id
    if command.action == "join":
        joined[room_id] += 1
        relay.hub.attach(room_id, websocket)
        await relay.on_subscriber_join(room_id)
        logger.info("订阅者加入房间 | room=%s | 订阅连接: %d", room_id, relay.hub.online_count(room_id))
    elif command.action == "leave":
        if joined[room_id] <= 0:
            await websocket.send_json({"type": "error", "msg": f"未加入房间 {room_id}"})
            return
        joined[room_id] -= 1
        if joined[room_id] == 0:
            del joined[room_id]
            relay.hub.detach(room_id, websocket)
        await relay.on_subscriber_leave(room_id)
        logger.info("订阅者离开房间 | room=%s | 订阅连接: %d", room_id, relay.hub.online_count(room_id))
    else:
        await relay.on_subscriber_reconnect(room_id)
    await websocket.send_json({"type": "ack", "action": command.action, "roomId": room_id})


@router.websocket("/ws")
async def subscriber_endpoint(websocket: WebSocket) -> None:
    """订阅者 WebSocket 端点。"""
    settings = websocket.app.state.settings
    if not is_authorized_header(settings, websocket.headers.get("authorization")):
        logger.warning("订阅者认证失败 | client=%s", websocket.client)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    relay: DanmakuRelay = websocket.app.state.relay
    await websocket.accept()
    joined: Counter[int] = Counter()

    try:
        while True:
            raw: str = await websocket.receive_text()
            try:
                command = SubscriberCommand.model_validate_json(raw)
            except ValidationError:
                await websocket.send_json({"type": "error", "msg": "无法识别的指令"})
                continue
            await _apply_command(websocket, relay, command, joined)
    except WebSocketDisconnect:
        pass  # 正常断开
    except Exception as e:
        logger.error("订阅者连接异常: %s", e, exc_info=True)
    finally:
        for room_id, count in joined.items():
            relay.hub.detach(room_id, websocket)
            for _ in range(count):
                await relay.on_subscriber_leave(room_id)
