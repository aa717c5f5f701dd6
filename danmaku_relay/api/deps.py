from fastapi import Request

from danmaku_relay.services.relay import DanmakuRelay


def get_relay(request: Request) -> DanmakuRelay:
    return request.app.state.relay
