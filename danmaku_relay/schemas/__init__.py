"""
danmaku_relay.schemas
~~~~~~~~~~~~~~~~~~~~~
Pydantic schemas and models for the relay.
"""
from danmaku_relay.schemas.api_response import ApiResponse
from danmaku_relay.schemas.danmaku import Danmaku, DanmakuSender
from danmaku_relay.schemas.rooms import RoomStatus, SubscriberCommand

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

__all__ = ["ApiResponse", "Danmaku", "DanmakuSender", "RoomStatus", "SubscriberCommand"]
