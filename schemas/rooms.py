from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MessageType(str, Enum):
    CREATE_ROOM = "CREATE_ROOM"
    JOIN_ROOM = "JOIN_ROOM"
    PLAY = "PLAY"
    PAUSE = "PAUSE"
    SEEK = "SEEK"
    SET_VIDEO = "SET_VIDEO"
    CHAT = "CHAT"
    SYNC_STATE = "SYNC_STATE"
    ROOM_CREATED = "ROOM_CREATED"
    ERROR = "ERROR"


VIDEO_MESSAGE_TYPES = frozenset({
    MessageType.PLAY,
    MessageType.PAUSE,
    MessageType.SEEK,
    MessageType.SET_VIDEO,
})


class WireModel(BaseModel):
    """Base for everything that crosses the relay; camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class VideoState(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    playing: bool = False
    time: float = Field(default=0.0, ge=0.0)
    source: str = ""
    is_embedded_platform: bool = False


DEFAULT_VIDEO_STATE = VideoState()


class ChatMessage(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    author_id: str
    author_name: str
    text: str
    timestamp_ms: int
    is_system: bool = False


class ErrorPayload(WireModel):
    message: str


class PresenceEntry(WireModel):
    user_id: str
    username: str
    last_seen_ms: int = 0


class Envelope(WireModel):
    type: MessageType
    room_id: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


class CreateRoomResponse(BaseModel):
    room_id: str
    created: bool


class DeleteRoomResponse(BaseModel):
    room_id: str
    deleted: bool


class RoomDetailsResponse(BaseModel):
    room_id: str
    created_at: Optional[int] = None
    online_users_count: int
    online_users: Optional[list[PresenceEntry]] = None
    video_state: Optional[VideoState] = None
    message_count: int
