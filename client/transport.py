from abc import ABC, abstractmethod
from typing import Callable, Optional

from schemas.rooms import ChatMessage, Envelope, PresenceEntry, VideoState

MessageHandler = Callable[[dict], None]
CloseHandler = Callable[[Optional[Exception]], None]


class RoomRecords(ABC):
    """Read/write access to one room's persisted record at the relay."""

    room_id: str

    @abstractmethod
    async def exists(self) -> bool: ...

    @abstractmethod
    async def create_if_absent(self, video_state: VideoState) -> bool: ...

    @abstractmethod
    async def snapshot(self) -> Optional[VideoState]: ...

    @abstractmethod
    async def messages(self) -> list[ChatMessage]: ...

    @abstractmethod
    async def set_presence(self, entry: PresenceEntry): ...

    @abstractmethod
    async def remove_presence(self, user_id: str): ...

    @abstractmethod
    async def presence(self) -> dict[str, PresenceEntry]: ...

    @abstractmethod
    async def delete_if_empty(self) -> bool: ...


class Transport(ABC):
    """A connection to the relay.

    Inbound envelopes are handed to the registered message handler as raw
    dicts; validation is the consumer's job. The close handler fires only
    when the connection drops without `disconnect()` having been called.
    """

    def __init__(self):
        self._on_message: Optional[MessageHandler] = None
        self._on_close: Optional[CloseHandler] = None

    def subscribe(self, on_message: MessageHandler, on_close: Optional[CloseHandler] = None):
        self._on_message = on_message
        self._on_close = on_close

    def _deliver(self, data: dict):
        if self._on_message is not None:
            self._on_message(data)

    def _closed(self, exc: Optional[Exception] = None):
        if self._on_close is not None:
            self._on_close(exc)

    @abstractmethod
    async def connect(self): ...

    @abstractmethod
    async def send(self, envelope: Envelope): ...

    @abstractmethod
    async def disconnect(self): ...

    @abstractmethod
    def is_alive(self) -> bool: ...

    @property
    @abstractmethod
    def records(self) -> RoomRecords: ...
