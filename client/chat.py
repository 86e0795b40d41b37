import time
from typing import Awaitable, Callable, Optional

from schemas.rooms import ChatMessage, Envelope, MessageType
from logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_AUTHOR_ID = "system"


def now_ms() -> int:
    return int(time.time() * 1000)


class ChatMessageStream:
    """Arrival-ordered, id-deduplicated chat log for one session.

    Sent messages are not appended locally; they show up when the relay
    delivers them back, so every client ends up with the same order.
    The set of seen ids is never pruned during a session.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        username: str,
        publish: Callable[[Envelope], Awaitable[None]],
        on_message: Optional[Callable[[ChatMessage], None]] = None,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.username = username
        self.publish = publish
        self.on_message = on_message
        self._clock_ms = clock_ms
        self.messages: list[ChatMessage] = []
        self.unread = 0
        self._seen: set[str] = set()
        self._last_sent_ms = 0

    def __len__(self):
        return len(self.messages)

    def has_seen(self, message_id: str) -> bool:
        return message_id in self._seen

    def append(self, message: ChatMessage) -> bool:
        """Add `message` unless its id was already applied. Returns True if appended."""
        if message.id in self._seen:
            logger.debug(f"Dropping duplicate message {message.id}")
            return False
        self._seen.add(message.id)
        self.messages.append(message)
        if message.author_id != self.user_id and not message.is_system:
            self.unread += 1
        if self.on_message:
            self.on_message(message)
        return True

    def append_system(self, text: str) -> ChatMessage:
        message = ChatMessage(
            id=f"{SYSTEM_AUTHOR_ID}-{len(self.messages)}-{self._clock_ms()}",
            author_id=SYSTEM_AUTHOR_ID,
            author_name="System",
            text=text,
            timestamp_ms=self._clock_ms(),
            is_system=True,
        )
        self.append(message)
        return message

    def _next_id_ms(self) -> int:
        # two sends in the same millisecond must still get distinct ids
        stamp = max(self._clock_ms(), self._last_sent_ms + 1)
        self._last_sent_ms = stamp
        return stamp

    async def send(self, text: str) -> ChatMessage:
        stamp = self._next_id_ms()
        message = ChatMessage(
            id=f"{self.user_id}-{stamp}",
            author_id=self.user_id,
            author_name=self.username,
            text=text,
            timestamp_ms=stamp,
        )
        await self.publish(Envelope(type=MessageType.CHAT, room_id=self.room_id, payload=message.to_wire()))
        logger.debug(f"Sent chat message {message.id} to room {self.room_id}")
        return message

    def clear_unread(self):
        self.unread = 0
