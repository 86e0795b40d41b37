from typing import Callable, Optional

from schemas.rooms import DEFAULT_VIDEO_STATE, ChatMessage, Envelope, MessageType, VideoState
from client.connection import ConnectionManager
from client.errors import RoomNotFound
from client.presence import PresenceTracker
from client.transport import RoomRecords
from logging_config import get_logger

logger = get_logger(__name__)


class RoomLifecycleManager:
    """Creates, validates and tears down one room for one participant."""

    def __init__(
        self,
        room_id: str,
        user_id: str,
        username: str,
        connection: ConnectionManager,
        presence: PresenceTracker,
        records: RoomRecords,
        on_sync_state: Optional[Callable[[VideoState], None]] = None,
        on_history: Optional[Callable[[list[ChatMessage]], None]] = None,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.username = username
        self.connection = connection
        self.presence = presence
        self.records = records
        self.on_sync_state = on_sync_state
        self.on_history = on_history
        self.joined = False

    async def create_room(self) -> bool:
        """Initialize the room if it does not exist yet; never resets an existing one."""
        created = await self.records.create_if_absent(DEFAULT_VIDEO_STATE)
        if created:
            logger.info(f"Created room {self.room_id}")
        else:
            logger.info(f"Room {self.room_id} already exists, joining as admin")
        await self.presence.mark_present(self.user_id, self.username)
        self.joined = True
        await self.connection.send(Envelope(
            type=MessageType.CREATE_ROOM,
            room_id=self.room_id,
            payload={"userId": self.user_id, "username": self.username},
        ))
        return created

    async def join_room(self) -> Optional[VideoState]:
        """Validate the room, register presence and deliver a one-shot snapshot.

        Raises RoomNotFound when the creation marker is absent.
        """
        if not await self.records.exists():
            logger.warning(f"Join failed: room {self.room_id} not found")
            raise RoomNotFound(self.room_id)

        await self.presence.mark_present(self.user_id, self.username)
        self.joined = True

        snapshot = await self.records.snapshot()
        if snapshot is not None and self.on_sync_state:
            self.on_sync_state(snapshot)

        history = await self.records.messages()
        if history and self.on_history:
            self.on_history(history)
        logger.info(f"{self.username} joined room {self.room_id} ({len(history)} messages in history)")
        return snapshot

    async def refresh_presence(self):
        if self.joined:
            await self.presence.mark_present(self.user_id, self.username)

    async def teardown(self) -> bool:
        """Leave the room and delete its record if nobody else is present.

        The emptiness check and the delete are two steps; the delete itself is
        conditional on the presence set still being empty.
        """
        if not self.joined:
            return False
        self.joined = False
        await self.presence.mark_absent(self.user_id)
        if not await self.presence.is_empty():
            return False
        deleted = await self.records.delete_if_empty()
        if deleted:
            logger.info(f"Room {self.room_id} torn down by {self.user_id}")
        return deleted
