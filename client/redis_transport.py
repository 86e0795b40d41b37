import asyncio
import json
from typing import Optional

from redis.exceptions import RedisError

from backend import RedisBackend
from constants import PUBSUB_POLL_TIMEOUT
from schemas.rooms import ChatMessage, Envelope, PresenceEntry, VideoState
from client.errors import ConnectivityError, SendFailure
from client.transport import RoomRecords, Transport
from logging_config import get_logger

logger = get_logger(__name__)


class RedisRoomRecords(RoomRecords):
    def __init__(self, backend: RedisBackend, room_id: str):
        self.backend = backend
        self.room_id = room_id

    async def exists(self) -> bool:
        try:
            return await self.backend.room_exists(self.room_id)
        except RedisError as e:
            raise ConnectivityError(f"Could not read room {self.room_id}: {e}") from e

    async def create_if_absent(self, video_state: VideoState) -> bool:
        try:
            return await self.backend.create_room(self.room_id, video_state)
        except RedisError as e:
            raise ConnectivityError(f"Could not create room {self.room_id}: {e}") from e

    async def snapshot(self) -> Optional[VideoState]:
        try:
            return await self.backend.get_video_state(self.room_id)
        except RedisError as e:
            raise ConnectivityError(f"Could not read video state: {e}") from e

    async def messages(self) -> list[ChatMessage]:
        try:
            return await self.backend.get_messages(self.room_id)
        except RedisError as e:
            raise ConnectivityError(f"Could not read chat history: {e}") from e

    async def set_presence(self, entry: PresenceEntry):
        try:
            await self.backend.set_presence(self.room_id, entry)
        except RedisError as e:
            raise ConnectivityError(f"Could not register presence: {e}") from e

    async def remove_presence(self, user_id: str):
        try:
            await self.backend.remove_presence(self.room_id, user_id)
        except RedisError as e:
            raise ConnectivityError(f"Could not remove presence: {e}") from e

    async def presence(self) -> dict[str, PresenceEntry]:
        try:
            return await self.backend.get_presence(self.room_id)
        except RedisError as e:
            raise ConnectivityError(f"Could not read presence: {e}") from e

    async def delete_if_empty(self) -> bool:
        try:
            return await self.backend.delete_room_if_empty(self.room_id)
        except RedisError as e:
            raise ConnectivityError(f"Could not delete room {self.room_id}: {e}") from e


class RedisTransport(Transport):
    """Store-backed relay: writes go to Redis, peers learn about them over pub/sub.

    Redis has no remove-on-disconnect hook, so a client that dies without
    calling `disconnect()` leaves its presence entry behind.
    """

    def __init__(self, room_id: str, backend: Optional[RedisBackend] = None):
        super().__init__()
        self.room_id = room_id
        self._owns_backend = backend is None
        self.backend = backend if backend is not None else RedisBackend()
        self._records = RedisRoomRecords(self.backend, room_id)
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._alive = False
        self._closing = False

    @property
    def records(self) -> RoomRecords:
        return self._records

    def is_alive(self) -> bool:
        return self._alive

    async def connect(self):
        self._closing = False
        if self._pubsub is not None:
            # left over from a listener that died
            try:
                await self._pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing stale pub/sub for room {self.room_id}: {e}")
            self._pubsub = None
        try:
            await self.backend.ping()
            self._pubsub = await self.backend.subscribe_to_room(self.room_id)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connect failed for room {self.room_id}: {e}")
            raise ConnectivityError(str(e)) from e

        self._alive = True
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Redis transport connected for room {self.room_id}")

    async def _listen(self):
        """Forward pub/sub messages until cancelled or the connection drops."""
        error = None
        try:
            while True:
                try:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=PUBSUB_POLL_TIMEOUT
                    )
                except UnicodeDecodeError as e:
                    logger.warning(f"Discarding undecodable pub/sub message in room {self.room_id}: {e}")
                    continue
                if message is None:
                    continue
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (ValueError, TypeError) as e:
                    logger.warning(f"Discarding unparseable pub/sub message in room {self.room_id}: {e}")
                    continue
                if not isinstance(data, dict):
                    logger.warning(f"Discarding non-object pub/sub message in room {self.room_id}")
                    continue
                self._deliver(data)
        except asyncio.CancelledError:
            logger.debug(f"Redis listener cancelled for room {self.room_id}")
            raise
        except (RedisError, OSError) as e:
            logger.error(f"Redis listener failed for room {self.room_id}: {e}")
            error = e
        except Exception as e:
            # the manager must always hear about a dead listener
            logger.error(f"Redis listener crashed for room {self.room_id}: {e}", exc_info=True)
            error = e
        finally:
            self._alive = False

        if not self._closing:
            self._closed(ConnectivityError(str(error)) if error else None)

    async def send(self, envelope: Envelope):
        if not self._alive:
            raise SendFailure("Redis transport is not connected")
        try:
            await self.backend.apply_envelope(self.room_id, envelope)
        except (RedisError, OSError) as e:
            raise SendFailure(str(e)) from e

    async def disconnect(self):
        self._closing = True
        self._alive = False
        if self._listener and not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing pub/sub for room {self.room_id}: {e}")
            self._pubsub = None
        if self._owns_backend:
            try:
                await self.backend.close()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing Redis client for room {self.room_id}: {e}")
        logger.info(f"Redis transport disconnected for room {self.room_id}")
