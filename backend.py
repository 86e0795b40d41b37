import json
import time
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from constants import REDIS_URL
from redis_keys import (
    REDIS_META_KEY,
    REDIS_VIDEO_STATE_KEY,
    REDIS_PRESENCE_KEY,
    REDIS_MESSAGES_KEY,
    REDIS_ROOM_CHANNEL,
    room_record_keys,
)
from schemas.rooms import (
    ChatMessage,
    Envelope,
    MessageType,
    PresenceEntry,
    VideoState,
    VIDEO_MESSAGE_TYPES,
)
from logging_config import get_logger

logger = get_logger(__name__)


def get_redis_client(url: str = REDIS_URL):
    """
    Async Redis clients are event-loop bound and must not be shared across loops.
    """
    return redis.from_url(url, decode_responses=True)


def now_ms() -> int:
    return int(time.time() * 1000)


class RedisBackend:
    """Room record store and pub/sub fan-out for one Redis deployment.

    A room is four keys (meta, video state, presence, messages) plus a pub/sub
    channel. Every write that other participants must observe is published on
    the channel as an envelope after it is stored.
    """

    def __init__(self, redis_client=None):
        self.redis_client = redis_client if redis_client is not None else get_redis_client()
        logger.debug("Initializing RedisBackend")

    async def ping(self) -> bool:
        return await self.redis_client.ping()

    async def close(self):
        await self.redis_client.aclose()

    # ---------------- Room record ----------------

    async def room_exists(self, room_id: str) -> bool:
        key = REDIS_META_KEY.format(slug=room_id)
        created = await self.redis_client.hget(key, "created")
        return created is not None

    async def create_room(self, room_id: str, video_state: VideoState) -> bool:
        """Create the room record if absent. Returns True when this call created it.

        HSETNX on the creation marker makes the check and the write one step, so
        two admins racing on the same id never reset an initialized VideoState.
        """
        meta_key = REDIS_META_KEY.format(slug=room_id)
        created = await self.redis_client.hsetnx(meta_key, "created", "1")
        if not created:
            logger.debug(f"Room {room_id} already exists, keeping its playback state")
            return False

        await self.redis_client.hset(meta_key, "createdAt", str(now_ms()))
        state_key = REDIS_VIDEO_STATE_KEY.format(slug=room_id)
        await self.redis_client.set(state_key, json.dumps(video_state.to_wire()), nx=True)
        logger.info(f"Room {room_id} created")
        return True

    async def get_room_meta(self, room_id: str) -> Optional[dict]:
        meta = await self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        if not meta:
            return None
        result = {"created": meta.get("created") == "1"}
        if meta.get("createdAt"):
            result["createdAt"] = int(meta["createdAt"])
        return result

    async def delete_room(self, room_id: str):
        logger.info(f"Deleting room {room_id}")
        deleted = await self.redis_client.delete(*room_record_keys(room_id))
        logger.debug(f"Room {room_id} deleted: {deleted} keys removed")
        return True

    async def delete_room_if_empty(self, room_id: str) -> bool:
        """Delete the room record only if its presence hash is still empty.

        The presence key is WATCHed so a participant joining between the read
        and the delete aborts the transaction instead of losing its room.
        """
        presence_key = REDIS_PRESENCE_KEY.format(slug=room_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(presence_key)
                remaining = await pipe.hlen(presence_key)
                if remaining:
                    await pipe.unwatch()
                    logger.debug(f"Room {room_id} still has {remaining} participants, not deleting")
                    return False
                pipe.multi()
                pipe.delete(*room_record_keys(room_id))
                await pipe.execute()
            except WatchError:
                logger.info(f"Presence changed while tearing down room {room_id}, keeping it")
                return False
        logger.info(f"Room {room_id} deleted after last participant left")
        return True

    # ---------------- Video state ----------------

    async def get_video_state(self, room_id: str) -> Optional[VideoState]:
        raw = await self.redis_client.get(REDIS_VIDEO_STATE_KEY.format(slug=room_id))
        if raw is None:
            return None
        return VideoState.model_validate(json.loads(raw))

    async def set_video_state(self, room_id: str, video_state: VideoState):
        key = REDIS_VIDEO_STATE_KEY.format(slug=room_id)
        await self.redis_client.set(key, json.dumps(video_state.to_wire()))
        logger.debug(f"Video state for room {room_id} replaced: {video_state}")

    # ---------------- Chat ----------------

    async def append_message(self, room_id: str, message: ChatMessage):
        key = REDIS_MESSAGES_KEY.format(slug=room_id)
        length = await self.redis_client.rpush(key, json.dumps(message.to_wire()))
        logger.debug(f"Appended message {message.id} to room {room_id} (log length {length})")

    async def get_messages(self, room_id: str) -> list[ChatMessage]:
        raw_messages = await self.redis_client.lrange(REDIS_MESSAGES_KEY.format(slug=room_id), 0, -1)
        messages = []
        for raw in raw_messages:
            try:
                messages.append(ChatMessage.model_validate(json.loads(raw)))
            except ValueError as e:
                logger.warning(f"Skipping malformed stored message in room {room_id}: {e}")
        return messages

    async def count_messages(self, room_id: str) -> int:
        return await self.redis_client.llen(REDIS_MESSAGES_KEY.format(slug=room_id))

    # ---------------- Presence ----------------

    async def set_presence(self, room_id: str, entry: PresenceEntry):
        key = REDIS_PRESENCE_KEY.format(slug=room_id)
        value = json.dumps({"username": entry.username, "lastSeen": entry.last_seen_ms})
        await self.redis_client.hset(key, entry.user_id, value)
        logger.debug(f"User {entry.user_id} ({entry.username}) present in room {room_id}")

    async def remove_presence(self, room_id: str, user_id: str) -> bool:
        key = REDIS_PRESENCE_KEY.format(slug=room_id)
        removed = await self.redis_client.hdel(key, user_id)
        logger.debug(f"User {user_id} removed from room {room_id} presence: {removed}")
        return bool(removed)

    async def get_presence(self, room_id: str) -> dict[str, PresenceEntry]:
        raw = await self.redis_client.hgetall(REDIS_PRESENCE_KEY.format(slug=room_id))
        entries = {}
        for user_id, value in raw.items():
            try:
                data = json.loads(value)
                entries[user_id] = PresenceEntry(
                    user_id=user_id,
                    username=data.get("username", ""),
                    last_seen_ms=int(data.get("lastSeen") or 0),
                )
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed presence entry {user_id} in room {room_id}: {e}")
        return entries

    # ---------------- Pub/Sub ----------------

    def get_room_channel_name(self, room_id: str) -> str:
        return REDIS_ROOM_CHANNEL.format(slug=room_id)

    async def publish_message(self, room_id: str, message: dict) -> int:
        """Publish an envelope to the room's pub/sub channel."""
        channel = self.get_room_channel_name(room_id)
        subscribers = await self.redis_client.publish(channel, json.dumps(message))
        logger.debug(f"Published {message.get('type', 'unknown')} to {channel}, {subscribers} subscribers")
        return subscribers

    async def subscribe_to_room(self, room_id: str):
        channel = self.get_room_channel_name(room_id)
        logger.debug(f"Subscribing to Redis channel {channel} for room {room_id}")
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(channel)
        return pubsub

    async def apply_envelope(self, room_id: str, envelope: Envelope):
        """Store the write an envelope carries, then fan it out.

        Playback envelopes replace the whole VideoState, chat envelopes append
        to the log. Anything else is only relayed.
        """
        if envelope.type in VIDEO_MESSAGE_TYPES:
            state = VideoState.model_validate(envelope.payload or {})
            await self.set_video_state(room_id, state)
        elif envelope.type == MessageType.CHAT:
            message = ChatMessage.model_validate(envelope.payload or {})
            await self.append_message(room_id, message)

        wire = envelope.to_wire()
        wire["roomId"] = room_id
        await self.publish_message(room_id, wire)
