from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from redis.exceptions import RedisError
from routers.rooms import rooms_router
from backend import RedisBackend
from constants import PUBSUB_POLL_TIMEOUT
from schemas.rooms import DEFAULT_VIDEO_STATE, Envelope, MessageType, VIDEO_MESSAGE_TYPES
import uuid
import json
import asyncio
from typing import Callable, Dict, Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

RELAYED_TYPES = VIDEO_MESSAGE_TYPES | {MessageType.CHAT}


def error_envelope(room_id: str, message: str) -> dict:
    return {"type": MessageType.ERROR.value, "roomId": room_id, "payload": {"message": message}}


class RelayHub:
    """Per-instance WebSocket tracking.

    Each relay instance only knows its own sockets. Redis pub/sub carries
    envelopes across instances and each instance broadcasts to its local
    connections, so the relay scales horizontally.
    """

    def __init__(self, backend_factory: Callable[[], RedisBackend]):
        self.backend_factory = backend_factory
        # {room_id: {connection_id: websocket}}
        self.room_connections: Dict[str, Dict[str, WebSocket]] = {}
        # {room_id: listener task}
        self.room_pubsub_tasks: Dict[str, asyncio.Task] = {}

    def add(self, room_id: str, connection_id: str, websocket: WebSocket):
        self.room_connections.setdefault(room_id, {})[connection_id] = websocket
        logger.debug(f"Added connection {connection_id} to room {room_id} (local connections: {len(self.room_connections[room_id])})")

    def remove(self, room_id: str, connection_id: str) -> int:
        connections = self.room_connections.get(room_id, {})
        connections.pop(connection_id, None)
        if not connections:
            self.room_connections.pop(room_id, None)
        return len(connections)

    async def ensure_listener(self, room_id: str):
        task = self.room_pubsub_tasks.get(room_id)
        if task is None or task.done():
            self.room_pubsub_tasks[room_id] = asyncio.create_task(self.listen_to_redis_channel(room_id))
            logger.debug(f"Started Redis pub/sub listener for room: {room_id}")
            # Give the listener a moment to subscribe before the first publish
            await asyncio.sleep(0.1)

    async def stop_listener(self, room_id: str):
        task = self.room_pubsub_tasks.pop(room_id, None)
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.debug(f"Cancelled pub/sub task for room {room_id}")

    async def listen_to_redis_channel(self, room_id: str):
        """Background task: forward the room's pub/sub traffic to local sockets."""
        logger.info(f"Starting Redis pub/sub listener for room: {room_id}")
        backend = self.backend_factory()
        pubsub = None
        try:
            pubsub = await backend.subscribe_to_room(room_id)
            while room_id in self.room_connections:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=PUBSUB_POLL_TIMEOUT)
                if message is None or message.get("type") != "message":
                    continue
                await self.broadcast(room_id, message["data"])
            logger.info(f"No more connections in room {room_id}, stopping listener")
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room: {room_id}")
            raise
        except (RedisError, OSError) as e:
            logger.error(f"Error in Redis listener for room {room_id}: {e}", exc_info=True)
        finally:
            if pubsub is not None:
                try:
                    await pubsub.aclose()
                except (RedisError, OSError) as e:
                    logger.error(f"Error closing pub/sub for room {room_id}: {e}")
            await backend.close()

    async def broadcast(self, room_id: str, text: str):
        connections = list(self.room_connections.get(room_id, {}).items())
        if not connections:
            return
        results = await asyncio.gather(*(ws.send_text(text) for _, ws in connections), return_exceptions=True)
        for (conn_id, _), result in zip(connections, results):
            if isinstance(result, Exception):
                logger.warning(f"Error sending to connection {conn_id} in room {room_id}: {result}")
                self.remove(room_id, conn_id)
        logger.debug(f"Broadcasted message to {len(connections)} connections in room {room_id}")


async def handle_frame(backend: RedisBackend, room_id: str, raw: str) -> Optional[dict]:
    """Apply one client frame. Returns a reply for the sender, if any."""
    try:
        envelope = Envelope.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Malformed frame in room {room_id}: {e}")
        return error_envelope(room_id, "Malformed message")

    if envelope.type == MessageType.CREATE_ROOM:
        await backend.create_room(room_id, DEFAULT_VIDEO_STATE)
        return {"type": MessageType.ROOM_CREATED.value, "roomId": room_id}

    if envelope.type == MessageType.JOIN_ROOM:
        if not await backend.room_exists(room_id):
            return error_envelope(room_id, "Room not found")
        state = await backend.get_video_state(room_id) or DEFAULT_VIDEO_STATE
        return {"type": MessageType.SYNC_STATE.value, "roomId": room_id, "payload": state.to_wire()}

    if envelope.type not in RELAYED_TYPES:
        return error_envelope(room_id, f"Unsupported message type {envelope.type.value}")

    try:
        await backend.apply_envelope(room_id, envelope)
    except ValidationError as e:
        logger.warning(f"Malformed {envelope.type.value} payload in room {room_id}: {e}")
        return error_envelope(room_id, "Malformed payload")
    return None


def create_app(backend_factory: Callable[[], RedisBackend] = RedisBackend) -> FastAPI:
    app = FastAPI()

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.backend_factory = backend_factory
    app.state.hub = RelayHub(backend_factory)
    app.include_router(rooms_router)
    app.add_api_websocket_route("/rooms/{room_id}/ws", websocket_endpoint)
    return app


async def websocket_endpoint(room_id: str, websocket: WebSocket, user_id: Optional[str] = None, username: Optional[str] = None):
    """Dumb relay socket for one participant.

    Query parameters:
    - user_id: presence entry to drop when this socket closes
    - username: for logging only
    """
    hub: RelayHub = websocket.app.state.hub
    connection_id = str(uuid.uuid4())
    logger.info(f"WebSocket connection for room: {room_id}, user: {user_id} ({username})")

    await websocket.accept()
    backend = hub.backend_factory()
    hub.add(room_id, connection_id, websocket)
    try:
        await hub.ensure_listener(room_id)

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id} in room {room_id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id} in room {room_id}")

            reply = await handle_frame(backend, room_id, data)
            if reply is not None:
                await websocket.send_text(json.dumps(reply))
    except (RedisError, OSError) as e:
        logger.error(f"WebSocket error for connection {connection_id} in room {room_id}: {e}", exc_info=True)
    finally:
        remaining = hub.remove(room_id, connection_id)
        # remove-on-disconnect hook: the participant's presence goes with its socket
        if user_id:
            try:
                await backend.remove_presence(room_id, user_id)
                logger.info(f"User {user_id} left room {room_id}")
            except (RedisError, OSError) as e:
                logger.error(f"Could not remove presence for {user_id} in room {room_id}: {e}")
        if remaining == 0:
            logger.info(f"No more local connections in room {room_id}, cleaning up")
            await hub.stop_listener(room_id)
        await backend.close()


app = create_app()
