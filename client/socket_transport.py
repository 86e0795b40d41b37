import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from constants import RELAY_HTTP_URL, RELAY_WS_URL
from schemas.rooms import ChatMessage, Envelope, PresenceEntry, VideoState
from client.errors import ConnectivityError, SendFailure
from client.transport import RoomRecords, Transport
from logging_config import get_logger

logger = get_logger(__name__)


class HttpRoomRecords(RoomRecords):
    """Room record access through the relay's REST router."""

    def __init__(self, room_id: str, base_url: str = RELAY_HTTP_URL, client: Optional[httpx.AsyncClient] = None):
        self.room_id = room_id
        self.base_url = base_url
        # a client passed in belongs to the caller and is never closed here
        self._owns_client = client is None
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url)
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http().request(method, f"/rooms/{self.room_id}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"{method} /rooms/{self.room_id}{path} failed: {e}") from e
        if response.status_code >= 500:
            raise ConnectivityError(f"Relay returned {response.status_code} for {method} {path}")
        return response

    async def exists(self) -> bool:
        response = await self._request("GET", "")
        return response.status_code == 200

    async def create_if_absent(self, video_state: VideoState) -> bool:
        response = await self._request("PUT", "", json=video_state.to_wire())
        return bool(response.json()["created"])

    async def snapshot(self) -> Optional[VideoState]:
        response = await self._request("GET", "")
        if response.status_code != 200:
            return None
        state = response.json().get("video_state")
        return VideoState.model_validate(state) if state else None

    async def messages(self) -> list[ChatMessage]:
        response = await self._request("GET", "/messages")
        if response.status_code != 200:
            return []
        return [ChatMessage.model_validate(item) for item in response.json()]

    async def set_presence(self, entry: PresenceEntry):
        await self._request("PUT", f"/presence/{entry.user_id}", json=entry.to_wire())

    async def remove_presence(self, user_id: str):
        await self._request("DELETE", f"/presence/{user_id}")

    async def presence(self) -> dict[str, PresenceEntry]:
        response = await self._request("GET", "/presence")
        if response.status_code != 200:
            return {}
        return {user_id: PresenceEntry.model_validate(entry) for user_id, entry in response.json().items()}

    async def delete_if_empty(self) -> bool:
        response = await self._request("DELETE", "", params={"if_empty": "true"})
        if response.status_code != 200:
            return False
        return bool(response.json()["deleted"])

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class WebSocketTransport(Transport):
    """Raw socket relay.

    The relay fans every envelope out to the room, sender included, and drops
    this participant's presence entry when the socket closes.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        username: str,
        ws_url: str = RELAY_WS_URL,
        records: Optional[RoomRecords] = None,
    ):
        super().__init__()
        self.room_id = room_id
        self.user_id = user_id
        self.username = username
        query = urlencode({"user_id": user_id, "username": username})
        self.url = f"{ws_url.rstrip('/')}/rooms/{room_id}/ws?{query}"
        self._owns_records = records is None
        self._records = records if records is not None else HttpRoomRecords(room_id)
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def records(self) -> RoomRecords:
        return self._records

    def is_alive(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def connect(self):
        self._closing = False
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(f"WebSocket connect to {self.url} failed: {e}")
            raise ConnectivityError(str(e)) from e
        self._reader = asyncio.create_task(self._read())
        logger.info(f"WebSocket transport connected to {self.url}")

    async def _read(self):
        error = None
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (ValueError, TypeError) as e:
                    # also covers binary frames that are not UTF-8
                    logger.warning(f"Discarding unparseable frame in room {self.room_id}: {e}")
                    continue
                if not isinstance(data, dict):
                    logger.warning(f"Discarding non-object frame in room {self.room_id}")
                    continue
                self._deliver(data)
        except ConnectionClosed as e:
            logger.info(f"WebSocket closed for room {self.room_id}: {e}")
            error = e
        except asyncio.CancelledError:
            raise
        except (OSError, WebSocketException) as e:
            logger.error(f"WebSocket reader failed for room {self.room_id}: {e}")
            error = e
        except Exception as e:
            logger.error(f"WebSocket reader crashed for room {self.room_id}: {e}", exc_info=True)
            error = e

        if not self._closing:
            self._closed(ConnectivityError(str(error)) if error else None)

    async def send(self, envelope: Envelope):
        if self._ws is None:
            raise SendFailure("WebSocket transport is not connected")
        wire = envelope.to_wire()
        wire["roomId"] = self.room_id
        try:
            await self._ws.send(json.dumps(wire))
        except (ConnectionClosed, OSError) as e:
            raise SendFailure(str(e)) from e

    async def disconnect(self):
        self._closing = True
        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing WebSocket: {e}")
            self._ws = None
        if self._owns_records:
            await self._records.aclose()
        logger.info(f"WebSocket transport disconnected for room {self.room_id}")
