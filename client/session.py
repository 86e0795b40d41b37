import asyncio
from typing import Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from schemas.rooms import (
    ChatMessage,
    Envelope,
    MessageType,
    PresenceEntry,
    VideoState,
    VIDEO_MESSAGE_TYPES,
)
from client.chat import ChatMessageStream
from client.connection import ConnectionManager, ConnectionStatus
from client.errors import ConnectivityError, MalformedPayload, RoomNotFound
from client.presence import PresenceTracker
from client.rooms import RoomLifecycleManager
from client.transport import Transport
from client.video_sync import PlaybackKind, VideoStateSynchronizer
from logging_config import get_logger

logger = get_logger(__name__)

KIND_ALIASES = {"SET_VIDEO": PlaybackKind.SET_SOURCE}


def _parse_kind(kind: Union[PlaybackKind, str]) -> PlaybackKind:
    if isinstance(kind, PlaybackKind):
        return kind
    return KIND_ALIASES.get(kind) or PlaybackKind(kind)


class RoomSession:
    """One participant's attachment to one room.

    Owns the transport, outbound queue, dedup set and timers for the session;
    nothing here is shared between sessions. Every inbound envelope goes
    through a single queue consumed by one dispatch task, so handlers never
    run concurrently with each other.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        username: str,
        is_admin: bool,
        transport: Transport,
        on_video_state_change: Optional[Callable[[VideoState], None]] = None,
        on_chat_message: Optional[Callable[[ChatMessage], None]] = None,
        on_sync_state: Optional[Callable[[VideoState], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_connected: Optional[Callable[[], None]] = None,
        on_status: Optional[Callable[[ConnectionStatus], None]] = None,
        on_user_joined: Optional[Callable[[PresenceEntry], None]] = None,
        on_user_left: Optional[Callable[[PresenceEntry], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.username = username
        self.is_admin = is_admin
        self.transport = transport
        self.records = transport.records

        self.on_video_state_change = on_video_state_change
        self.on_chat_message = on_chat_message
        self.on_sync_state = on_sync_state
        self.on_error = on_error
        self.on_connected = on_connected
        self.on_status = on_status
        self.on_user_joined = on_user_joined
        self.on_user_left = on_user_left

        self.inbound: asyncio.Queue = asyncio.Queue()
        self.connection = ConnectionManager(
            transport,
            on_message=self._enqueue,
            on_connected=self._handle_connected,
            on_status=self._handle_status,
            on_fatal=self._handle_fatal,
            sleep=sleep,
        )
        self.presence = PresenceTracker(self.records, on_join=self._user_joined, on_leave=self._user_left)
        self.lifecycle = RoomLifecycleManager(
            room_id,
            user_id,
            username,
            self.connection,
            self.presence,
            self.records,
            on_sync_state=self._enqueue_sync_state,
            on_history=self._enqueue_history,
        )
        self.video = VideoStateSynchronizer(room_id, self.connection.send, on_change=self._video_changed)
        self.chat = ChatMessageStream(room_id, user_id, username, self.connection.send, on_message=self._chat_appended)

        self.closed = False
        self._ready = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task] = None
        self._start_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None

    # ---------------- Read-only views ----------------

    @property
    def messages(self) -> list[ChatMessage]:
        return self.chat.messages

    @property
    def unread_count(self) -> int:
        return self.chat.unread

    @property
    def video_state(self) -> VideoState:
        return self.video.state

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    def clear_unread(self):
        self.chat.clear_unread()

    # ---------------- Lifecycle ----------------

    async def start(self):
        """Connect, then create (admin) or join (guest) the room.

        Raises RoomNotFound for a guest joining a room that does not exist and
        ConnectivityError if the relay stays unreachable past the retry cap.
        """
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop())
        self.chat.append_system(f"You joined the room as {'Admin' if self.is_admin else 'Guest'}")
        self._start_task = asyncio.create_task(self._start())
        try:
            await self._start_task
        except asyncio.CancelledError:
            if self.closed:
                logger.info(f"Start of session for room {self.room_id} cancelled by disconnect")
                return
            raise
        finally:
            self._start_task = None

    async def _start(self):
        if not self.is_admin and not await self.records.exists():
            self._report_error(f"Room {self.room_id} not found")
            raise RoomNotFound(self.room_id)

        await self.connection.connect()
        await self._ready.wait()
        if self.connection.status == ConnectionStatus.FAILED:
            raise ConnectivityError("Failed to connect to server")

        if self.is_admin:
            await self.create_room()
        else:
            await self.join_room()
        await self.refresh_presence()

    async def create_room(self) -> bool:
        return await self.lifecycle.create_room()

    async def join_room(self) -> Optional[VideoState]:
        try:
            return await self.lifecycle.join_room()
        except RoomNotFound as e:
            self._report_error(str(e))
            raise

    async def refresh_presence(self) -> dict[str, PresenceEntry]:
        """Re-read who is in the room; fires on_user_joined/on_user_left for the difference."""
        return await self.presence.refresh()

    async def disconnect(self):
        """Leave the room and release everything the session owns."""
        if self.closed:
            return
        self.closed = True

        # nothing may reconnect or resume once we start awaiting below
        self.connection.cancel_reconnect()
        pending = [task for task in (self._start_task, self._resync_task) if task and not task.done()]
        for task in pending:
            task.cancel()

        for task in pending:
            try:
                await task
            except (asyncio.CancelledError, ConnectivityError, RoomNotFound):
                pass

        try:
            await self.lifecycle.teardown()
        except ConnectivityError as e:
            logger.error(f"Disconnect error in room {self.room_id}: {e}")

        await self.connection.disconnect()

        if self._dispatcher and not self._dispatcher.done():
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        self._dispatcher = None
        logger.info(f"{self.username} left room {self.room_id}")

    # ---------------- Outbound ----------------

    async def send_chat(self, text: str) -> Optional[ChatMessage]:
        if not text or not text.strip():
            return None
        return await self.chat.send(text.strip())

    async def update_video_state(self, kind: Union[PlaybackKind, str], partial: Optional[dict] = None) -> VideoState:
        return await self.video.local_change(_parse_kind(kind), partial)

    async def set_source(self, url: str) -> VideoState:
        """Switch the room to a new source. Raises ValueError for unplayable URLs."""
        return await self.video.local_change(PlaybackKind.SET_SOURCE, {"source": url.strip()})

    # ---------------- Inbound ----------------

    def _enqueue(self, data: dict):
        self.inbound.put_nowait(data)

    def _enqueue_sync_state(self, state: VideoState):
        self._enqueue({"type": MessageType.SYNC_STATE.value, "roomId": self.room_id, "payload": state.to_wire()})

    def _enqueue_history(self, history: list[ChatMessage]):
        for message in history:
            self._enqueue({"type": MessageType.CHAT.value, "roomId": self.room_id, "payload": message.to_wire()})

    async def drain(self):
        """Wait until every envelope queued so far has been dispatched."""
        await self.inbound.join()

    async def _dispatch_loop(self):
        while True:
            data = await self.inbound.get()
            try:
                self._dispatch(data)
            except MalformedPayload as e:
                logger.warning(f"Discarding malformed envelope in room {self.room_id}: {e}")
            except Exception as e:
                logger.error(f"Error dispatching envelope in room {self.room_id}: {e}", exc_info=True)
            finally:
                self.inbound.task_done()

    def _dispatch(self, data: dict):
        try:
            envelope = Envelope.model_validate(data)
        except ValidationError as e:
            raise MalformedPayload(str(e)) from e

        if envelope.room_id and envelope.room_id != self.room_id:
            logger.debug(f"Ignoring envelope for room {envelope.room_id}")
            return

        message_type = envelope.type
        if message_type in VIDEO_MESSAGE_TYPES:
            self.video.apply_remote(self._payload(VideoState, envelope))
        elif message_type == MessageType.SYNC_STATE:
            state = self._payload(VideoState, envelope)
            self.video.apply_remote(state, notify=False)
            if self.on_sync_state:
                self.on_sync_state(state)
        elif message_type == MessageType.CHAT:
            self.chat.append(self._payload(ChatMessage, envelope))
        elif message_type == MessageType.ERROR:
            message = (envelope.payload or {}).get("message") or "Unknown error"
            logger.error(f"Relay error in room {self.room_id}: {message}")
            self._report_error(message)
        elif message_type == MessageType.ROOM_CREATED:
            logger.info(f"Room created: {envelope.room_id or self.room_id}")
        else:
            logger.debug(f"Peer announcement {message_type.value} in room {self.room_id}")

    @staticmethod
    def _payload(model, envelope: Envelope):
        if envelope.payload is None:
            raise MalformedPayload(f"{envelope.type.value} without payload")
        try:
            return model.model_validate(envelope.payload)
        except ValidationError as e:
            raise MalformedPayload(f"{envelope.type.value}: {e}") from e

    # ---------------- Callbacks from components ----------------

    def _video_changed(self, state: VideoState):
        if self.on_video_state_change:
            self.on_video_state_change(state)

    def _chat_appended(self, message: ChatMessage):
        if self.on_chat_message:
            self.on_chat_message(message)

    def _user_joined(self, entry: PresenceEntry):
        if self.on_user_joined:
            self.on_user_joined(entry)

    def _user_left(self, entry: PresenceEntry):
        if self.on_user_left:
            self.on_user_left(entry)

    def _handle_status(self, status: ConnectionStatus):
        if self.on_status:
            self.on_status(status)

    def _handle_connected(self):
        if self.closed:
            return
        if self._ready.is_set():
            # reconnect: re-register presence and catch up on missed chat
            self._resync_task = asyncio.create_task(self._resync())
        else:
            self._ready.set()
        if self.on_connected:
            self.on_connected()

    async def _resync(self):
        try:
            await self.lifecycle.refresh_presence()
            await self.presence.refresh()
            if self.lifecycle.joined:
                self._enqueue_history(await self.records.messages())
        except ConnectivityError as e:
            logger.warning(f"Resync after reconnect failed in room {self.room_id}: {e}")

    def _handle_fatal(self, error: ConnectivityError):
        self._report_error(str(error))
        self._ready.set()

    def _report_error(self, message: str):
        if self.on_error:
            self.on_error(message)
