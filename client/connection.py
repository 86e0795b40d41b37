import asyncio
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Optional

from constants import RECONNECT_BASE_DELAY, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY
from schemas.rooms import Envelope
from client.errors import ConnectivityError, SendFailure
from client.transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY, cap: float = RECONNECT_MAX_DELAY) -> float:
    return min(base * (2 ** attempt), cap)


class ConnectionManager:
    """Owns one Transport: reconnects with exponential backoff and queues
    outbound envelopes while the link is down.

    Queued envelopes are flushed in order before `on_connected` fires, so a
    reconnect never silently drops a send. Delivery is at-least-once.
    """

    def __init__(
        self,
        transport: Transport,
        on_message: Callable[[dict], None],
        on_connected: Optional[Callable[[], None]] = None,
        on_status: Optional[Callable[[ConnectionStatus], None]] = None,
        on_fatal: Optional[Callable[[ConnectivityError], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
    ):
        self.transport = transport
        self.on_message = on_message
        self.on_connected = on_connected
        self.on_status = on_status
        self.on_fatal = on_fatal
        self._sleep = sleep
        self.max_attempts = max_attempts

        self.status = ConnectionStatus.DISCONNECTED
        self.attempts = 0
        self.queue: deque[Envelope] = deque()
        self._reconnect_task: Optional[asyncio.Task] = None

        self.transport.subscribe(self.on_message, self._handle_close)

    def _set_status(self, status: ConnectionStatus):
        if status == self.status:
            return
        logger.debug(f"Connection status {self.status.value} -> {status.value}")
        self.status = status
        if self.on_status:
            self.on_status(status)

    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED and self.transport.is_alive()

    async def connect(self):
        if self.status in (ConnectionStatus.DISCONNECTED, ConnectionStatus.FAILED):
            self.attempts = 0
            self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self.transport.connect()
        except ConnectivityError as e:
            logger.warning(f"Connect failed (attempt {self.attempts}): {e}")
            self._schedule_reconnect()
            return
        await self._on_open()

    async def _on_open(self):
        self._set_status(ConnectionStatus.CONNECTED)
        flushed = 0
        while self.queue:
            envelope = self.queue[0]
            try:
                await self.transport.send(envelope)
            except SendFailure as e:
                logger.warning(f"Flush interrupted after {flushed} envelopes: {e}")
                self._handle_close(e)
                return
            self.queue.popleft()
            flushed += 1
        # only a completed flush counts as a successful connect
        self.attempts = 0
        if flushed:
            logger.info(f"Flushed {flushed} queued envelopes")
        if self.on_connected:
            self.on_connected()

    def _handle_close(self, exc: Optional[Exception] = None):
        if self.status not in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            return
        logger.warning(f"Transport closed unexpectedly: {exc}")
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self.attempts >= self.max_attempts:
            logger.error(f"Giving up after {self.attempts} reconnect attempts")
            self._set_status(ConnectionStatus.FAILED)
            if self.on_fatal:
                self.on_fatal(ConnectivityError("Failed to connect to server"))
            return

        self.attempts += 1
        delay = backoff_delay(self.attempts)
        logger.info(f"Reconnecting in {delay}s (attempt {self.attempts})")
        self._set_status(ConnectionStatus.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await self._sleep(delay)
        await self.connect()

    async def send(self, envelope: Envelope):
        if not self.is_connected():
            logger.debug(f"Not connected, queueing {envelope.type.value}")
            self.queue.append(envelope)
            return
        try:
            await self.transport.send(envelope)
        except SendFailure as e:
            logger.warning(f"Send of {envelope.type.value} failed, queueing: {e}")
            self.queue.append(envelope)
            self._handle_close(e)

    def cancel_reconnect(self):
        """Stop any pending backoff timer without awaiting. Later closes are ignored."""
        task = self._reconnect_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def disconnect(self):
        self.cancel_reconnect()
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.transport.disconnect()
        dropped = len(self.queue)
        self.queue.clear()
        if dropped:
            logger.info(f"Discarded {dropped} queued envelopes on disconnect")
