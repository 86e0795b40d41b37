import math
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from constants import DRIFT_THRESHOLD_SECONDS, SYNC_WINDOW_SECONDS
from schemas.rooms import DEFAULT_VIDEO_STATE, Envelope, MessageType, VideoState
from client.media import classify_source
from logging_config import get_logger

logger = get_logger(__name__)


class PlaybackKind(str, Enum):
    PLAY = "PLAY"
    PAUSE = "PAUSE"
    SEEK = "SEEK"
    SET_SOURCE = "SET_SOURCE"


KIND_TO_MESSAGE = {
    PlaybackKind.PLAY: MessageType.PLAY,
    PlaybackKind.PAUSE: MessageType.PAUSE,
    PlaybackKind.SEEK: MessageType.SEEK,
    PlaybackKind.SET_SOURCE: MessageType.SET_VIDEO,
}


# wire names accepted in local deltas
DELTA_ALIASES = {"isEmbeddedPlatform": "is_embedded_platform", "src": "source"}


class PlaybackEngine(Protocol):
    """The local media player the UI layer wraps."""

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, time: float) -> None: ...

    def position(self) -> float: ...

    def is_paused(self) -> bool: ...


def clamp_time(time: float, duration: Optional[float] = None) -> float:
    """Clamp to [0, duration]; an unknown duration leaves the top open."""
    upper = duration if duration and math.isfinite(duration) and duration > 0 else math.inf
    return max(0.0, min(time, upper))


class VideoStateSynchronizer:
    """Last-writer-wins reconciliation of the room's single playback cursor.

    Remote states replace the local one wholesale. For SYNC_WINDOW_SECONDS
    after a remote state is applied, events the player fires because we drove
    it are swallowed instead of re-published, which is what keeps two clients
    from echoing corrections at each other forever.
    """

    def __init__(
        self,
        room_id: str,
        publish: Callable[[Envelope], Awaitable[None]],
        on_change: Optional[Callable[[VideoState], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sync_window: float = SYNC_WINDOW_SECONDS,
        drift_threshold: float = DRIFT_THRESHOLD_SECONDS,
    ):
        self.room_id = room_id
        self.publish = publish
        self.on_change = on_change
        self._clock = clock
        self.sync_window = sync_window
        self.drift_threshold = drift_threshold
        self.state: VideoState = DEFAULT_VIDEO_STATE
        self.player: Optional[PlaybackEngine] = None
        self._syncing_until = 0.0

    def attach_player(self, player: Optional[PlaybackEngine]):
        self.player = player
        if player is not None:
            self._drive_player()

    def is_syncing(self) -> bool:
        return self._clock() < self._syncing_until

    def apply_remote(self, state: VideoState, notify: bool = True):
        self.state = state
        self._syncing_until = self._clock() + self.sync_window
        self._drive_player()
        if notify and self.on_change:
            self.on_change(state)

    def _drive_player(self):
        player = self.player
        if player is None or not self.state.source:
            return
        if self.state.playing and player.is_paused():
            player.play()
        elif not self.state.playing and not player.is_paused():
            player.pause()
        target = self.check_drift(player.position())
        if target is not None:
            player.seek(target)

    def check_drift(self, position: float) -> Optional[float]:
        """Return the authoritative time if `position` drifted past the threshold."""
        if abs(position - self.state.time) > self.drift_threshold:
            logger.debug(f"Drift {position - self.state.time:+.2f}s in room {self.room_id}, correcting")
            return self.state.time
        return None

    def next_state(self, kind: PlaybackKind, delta: Optional[dict] = None) -> VideoState:
        delta = {DELTA_ALIASES.get(key, key): value for key, value in (delta or {}).items()}
        changes: dict = {}
        if kind == PlaybackKind.PLAY:
            changes["playing"] = True
        elif kind == PlaybackKind.PAUSE:
            changes["playing"] = False
        elif kind == PlaybackKind.SET_SOURCE:
            changes.update(playing=False, time=0.0)
        changes.update(delta)

        if kind == PlaybackKind.SET_SOURCE and "is_embedded_platform" not in delta:
            # an empty source clears the player and needs no validation
            source = changes.get("source", self.state.source)
            changes["is_embedded_platform"] = classify_source(source) if source else False

        merged = {**self.state.model_dump(), **changes}
        merged["time"] = clamp_time(float(merged["time"]))
        return VideoState.model_validate(merged)

    async def local_change(self, kind: PlaybackKind, delta: Optional[dict] = None) -> VideoState:
        """Apply a local delta on top of the current state and publish the full value."""
        state = self.next_state(kind, delta)
        self.state = state
        await self.publish(Envelope(type=KIND_TO_MESSAGE[kind], room_id=self.room_id, payload=state.to_wire()))
        logger.debug(f"Published {kind.value} for room {self.room_id}: {state}")
        return state

    async def on_player_event(self, kind: PlaybackKind, position: float) -> Optional[VideoState]:
        """A native play/pause/seek from the player. Ignored inside the syncing window."""
        if self.is_syncing():
            logger.debug(f"Suppressed {kind.value} echo during sync window")
            return None
        return await self.local_change(kind, {"time": position})

    def skip(self, position: float, seconds: float, duration: Optional[float] = None) -> float:
        return clamp_time(position + seconds, duration)
