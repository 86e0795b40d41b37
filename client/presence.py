import time
from typing import Callable, Optional

from schemas.rooms import PresenceEntry
from client.transport import RoomRecords
from logging_config import get_logger

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class PresenceTracker:
    """Who is attached to a room, as last read from the relay.

    There is no heartbeat-timeout sweep: an entry disappears only through
    `mark_absent` or the relay's own remove-on-disconnect hook.
    """

    def __init__(
        self,
        records: RoomRecords,
        on_join: Optional[Callable[[PresenceEntry], None]] = None,
        on_leave: Optional[Callable[[PresenceEntry], None]] = None,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.records = records
        self.on_join = on_join
        self.on_leave = on_leave
        self._clock_ms = clock_ms
        self.entries: dict[str, PresenceEntry] = {}

    async def mark_present(self, user_id: str, username: str) -> PresenceEntry:
        entry = PresenceEntry(user_id=user_id, username=username, last_seen_ms=self._clock_ms())
        await self.records.set_presence(entry)
        is_new = user_id not in self.entries
        self.entries[user_id] = entry
        logger.debug(f"{username} ({user_id}) present in room {self.records.room_id}")
        if is_new and self.on_join:
            self.on_join(entry)
        return entry

    async def mark_absent(self, user_id: str):
        await self.records.remove_presence(user_id)
        entry = self.entries.pop(user_id, None)
        logger.debug(f"{user_id} absent from room {self.records.room_id}")
        if entry is not None and self.on_leave:
            self.on_leave(entry)

    async def refresh(self) -> dict[str, PresenceEntry]:
        """Re-read the relay's presence set and fire join/leave for the difference."""
        remote = await self.records.presence()
        joined = [entry for user_id, entry in remote.items() if user_id not in self.entries]
        left = [entry for user_id, entry in self.entries.items() if user_id not in remote]
        self.entries = dict(remote)
        for entry in joined:
            if self.on_join:
                self.on_join(entry)
        for entry in left:
            if self.on_leave:
                self.on_leave(entry)
        return self.entries

    async def is_empty(self) -> bool:
        return not await self.refresh()
