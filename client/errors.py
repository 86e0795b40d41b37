class SyncError(Exception):
    """Base class for everything the synchronization engine raises."""


class ConnectivityError(SyncError):
    """The relay could not be reached or the connection dropped."""


class RoomNotFound(SyncError):
    """A guest tried to join a room that has no creation marker."""

    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class SendFailure(SyncError):
    """A single publish attempt failed; the envelope goes back to the queue."""


class MalformedPayload(SyncError):
    """An inbound envelope could not be parsed or lacks a required field."""
