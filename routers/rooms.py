from fastapi import APIRouter, Depends, HTTPException, Query, Request
from backend import RedisBackend
from schemas.rooms import (
    ChatMessage,
    CreateRoomResponse,
    DeleteRoomResponse,
    PresenceEntry,
    RoomDetailsResponse,
    VideoState,
)
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


async def get_backend(request: Request):
    # Redis clients are loop-bound, so each request gets its own
    backend: RedisBackend = request.app.state.backend_factory()
    try:
        yield backend
    finally:
        await backend.close()


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, backend: RedisBackend = Depends(get_backend)):
    """
    Room record summary: creation time, who is present, the current VideoState.
    404 when the room has no creation marker.
    """
    meta = await backend.get_room_meta(room_id)
    if not meta or not meta.get("created"):
        logger.debug(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    presence = await backend.get_presence(room_id)
    return RoomDetailsResponse(
        room_id=room_id,
        created_at=meta.get("createdAt"),
        online_users_count=len(presence),
        online_users=list(presence.values()),
        video_state=await backend.get_video_state(room_id),
        message_count=await backend.count_messages(room_id),
    )


@rooms_router.put("/{room_id}", response_model=CreateRoomResponse)
async def create_room(room_id: str, video_state: VideoState, backend: RedisBackend = Depends(get_backend)):
    # Idempotent: an existing room keeps its playback state
    created = await backend.create_room(room_id, video_state)
    logger.info(f"Create room {room_id}: created={created}")
    return CreateRoomResponse(room_id=room_id, created=created)


@rooms_router.delete("/{room_id}", response_model=DeleteRoomResponse)
async def delete_room(
    room_id: str,
    if_empty: bool = Query(False, description="Only delete if nobody is present"),
    backend: RedisBackend = Depends(get_backend),
):
    if not await backend.room_exists(room_id):
        raise HTTPException(status_code=404, detail="Room not found")
    if if_empty:
        deleted = await backend.delete_room_if_empty(room_id)
    else:
        deleted = await backend.delete_room(room_id)
    return DeleteRoomResponse(room_id=room_id, deleted=deleted)


@rooms_router.get("/{room_id}/messages")
async def get_messages(room_id: str, backend: RedisBackend = Depends(get_backend)):
    messages: list[ChatMessage] = await backend.get_messages(room_id)
    return [message.to_wire() for message in messages]


@rooms_router.get("/{room_id}/presence")
async def get_presence(room_id: str, backend: RedisBackend = Depends(get_backend)):
    presence = await backend.get_presence(room_id)
    return {user_id: entry.to_wire() for user_id, entry in presence.items()}


@rooms_router.put("/{room_id}/presence/{user_id}")
async def set_presence(room_id: str, user_id: str, entry: PresenceEntry, backend: RedisBackend = Depends(get_backend)):
    if entry.user_id != user_id:
        raise HTTPException(status_code=400, detail="user_id mismatch")
    await backend.set_presence(room_id, entry)
    return {"message": "ok"}


@rooms_router.delete("/{room_id}/presence/{user_id}")
async def remove_presence(room_id: str, user_id: str, backend: RedisBackend = Depends(get_backend)):
    removed = await backend.remove_presence(room_id, user_id)
    return {"removed": removed}
