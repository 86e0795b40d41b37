REDIS_META_KEY = "rooms:{slug}:meta" # room id - hash: created, createdAt
REDIS_VIDEO_STATE_KEY = "rooms:{slug}:video_state" # room id - VideoState json
REDIS_PRESENCE_KEY = "rooms:{slug}:presence" # room id - hash userId -> {username, lastSeen}
REDIS_MESSAGES_KEY = "rooms:{slug}:messages" # room id - list of ChatMessage json
REDIS_ROOM_CHANNEL = "rooms:{slug}:channel" # room id - pub/sub channel name


def room_record_keys(room_id: str) -> list[str]:
    """Every key that makes up one persisted room record."""
    return [
        REDIS_META_KEY.format(slug=room_id),
        REDIS_VIDEO_STATE_KEY.format(slug=room_id),
        REDIS_PRESENCE_KEY.format(slug=room_id),
        REDIS_MESSAGES_KEY.format(slug=room_id),
    ]
