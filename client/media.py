import re
from typing import Optional

YOUTUBE_ID_PATTERNS = [
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([^&\n?#]+)"),
    re.compile(r"youtube\.com/embed/([^&\n?#]+)"),
]

VIDEO_EXTENSIONS = (".mp4", ".webm", ".ogg", ".mov", ".m3u8")


def is_youtube_url(url: str) -> bool:
    return "youtube.com" in url or "youtu.be" in url


def youtube_video_id(url: str) -> Optional[str]:
    for pattern in YOUTUBE_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def is_valid_video_url(url: str) -> bool:
    if is_youtube_url(url):
        return True
    lowered = url.lower()
    return any(ext in lowered for ext in VIDEO_EXTENSIONS)


def classify_source(url: str) -> bool:
    """Validate a playback source. Returns True for embedded-platform (YouTube) URLs.

    Raises ValueError with a user-facing message for anything unplayable.
    """
    url = url.strip()
    if not url.startswith("http://") and not url.startswith("https://"):
        raise ValueError("URL must start with http:// or https://")
    if is_youtube_url(url):
        if not youtube_video_id(url):
            raise ValueError("Invalid YouTube URL")
        return True
    if is_valid_video_url(url):
        return False
    raise ValueError(
        "Please use a YouTube link or direct video URL (.mp4, .webm, .ogg, .mov, .m3u8)"
    )
