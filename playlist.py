import re
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from errors import InvalidLink, StoreUnavailable
from logging_config import get_logger
from notifier import Notifier
from schemas.playlist import PlaylistItem
from store import SharedStateStore, Unsubscribe, call_maybe_async
from store_paths import LINK_PATH, LINKS_PATH

logger = get_logger(__name__)

VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
# Last resort for links urlparse cannot make sense of
LOOSE_VIDEO_ID_RE = re.compile(r"(?:v=|/embed/|youtu\.be/)([A-Za-z0-9_-]{11})")

THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"
FALLBACK_THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/hqdefault.jpg"


def _first_segment(path: str) -> str:
    return path.strip("/").split("/")[0] if path else ""


def _id_from_url(candidate: str) -> Optional[str]:
    try:
        url = urlparse(candidate)
        host = (url.hostname or "").lower()
    except ValueError:
        logger.debug(f"Not a valid URL: {candidate!r}")
        return None
    if not url.scheme or not host:
        return None

    if "youtu.be" in host:
        return _first_segment(url.path)
    if "youtube.com" in host:
        if "/live/" in url.path:
            return _first_segment(url.path.split("/live/", 1)[1])
        v = parse_qs(url.query).get("v")
        if v and v[0]:
            return v[0]
        parts = url.path.split("/")
        if "embed" in parts:
            index = parts.index("embed")
            if index + 1 < len(parts) and parts[index + 1]:
                return parts[index + 1]
    return None


def extract_video_id(raw: Optional[str]) -> Optional[str]:
    """Pull the 11 character video id out of a bare id or a video link.

    Understands short links, ``watch?v=`` links, ``/live/<id>`` and
    ``/embed/<id>`` paths, then falls back to a loose scan of the text.
    """
    if not raw:
        return None
    candidate = raw.strip()
    if VIDEO_ID_RE.match(candidate):
        return candidate

    video_id = _id_from_url(candidate)
    if video_id and VIDEO_ID_RE.match(video_id):
        return video_id

    match = LOOSE_VIDEO_ID_RE.search(candidate)
    if match:
        return match.group(1)
    return None


def thumbnail_urls(video_id: str) -> Tuple[str, str]:
    return THUMBNAIL_URL.format(video_id=video_id), FALLBACK_THUMBNAIL_URL.format(video_id=video_id)


def parse_playlist(value: Any) -> List[PlaylistItem]:
    """Turn the raw ``livestreams/links`` snapshot into items, keeping key order."""
    if not isinstance(value, dict):
        return []
    items = []
    for key, record in value.items():
        if not isinstance(record, dict):
            continue
        try:
            items.append(PlaylistItem.model_validate({"key": key, **record}))
        except ValidationError as e:
            logger.warning(f"Skipping malformed playlist item {key}: {e}")
    return items


class PlaylistRegistry:
    def __init__(self, store: SharedStateStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier

    def _notify(self, message: str):
        if self.notifier is not None:
            self.notifier.notify(message)

    async def add_item(self, raw: str) -> PlaylistItem:
        video_id = extract_video_id(raw)
        if not video_id:
            logger.warning(f"Rejected playlist input {raw!r}: no video id")
            self._notify(InvalidLink.default_message)
            raise InvalidLink()

        try:
            added_at = await self.store.server_time_ms()
            item = PlaylistItem(key="", url=raw, video_id=video_id, added_at=added_at)
            item.key = await self.store.push(LINKS_PATH, item.to_store())
        except StoreUnavailable:
            self._notify("Failed to add link")
            raise
        logger.info(f"Added playlist item {item.key} ({video_id})")
        self._notify("Link added")
        return item

    async def remove_item(self, key: str):
        try:
            await self.store.remove(LINK_PATH.format(key=key))
        except StoreUnavailable:
            self._notify("Failed to remove link")
            raise
        logger.info(f"Removed playlist item {key}")
        self._notify("Link removed")

    async def list_items(self) -> List[PlaylistItem]:
        return parse_playlist(await self.store.get(LINKS_PATH))

    async def watch(self, callback: Callable[[List[PlaylistItem]], Any]) -> Unsubscribe:
        async def on_change(value):
            await call_maybe_async(callback, parse_playlist(value))

        return await self.store.watch(LINKS_PATH, on_change)
