from typing import Any, List, Optional, Sequence

from logging_config import get_logger
from notifier import Notifier
from player import load_video
from schemas.playlist import PlaylistItem

logger = get_logger(__name__)


class PlaylistSequencer:
    """Moves one client's player through the playlist, one item per "ended".

    There is no shared position: every client starts at index 0 when it sees
    the session go live and advances on its own player's events, so viewers
    drift apart over long sessions and late joiners start from the top.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier
        self.playlist: List[PlaylistItem] = []
        self.current_index = 0
        self.finished = False

    @property
    def current_item(self) -> Optional[PlaylistItem]:
        if 0 <= self.current_index < len(self.playlist):
            return self.playlist[self.current_index]
        return None

    def reset(self):
        self.playlist = []
        self.current_index = 0
        self.finished = False

    async def start(self, player: Any, playlist: Sequence[PlaylistItem]) -> Optional[PlaylistItem]:
        self.playlist = list(playlist)
        self.current_index = 0
        self.finished = False
        first = self.current_item
        if first is None:
            return None
        logger.debug(f"Sequencer starting at {first.video_id} (1/{len(self.playlist)})")
        await load_video(player, first.video_id)
        return first

    async def advance(self, player: Any) -> Optional[PlaylistItem]:
        if self.finished or not self.playlist:
            return None
        next_index = self.current_index + 1
        if next_index < len(self.playlist):
            self.current_index = next_index
            item = self.playlist[next_index]
            logger.debug(f"Sequencer advancing to {item.video_id} ({next_index + 1}/{len(self.playlist)})")
            await load_video(player, item.video_id)
            return item

        self.finished = True
        logger.info("Playlist finished")
        if self.notifier is not None:
            self.notifier.notify("Playlist finished")
        return None
