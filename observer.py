import asyncio
from typing import Any, Callable, List, Optional

from constants import VIEWER_PING_INTERVAL_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger
from notifier import Notifier
from player import PlayerFactory, apply_audio, release_player
from playlist import parse_playlist
from schemas.playlist import PlaylistItem
from schemas.session import ViewerRecord
from sequencer import PlaylistSequencer
from store import SharedStateStore, Unsubscribe, call_maybe_async
from store_paths import LINKS_PATH, ONLINE_PATH, VIEWER_PATH

logger = get_logger(__name__)


class SessionObserver:
    """Viewer side of the protocol.

    Follows ``livestreams/online`` and the playlist. While the online record
    exists and the playlist is not empty it holds exactly one player and
    plays the list from the top; when the record disappears the player is
    torn down before the live flag drops.
    """

    def __init__(self, store: SharedStateStore, player_factory: PlayerFactory, notifier: Optional[Notifier] = None, *,
                 container: str = "player", viewer_id: Optional[str] = None,
                 ping_interval: float = VIEWER_PING_INTERVAL_SECONDS,
                 on_change: Optional[Callable[[dict], Any]] = None):
        self.store = store
        self.player_factory = player_factory
        self.notifier = notifier or Notifier()
        self.container = container
        self.viewer_id = viewer_id
        self.ping_interval = ping_interval
        self.on_change = on_change
        self.sequencer = PlaylistSequencer(self.notifier)

        self.playlist: List[PlaylistItem] = []
        self.is_streaming = False
        self.has_started_once = False
        self.audio_enabled = False
        self.player = None
        self.mounted = False

        self._acquire_lock = asyncio.Lock()
        self._unsubscribers: List[Unsubscribe] = []
        self._presence_task: Optional[asyncio.Task] = None

    async def mount(self):
        self.mounted = True
        self._unsubscribers.append(await self.store.watch(LINKS_PATH, self._on_links))
        self._unsubscribers.append(await self.store.watch(ONLINE_PATH, self._on_online))
        if self.viewer_id:
            await self.store.on_disconnect_remove(self._viewer_path)
            await self._ping()
            self._presence_task = asyncio.create_task(self._run_presence())
        logger.info(f"Observer mounted (viewer={self.viewer_id})")

    async def unmount(self):
        self.mounted = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._presence_task is not None:
            self._presence_task.cancel()
            self._presence_task = None

        await self._release()

        if self.viewer_id:
            try:
                await self.store.remove(self._viewer_path)
                await self.store.cancel_on_disconnect(self._viewer_path)
            except StoreUnavailable as e:
                logger.warning(f"Could not remove viewer record {self.viewer_id}: {e}")
        logger.info(f"Observer unmounted (viewer={self.viewer_id})")

    @property
    def _viewer_path(self) -> str:
        return VIEWER_PATH.format(viewer_id=self.viewer_id)

    async def _ping(self):
        now = await self.store.server_time_ms()
        await self.store.set(self._viewer_path, ViewerRecord(last_seen=now).to_store())

    async def _run_presence(self):
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self._ping()
                logger.debug(f"Ping (viewer {self.viewer_id} -> store)")
            except StoreUnavailable as e:
                logger.warning(f"Viewer ping failed: {e}")

    async def _on_links(self, value):
        self.playlist = parse_playlist(value)
        logger.debug(f"Playlist now has {len(self.playlist)} items")
        await self._changed()
        await self._sync()

    async def _on_online(self, value):
        if value is None:
            # release first: the player's mount point goes away with the live view
            await self._release()
            was_streaming, self.is_streaming = self.is_streaming, False
            if was_streaming:
                logger.info("Session went offline")
            await self._changed()
            return

        was_streaming = self.is_streaming
        self.has_started_once = True
        self.is_streaming = True
        if not was_streaming:
            logger.info(f"Session is live (broadcaster={value.get('broadcasterId') if isinstance(value, dict) else None})")
            await self._changed()
            await self._sync()

    async def _sync(self):
        """Point the player at the first item, acquiring it once per live session."""
        if not self.is_streaming or not self.playlist:
            return
        async with self._acquire_lock:
            if not self.is_streaming or not self.playlist:
                return
            if self.player is None:
                try:
                    player = await call_maybe_async(
                        self.player_factory, self.container, on_ready=self._on_ready, on_ended=self._on_ended
                    )
                except Exception as e:
                    logger.error(f"Could not create player: {e}", exc_info=True)
                    self.notifier.notify("Player unavailable")
                    return
                if not self.is_streaming:
                    # went offline while the player was being created
                    await release_player(player)
                    return
                self.player = player
                logger.info("Player acquired")
                # the first item is loaded from on_ready
                return

            await self.sequencer.start(self.player, self.playlist)
            await apply_audio(self.player, self.audio_enabled)

    async def _on_ready(self, player):
        if self.player is not None and player is not self.player:
            return
        if not self.is_streaming:
            return
        await apply_audio(player, self.audio_enabled)
        if self.playlist:
            await self.sequencer.start(player, self.playlist)
        await self._changed()

    async def _on_ended(self, player):
        if player is not self.player:
            return
        await self.sequencer.advance(player)
        await self._changed()

    async def _release(self):
        player, self.player = self.player, None
        self.sequencer.reset()
        if player is None:
            return
        method = await release_player(player)
        logger.info(f"Player released ({method})")

    async def enable_audio(self):
        self.audio_enabled = True
        if self.is_streaming:
            self.notifier.notify("Audio enabled")
        if self.player is not None:
            await apply_audio(self.player, True)
        await self._changed()
        await self._sync()

    def snapshot(self) -> dict:
        if self.is_streaming and self.playlist:
            view = "live"
        elif self.has_started_once:
            view = "ended"
        else:
            view = "waiting"
        current = self.sequencer.current_item if self.player is not None else None
        return {
            "type": "state",
            "view": view,
            "is_streaming": self.is_streaming,
            "has_started_once": self.has_started_once,
            "audio_enabled": self.audio_enabled,
            "current_index": self.sequencer.current_index,
            "current_video_id": current.video_id if current else None,
            "playlist": [item.model_dump(by_alias=True) for item in self.playlist],
        }

    async def _changed(self):
        if self.on_change is None:
            return
        try:
            await call_maybe_async(self.on_change, self.snapshot())
        except Exception as e:
            logger.warning(f"State listener failed: {e}")
