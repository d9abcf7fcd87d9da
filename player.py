"""Playback capability helpers.

Players come from a third-party widget. Any method may be missing and any
call may raise, so everything goes through ``call_player``, which checks
the method exists and swallows failures: a broken player must never take
the session state machine down with it.
"""
from typing import Any, Awaitable, Callable, Optional

from errors import PlaybackCapabilityUnavailable
from logging_config import get_logger
from store import call_maybe_async

logger = get_logger(__name__)

# factory(container, on_ready=..., on_ended=...) -> player
PlayerFactory = Callable[..., Awaitable[Any]]

PLAYER_OPTIONS = {
    "autoplay": 1,
    "playsinline": 1,
    "rel": 0,
    "modestbranding": 1,
    "controls": 0,
    "disablekb": 1,
}


def supports(player: Any, method: str) -> bool:
    return player is not None and callable(getattr(player, method, None))


def capability(player: Any, method: str) -> Callable:
    if not supports(player, method):
        raise PlaybackCapabilityUnavailable(f"Player does not support {method}()")
    return getattr(player, method)


async def call_player(player: Any, method: str, *args) -> bool:
    try:
        await call_maybe_async(capability(player, method), *args)
        return True
    except PlaybackCapabilityUnavailable as e:
        logger.debug(e.message)
    except Exception as e:
        logger.warning(f"Player {method}() failed: {e}")
    return False


async def load_video(player: Any, video_id: str) -> bool:
    if await call_player(player, "load_by_id", video_id):
        return True
    return await call_player(player, "cue_by_id", video_id)


async def apply_audio(player: Any, enabled: bool) -> bool:
    if enabled:
        if supports(player, "unmute"):
            return await call_player(player, "unmute")
        return await call_player(player, "set_volume", 100)
    if supports(player, "mute"):
        return await call_player(player, "mute")
    return await call_player(player, "set_volume", 0)


async def release_player(player: Any) -> Optional[str]:
    """Tear a player down with ``destroy``, or ``stop`` when destroy is missing.

    Returns the name of the teardown that was attempted, None if neither exists.
    """
    for method in ("destroy", "stop"):
        if supports(player, method):
            await call_player(player, method)
            return method
    logger.debug("Player has no teardown capability")
    return None


class WebSocketPlayer:
    """A player living in a viewer's page, driven over that page's WebSocket.

    Commands go out as ``{"type": "command", "command": ...}``; the page
    reports ``ready`` and ``ended`` back and the endpoint forwards them to
    ``handle_event``.
    """

    def __init__(self, websocket, container: str, on_ready=None, on_ended=None):
        self.websocket = websocket
        self.container = container
        self.on_ready = on_ready
        self.on_ended = on_ended
        self.destroyed = False

    async def _send(self, command: str, **fields):
        await self.websocket.send_json({"type": "command", "command": command, **fields})

    async def create(self):
        await self._send("create", container=self.container, options=PLAYER_OPTIONS)

    async def load_by_id(self, video_id: str):
        await self._send("load", video_id=video_id)

    async def cue_by_id(self, video_id: str):
        await self._send("cue", video_id=video_id)

    async def mute(self):
        await self._send("mute")

    async def unmute(self):
        await self._send("unmute")

    async def set_volume(self, volume: int):
        await self._send("set_volume", volume=volume)

    async def stop(self):
        await self._send("stop")

    async def destroy(self):
        self.destroyed = True
        await self._send("destroy")

    async def handle_event(self, event: str):
        if self.destroyed:
            return
        if event == "ready" and self.on_ready:
            await call_maybe_async(self.on_ready, self)
        elif event == "ended" and self.on_ended:
            await call_maybe_async(self.on_ended, self)


def websocket_player_factory(websocket) -> PlayerFactory:
    async def create(container, on_ready=None, on_ended=None):
        player = WebSocketPlayer(websocket, container, on_ready=on_ready, on_ended=on_ended)
        await player.create()
        return player

    return create
