import asyncio
import atexit
import time
from typing import Any, Callable, Optional

from constants import (
    ACTION_COOLDOWN_SECONDS,
    ELAPSED_TICK_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    STALE_THRESHOLD_MS,
    VIEWER_TIMEOUT_MS,
)
from errors import AlreadyBroadcasting, EmptyPlaylist, StoreUnavailable
from logging_config import get_logger
from monitor import LivenessMonitor
from notifier import Notifier
from playlist import parse_playlist, thumbnail_urls
from schemas.session import BroadcasterPresence, PreviewResponse, SessionOnline, SessionStatusResponse
from session_context import SessionContext
from store import ABORT, SharedStateStore, join_path
from store_paths import BROADCASTER_PATH, LINKS_PATH, MESSAGES_PATH, ONLINE_PATH, TEMP_PATH

logger = get_logger(__name__)


def format_seconds(total_seconds: int) -> str:
    minutes, seconds = divmod(max(int(total_seconds), 0), 60)
    return f"{minutes:02d}:{seconds:02d}"


def owner_of(record: Any, field: str = "id") -> Any:
    return record.get(field) if isinstance(record, dict) else None


def is_fresh(presence: Any, now_ms: int, stale_threshold_ms: int = STALE_THRESHOLD_MS) -> bool:
    """A presence record holds the broadcaster lock while started and recently pinged."""
    if not isinstance(presence, dict) or presence.get("started") is not True:
        return False
    last_ping = presence.get("lastPing") or 0
    return now_ms - last_ping <= stale_threshold_ms


class SessionCoordinator:
    """Broadcaster side of the protocol: election, heartbeat and teardown.

    Exclusivity rests on ``signaling/broadcaster``: a record pinged within the
    stale threshold blocks every other coordinator. Viewers never look at it;
    they follow ``livestreams/online`` only. Both paths carry
    remove-on-disconnect rules so a crashed broadcaster cleans up after itself.
    """

    def __init__(self, store: SharedStateStore, notifier: Optional[Notifier] = None, *,
                 stale_threshold_ms: int = STALE_THRESHOLD_MS,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
                 cooldown_seconds: float = ACTION_COOLDOWN_SECONDS,
                 tick_seconds: float = ELAPSED_TICK_SECONDS,
                 viewer_timeout_ms: int = VIEWER_TIMEOUT_MS,
                 clock: Callable[[], float] = time.monotonic):
        self.context = SessionContext(store=store, notifier=notifier or Notifier())
        self.monitor = LivenessMonitor(self.context, viewer_timeout_ms=viewer_timeout_ms)
        self.stale_threshold_ms = stale_threshold_ms
        self.heartbeat_interval = heartbeat_interval
        self.cooldown_seconds = cooldown_seconds
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._cooldown_until = 0.0
        self._starting = False
        self._termination_hook = None

    @property
    def store(self) -> SharedStateStore:
        return self.context.store

    @property
    def notifier(self) -> Notifier:
        return self.context.notifier

    @property
    def is_streaming(self) -> bool:
        return self.context.is_streaming

    @property
    def cooldown_active(self) -> bool:
        return self.clock() < self._cooldown_until

    def _begin_cooldown(self):
        self._cooldown_until = self.clock() + self.cooldown_seconds

    def elapsed_seconds(self) -> int:
        if self.context.started_at is None:
            return 0
        return int(self.clock() - self.context.started_at)

    async def start_session(self) -> Optional[SessionContext]:
        """Try to become the broadcaster.

        Returns the live context, or None when the attempt was ignored because
        a session is already running here or the cooldown is active. Raises
        AlreadyBroadcasting, EmptyPlaylist or StoreUnavailable after notifying.
        """
        if self.context.is_streaming or self._starting:
            logger.warning("Start ignored: a session is already running")
            self.notifier.notify("The stream is already running")
            return None
        if self.cooldown_active:
            logger.warning("Start ignored: cooldown active")
            self.notifier.notify("Please wait a few seconds before trying again")
            return None

        self._begin_cooldown()
        self._starting = True
        try:
            return await self._start()
        except StoreUnavailable as e:
            try:
                await self._abandon_rules()
            except StoreUnavailable as cancel_error:
                logger.warning(f"Could not cancel disconnect rules: {cancel_error}")
            self.notifier.notify(e.message)
            raise
        finally:
            self._starting = False

    async def _generate_broadcaster_id(self) -> str:
        key = await self.store.push(TEMP_PATH, True)
        await self.store.remove(join_path(TEMP_PATH, key))
        return key

    async def _abandon_rules(self):
        for path in (BROADCASTER_PATH, ONLINE_PATH):
            await self.store.cancel_on_disconnect(path)

    async def _start(self) -> SessionContext:
        ctx = self.context
        store = self.store
        logger.info("Starting broadcast session")

        broadcaster_id = await self._generate_broadcaster_id()
        # before the check: a crash from here on must still clean up
        await store.on_disconnect_remove(BROADCASTER_PATH)

        presence = await store.get(BROADCASTER_PATH)
        now = await store.server_time_ms()
        if presence is not None:
            if is_fresh(presence, now, self.stale_threshold_ms):
                logger.warning(f"Broadcaster {owner_of(presence)} is still active, refusing to start")
                await self._abandon_rules()
                self.notifier.notify(AlreadyBroadcasting.default_message)
                raise AlreadyBroadcasting()
            logger.info(f"Reclaiming stale broadcaster presence {owner_of(presence)}")
            await store.remove(BROADCASTER_PATH)

        items = parse_playlist(await store.get(LINKS_PATH))
        if not items:
            logger.warning("Start refused: playlist is empty")
            await self._abandon_rules()
            self.notifier.notify(EmptyPlaylist.default_message)
            raise EmptyPlaylist()

        if not await self._claim_presence(broadcaster_id):
            await self._abandon_rules()
            self.notifier.notify(AlreadyBroadcasting.default_message)
            raise AlreadyBroadcasting()

        started_at_ms = await store.server_time_ms()
        online = SessionOnline(started=True, started_at=started_at_ms, broadcaster_id=broadcaster_id)
        try:
            await store.on_disconnect_remove(ONLINE_PATH)
            await store.set(ONLINE_PATH, online.to_store())
            logger.info(f"Session marked online at {ONLINE_PATH}")
        except StoreUnavailable as e:
            logger.error("Failed to mark the session online, rolling back presence")
            try:
                await self._release_path(BROADCASTER_PATH, "id", broadcaster_id)
            except StoreUnavailable as rollback_error:
                logger.warning(f"Rollback of {BROADCASTER_PATH} failed: {rollback_error}")
            raise StoreUnavailable("Failed to mark the stream online") from e

        ctx.broadcaster_id = broadcaster_id
        ctx.is_streaming = True
        ctx.started_at = self.clock()
        ctx.started_at_ms = started_at_ms
        ctx.elapsed_seconds = 0
        main_url, fallback_url = thumbnail_urls(items[0].video_id)
        ctx.preview = PreviewResponse(video_id=items[0].video_id, thumbnail_url=main_url,
                                      fallback_thumbnail_url=fallback_url)
        ctx.timer_task = asyncio.create_task(self._run_timer())
        ctx.heartbeat_task = asyncio.create_task(self._run_heartbeat())
        self._register_termination_hook()
        ctx.update_connections()

        logger.info(f"Broadcaster {broadcaster_id} is live with {len(items)} playlist items")
        self.notifier.notify("Stream started")
        return ctx

    async def _claim_presence(self, broadcaster_id: str) -> bool:
        """Write our presence unless a fresh record of someone else appeared.

        Returns False only when another broadcaster won the race. A failed
        write is logged and treated as claimed: viewers follow the online
        signal, not this record.
        """
        now = await self.store.server_time_ms()
        record = BroadcasterPresence(id=broadcaster_id, started=True, last_ping=now).to_store()

        def claim(current):
            if is_fresh(current, now, self.stale_threshold_ms) and owner_of(current) != broadcaster_id:
                return ABORT
            return record

        try:
            committed, current = await self.store.transaction(BROADCASTER_PATH, claim)
        except StoreUnavailable as e:
            logger.error(f"Failed to write {BROADCASTER_PATH}, continuing: {e}")
            return True
        if not committed:
            logger.warning(f"Lost broadcaster election to {owner_of(current)}")
            return False
        logger.info(f"Broadcaster registered with id={broadcaster_id}")
        return True

    async def _run_timer(self):
        ctx = self.context
        while ctx.timer_task is not None:
            await asyncio.sleep(self.tick_seconds)
            ctx.elapsed_seconds = self.elapsed_seconds()

    async def _run_heartbeat(self):
        ctx = self.context
        while ctx.heartbeat_task is not None:
            await asyncio.sleep(self.heartbeat_interval)
            if ctx.heartbeat_task is None:
                break
            # a stop arriving mid-beat cancels this loop but lets the beat finish
            await asyncio.shield(self.beat())

    async def beat(self):
        """One heartbeat: refresh lastPing on our own record, then reap viewers."""
        ctx = self.context
        broadcaster_id = ctx.broadcaster_id
        if broadcaster_id is None:
            return

        try:
            now = await self.store.server_time_ms()

            def ping(current):
                if not isinstance(current, dict) or current.get("id") != broadcaster_id:
                    return ABORT
                return {**current, "lastPing": now}

            committed, _ = await self.store.transaction(BROADCASTER_PATH, ping)
            if committed:
                logger.debug(f"Ping (broadcaster {broadcaster_id} -> store)")
            else:
                logger.warning(f"Presence record is no longer owned by {broadcaster_id}, ping skipped")
        except StoreUnavailable as e:
            logger.warning(f"Heartbeat ping failed: {e}")

        if ctx.broadcaster_id != broadcaster_id:
            return
        await self.monitor.reap()

    async def _release_path(self, path: str, owner_field: str, owner_id: str):
        """Remove ``path`` unless it now belongs to another broadcaster."""

        def release(current):
            if owner_of(current, owner_field) not in (None, owner_id):
                return ABORT
            return None

        committed, current = await self.store.transaction(path, release)
        if not committed:
            logger.warning(f"{path} belongs to {owner_of(current, owner_field)}, left in place")

    async def stop_session(self, force: bool = False) -> bool:
        """Tear the session down. Never raises because of the store.

        A no-op returning False when nothing is live or the cooldown is
        active; ``force`` skips the cooldown (used on shutdown).
        """
        ctx = self.context
        if not ctx.is_streaming:
            return False
        if self.cooldown_active and not force:
            logger.info("Stop ignored: cooldown active")
            return False

        self._begin_cooldown()
        broadcaster_id = ctx.broadcaster_id
        elapsed = ctx.elapsed_seconds
        ctx.is_streaming = False
        logger.info(f"Stopping broadcast session {broadcaster_id}")

        heartbeat, ctx.heartbeat_task = ctx.heartbeat_task, None
        if heartbeat is not None:
            heartbeat.cancel()
        timer, ctx.timer_task = ctx.timer_task, None
        if timer is not None:
            timer.cancel()

        for viewer_id in list(ctx.peers):
            ctx.drop_peer(viewer_id)

        removals = [
            (BROADCASTER_PATH, lambda: self._release_path(BROADCASTER_PATH, "id", broadcaster_id)),
            (MESSAGES_PATH, lambda: self.store.remove(MESSAGES_PATH)),
            (ONLINE_PATH, lambda: self._release_path(ONLINE_PATH, "broadcasterId", broadcaster_id)),
        ]
        for path, remove in removals:
            try:
                await remove()
            except Exception as e:
                logger.warning(f"Error removing {path} on stop: {e}")
        try:
            await self._abandon_rules()
        except Exception as e:
            logger.warning(f"Error cancelling disconnect rules: {e}")

        self._unregister_termination_hook()
        ctx.clear()
        self.notifier.notify(f"Stream ended ({format_seconds(elapsed)})")
        return True

    async def shutdown(self):
        await self.stop_session(force=True)

    def _register_termination_hook(self):
        self._unregister_termination_hook()
        store = self.store

        def remove_on_exit():
            try:
                store.remove_blocking([BROADCASTER_PATH, ONLINE_PATH])
            except Exception as e:
                logger.warning(f"Exit cleanup failed: {e}")

        self._termination_hook = remove_on_exit
        atexit.register(remove_on_exit)

    def _unregister_termination_hook(self):
        if self._termination_hook is not None:
            atexit.unregister(self._termination_hook)
            self._termination_hook = None

    def status(self) -> SessionStatusResponse:
        ctx = self.context
        elapsed = ctx.elapsed_seconds if ctx.is_streaming else 0
        return SessionStatusResponse(
            is_streaming=ctx.is_streaming,
            broadcaster_id=ctx.broadcaster_id,
            elapsed_seconds=elapsed,
            elapsed=format_seconds(elapsed),
            connections=list(ctx.connections),
            preview=ctx.preview,
            cooldown_active=self.cooldown_active,
            notifications=self.notifier.recent(),
        )
