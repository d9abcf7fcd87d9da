from typing import List, Optional

from pydantic import ValidationError

from constants import VIEWER_TIMEOUT_MS
from errors import StoreUnavailable
from logging_config import get_logger
from schemas.session import ViewerRecord
from session_context import PeerHandle, SessionContext
from store import Unsubscribe
from store_paths import VIEWER_PATH, VIEWERS_PATH

logger = get_logger(__name__)


class LivenessMonitor:
    """Reaps viewers that stopped refreshing ``signaling/viewers/<id>``.

    Runs at the tail of each broadcaster heartbeat. Purely advisory: it keeps
    the store and the peer table tidy but never decides whether the session
    is live.
    """

    def __init__(self, context: SessionContext, viewer_timeout_ms: int = VIEWER_TIMEOUT_MS):
        self.context = context
        self.viewer_timeout_ms = viewer_timeout_ms

    def _last_seen(self, raw) -> Optional[int]:
        if not isinstance(raw, dict):
            return None
        try:
            return ViewerRecord.model_validate(raw).last_seen
        except ValidationError:
            return None

    async def _follow(self, peer: PeerHandle) -> Optional[Unsubscribe]:
        """Watch a tracked viewer's record so a departure drops it before the next reap."""
        ctx = self.context

        async def on_record(raw):
            if ctx.peers.get(peer.viewer_id) is not peer:
                return
            if raw is None:
                logger.info(f"Viewer {peer.viewer_id} left")
                ctx.drop_peer(peer.viewer_id)
                ctx.update_connections()
                return
            last_seen = self._last_seen(raw)
            if last_seen is not None:
                peer.last_seen = last_seen

        try:
            return await ctx.store.watch(VIEWER_PATH.format(viewer_id=peer.viewer_id), on_record)
        except StoreUnavailable as e:
            logger.warning(f"Could not follow viewer {peer.viewer_id}: {e}")
            return None

    async def reap(self) -> List[str]:
        ctx = self.context
        store = ctx.store
        try:
            viewers = await store.get(VIEWERS_PATH)
            now = await store.server_time_ms()
        except StoreUnavailable as e:
            logger.warning(f"Skipping viewer reap, store unavailable: {e}")
            return []
        viewers = viewers if isinstance(viewers, dict) else {}

        reaped = []
        for viewer_id, raw in viewers.items():
            last_seen = self._last_seen(raw)
            if last_seen is None or now - last_seen > self.viewer_timeout_ms:
                logger.info(f"Viewer {viewer_id} did not respond in time, removing")
                try:
                    await store.remove(VIEWER_PATH.format(viewer_id=viewer_id))
                except StoreUnavailable as e:
                    logger.warning(f"Could not remove viewer record {viewer_id}: {e}")
                ctx.drop_peer(viewer_id)
                reaped.append(viewer_id)
                continue

            peer = ctx.peers.get(viewer_id)
            if peer is None:
                peer = ctx.peers[viewer_id] = PeerHandle(viewer_id=viewer_id, connected_at=now, last_seen=last_seen)
                logger.debug(f"Tracking viewer {viewer_id}")
                unsubscribe = await self._follow(peer)
                if peer.closed and unsubscribe is not None:
                    unsubscribe()
                else:
                    peer.unsubscribe = unsubscribe
            else:
                peer.last_seen = last_seen

        # viewers that removed their own record on the way out
        for viewer_id in list(ctx.peers):
            if viewer_id not in viewers:
                ctx.drop_peer(viewer_id)
                logger.debug(f"Viewer {viewer_id} left")

        ctx.update_connections()
        if reaped:
            logger.info(f"Reaped {len(reaped)} stale viewers, {len(ctx.peers)} remaining")
        return reaped
