import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from logging_config import get_logger
from notifier import Notifier
from schemas.session import ConnectionEntry, PreviewResponse
from store import SharedStateStore

logger = get_logger(__name__)


@dataclass
class PeerHandle:
    """Broadcaster-side handle for one viewer, never persisted.

    ``unsubscribe`` stops the watch on the viewer's record.
    """
    viewer_id: str
    connected_at: int
    last_seen: Optional[int] = None
    unsubscribe: Optional[Callable[[], None]] = None
    closed: bool = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self.unsubscribe is None:
            return
        try:
            self.unsubscribe()
        except Exception as e:
            logger.warning(f"Error closing peer {self.viewer_id}: {e}")


@dataclass
class SessionContext:
    """Everything the broadcaster holds for one session.

    Owned by the SessionCoordinator and shared with its LivenessMonitor.
    ``clear()`` returns it to the idle state without dropping the store.
    """
    store: SharedStateStore
    notifier: Notifier
    broadcaster_id: Optional[str] = None
    is_streaming: bool = False
    started_at: Optional[float] = None  # local clock, presentation only
    started_at_ms: Optional[int] = None  # store clock, as written to livestreams/online
    elapsed_seconds: int = 0
    preview: Optional[PreviewResponse] = None
    peers: Dict[str, PeerHandle] = field(default_factory=dict)
    connections: List[ConnectionEntry] = field(default_factory=list)
    heartbeat_task: Optional[asyncio.Task] = None
    timer_task: Optional[asyncio.Task] = None

    def update_connections(self) -> List[ConnectionEntry]:
        host = [ConnectionEntry(type="Host", id=self.broadcaster_id)] if self.broadcaster_id else []
        viewers = [ConnectionEntry(type="Viewer", id=viewer_id) for viewer_id in self.peers]
        self.connections = host + viewers
        return self.connections

    def drop_peer(self, viewer_id: str) -> bool:
        peer = self.peers.pop(viewer_id, None)
        if peer is None:
            return False
        peer.close()
        return True

    def clear(self):
        for viewer_id in list(self.peers):
            self.drop_peer(viewer_id)
        self.broadcaster_id = None
        self.is_streaming = False
        self.started_at = None
        self.started_at_ms = None
        self.elapsed_seconds = 0
        self.preview = None
        self.connections = []
        self.heartbeat_task = None
        self.timer_task = None
