import asyncio
import copy
import time
from typing import Any, Callable, Dict, Iterable, List

from errors import StoreUnavailable
from logging_config import get_logger
from store import ABORT, Callback, SharedStateStore, Unsubscribe, build_tree, call_maybe_async, is_related

logger = get_logger(__name__)

_UNSET = object()


class _Watch:
    def __init__(self, path: str, callback: Callback, owner: "MemoryBackend"):
        self.path = path
        self.callback = callback
        self.owner = owner
        self.active = True
        self.last_value = _UNSET

    async def deliver(self, value: Any):
        if not self.active or value == self.last_value:
            return
        self.last_value = value
        try:
            await call_maybe_async(self.callback, copy.deepcopy(value))
        except Exception as e:
            logger.error(f"Watch callback for {self.path} failed: {e}", exc_info=True)


class MemoryStore:
    """The shared tree. One instance plays the role of the remote store;
    every client talks to it through its own ``MemoryBackend``."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.entries: Dict[str, Any] = {}
        self.clock = clock
        self.watches: List[_Watch] = []

    def read(self, path: str) -> Any:
        return copy.deepcopy(build_tree(path, self.entries))

    def delete(self, path: str) -> int:
        prefix = path + "/"
        doomed = [p for p in self.entries if p == path or p.startswith(prefix)]
        for p in doomed:
            del self.entries[p]
        return len(doomed)

    def write(self, path: str, value: Any):
        self.delete(path)
        if value is not None:
            self.entries[path] = copy.deepcopy(value)

    async def notify(self, path: str):
        for watch in list(self.watches):
            if watch.active and is_related(watch.path, path):
                await watch.deliver(self.read(watch.path))


class MemoryBackend(SharedStateStore):
    """A client connection onto a ``MemoryStore``.

    ``disconnect()`` behaves like a dropped connection: every path registered
    with ``on_disconnect_remove`` is removed and the watches go quiet.
    """

    def __init__(self, store: MemoryStore = None):
        self.store = store if store is not None else MemoryStore()
        self.connected = False
        self.disconnect_paths: set = set()
        self._watches: List[_Watch] = []

    async def connect(self):
        self.connected = True
        logger.info("Memory store connection opened")

    async def close(self):
        await self.disconnect()

    async def disconnect(self):
        if not self.connected:
            return
        self.connected = False
        for watch in self._watches:
            watch.active = False
            if watch in self.store.watches:
                self.store.watches.remove(watch)
        self._watches.clear()
        for path in sorted(self.disconnect_paths):
            removed = self.store.delete(path)
            logger.debug(f"Disconnect rule removed {path} ({removed} entries)")
            await self.store.notify(path)
        self.disconnect_paths.clear()
        logger.info("Memory store connection closed")

    def _ensure_connected(self):
        if not self.connected:
            raise StoreUnavailable("Store connection is closed")

    async def get(self, path: str) -> Any:
        self._ensure_connected()
        return self.store.read(path)

    async def set(self, path: str, value: Any):
        self._ensure_connected()
        self.store.write(path, value)
        await self.store.notify(path)

    async def remove(self, path: str):
        self._ensure_connected()
        if self.store.delete(path):
            await self.store.notify(path)

    async def transaction(self, path: str, update: Callable[[Any], Any]):
        self._ensure_connected()
        current = self.store.read(path)
        new_value = update(copy.deepcopy(current))
        if new_value is ABORT:
            return False, current
        self.store.write(path, new_value)
        await self.store.notify(path)
        return True, new_value

    async def on_disconnect_remove(self, path: str):
        self._ensure_connected()
        self.disconnect_paths.add(path)

    async def cancel_on_disconnect(self, path: str):
        self.disconnect_paths.discard(path)

    async def watch(self, path: str, callback: Callback) -> Unsubscribe:
        self._ensure_connected()
        watch = _Watch(path, callback, self)
        self.store.watches.append(watch)
        self._watches.append(watch)
        await watch.deliver(self.store.read(path))

        def unsubscribe():
            watch.active = False
            if watch in self.store.watches:
                self.store.watches.remove(watch)
            if watch in self._watches:
                self._watches.remove(watch)

        return unsubscribe

    async def server_time_ms(self) -> int:
        return int(self.store.clock() * 1000)

    def remove_blocking(self, paths: Iterable[str]):
        paths = list(paths)
        for path in paths:
            self.store.delete(path)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for path in paths:
            loop.create_task(self.store.notify(path))
