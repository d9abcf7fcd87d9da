"""Shared state store primitives.

The protocol only needs a small subset of a realtime key-value tree:
plain reads and writes addressed by slash separated paths, an atomic
remove, a single-path compare-and-swap, "remove this path if my
connection drops" rules and a watch that fires with the initial value and
on every change. ``RedisBackend`` and ``MemoryBackend`` implement it.
"""
import inspect
import json
import random
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

Callback = Callable[[Any], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]

# Returned by a transaction update function to leave the path untouched
ABORT = object()

# ASCII ordered, so keys compare in the order they were generated
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushKeyGenerator:
    """20 character keys: 8 chars of millisecond timestamp + 12 random chars.

    Keys generated within the same millisecond increment the random part,
    so lexicographic order always equals generation order on one client.
    """

    def __init__(self):
        self._last_time = 0
        self._last_random = []

    def __call__(self, now_ms: Optional[int] = None) -> str:
        now = int(time.time() * 1000) if now_ms is None else int(now_ms)
        duplicate = now == self._last_time
        self._last_time = now

        time_chars = []
        for _ in range(8):
            time_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        key = "".join(reversed(time_chars))

        if not duplicate or not self._last_random:
            self._last_random = [random.randrange(64) for _ in range(12)]
        else:
            i = 11
            while i > 0 and self._last_random[i] == 63:
                self._last_random[i] = 0
                i -= 1
            self._last_random[i] += 1

        return key + "".join(PUSH_CHARS[n] for n in self._last_random)


generate_push_key = PushKeyGenerator()


def encode_value(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def decode_value(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


def join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part)


def build_tree(path: str, entries: Dict[str, Any]) -> Any:
    """Assemble the value at ``path`` from a flat ``{full_path: value}`` map.

    A leaf stored at ``path`` wins. Otherwise descendants are nested into
    dicts with children in key order, which for push keys is insertion order.
    Returns None when nothing lives at or under ``path``.
    """
    if path in entries:
        return entries[path]
    prefix = path + "/"
    tree: Dict[str, Any] = {}
    for full_path in sorted(entries):
        if not full_path.startswith(prefix):
            continue
        parts = full_path[len(prefix):].split("/")
        node = tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = entries[full_path]
    return tree or None


def is_related(watched: str, changed: str) -> bool:
    """True when a write at ``changed`` can alter the value seen at ``watched``."""
    return (
        watched == changed
        or changed.startswith(watched + "/")
        or watched.startswith(changed + "/")
    )


async def call_maybe_async(func: Callable, *args, **kwargs) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class SharedStateStore:
    """Interface every store binding implements."""

    async def connect(self):
        pass

    async def close(self):
        pass

    async def get(self, path: str) -> Any:
        raise NotImplementedError

    async def set(self, path: str, value: Any):
        """Replace whatever lives at ``path`` (descendants included)."""
        raise NotImplementedError

    async def remove(self, path: str):
        """Remove ``path`` and its descendants. Missing paths are a no-op."""
        raise NotImplementedError

    async def transaction(self, path: str, update: Callable[[Any], Any]):
        """Atomically apply ``update(current)`` to a single path.

        ``update`` returns the new value, None to remove the path or ``ABORT``
        to leave it unchanged. Returns ``(committed, value)``.
        """
        raise NotImplementedError

    async def on_disconnect_remove(self, path: str):
        raise NotImplementedError

    async def cancel_on_disconnect(self, path: str):
        raise NotImplementedError

    async def watch(self, path: str, callback: Callback) -> Unsubscribe:
        """Call ``callback(value)`` now and on every change under ``path``."""
        raise NotImplementedError

    async def server_time_ms(self) -> int:
        return int(time.time() * 1000)

    def remove_blocking(self, paths: Iterable[str]):
        """Synchronous best-effort removal, for interpreter shutdown hooks."""
        raise NotImplementedError

    async def update(self, path: str, fields: Dict[str, Any]):
        def merge(current):
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(fields)
            return merged

        await self.transaction(path, merge)

    async def push(self, path: str, value: Any) -> str:
        key = generate_push_key()
        await self.set(join_path(path, key), value)
        return key

    async def exists(self, path: str) -> bool:
        return await self.get(path) is not None
