"""Shared fixtures and doubles for the protocol tests."""

from __future__ import annotations

import pytest

from memory_backend import MemoryBackend, MemoryStore
from notifier import Notifier


class FakeClock:
    """Stands in for both the store clock and the coordinator's monotonic clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    @property
    def ms(self) -> int:
        return int(self.now * 1000)


class RecordingPlayer:
    """Player double with the full capability surface, recording every call."""

    def __init__(self, container=None, on_ready=None, on_ended=None) -> None:
        self.container = container
        self.on_ready = on_ready
        self.on_ended = on_ended
        self.calls: list[tuple] = []

    def load_by_id(self, video_id):
        self.calls.append(("load_by_id", video_id))

    def cue_by_id(self, video_id):
        self.calls.append(("cue_by_id", video_id))

    def mute(self):
        self.calls.append(("mute",))

    def unmute(self):
        self.calls.append(("unmute",))

    def set_volume(self, volume):
        self.calls.append(("set_volume", volume))

    def stop(self):
        self.calls.append(("stop",))

    def destroy(self):
        self.calls.append(("destroy",))

    @property
    def loads(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "load_by_id"]

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def fire_ready(self):
        await self.on_ready(self)

    async def fire_ended(self):
        await self.on_ended(self)


class RecordingFactory:
    def __init__(self, player_cls=RecordingPlayer) -> None:
        self.player_cls = player_cls
        self.created: list = []

    async def __call__(self, container, on_ready=None, on_ended=None):
        player = self.player_cls(container, on_ready=on_ready, on_ended=on_ended)
        self.created.append(player)
        return player


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def notifier() -> Notifier:
    # no running loop in sync code paths, and a zero interval inside asyncio.run
    return Notifier(interval=0)


async def connected(store: MemoryStore) -> MemoryBackend:
    backend = MemoryBackend(store)
    await backend.connect()
    return backend


def links_record(video_id: str, added_at: int = 0) -> dict:
    return {"url": f"https://youtu.be/{video_id}", "videoId": video_id, "addedAt": added_at}


def messages(notifier: Notifier) -> list[str]:
    """Everything notified so far, shown or still queued."""
    return notifier.recent() + list(notifier.queue)
