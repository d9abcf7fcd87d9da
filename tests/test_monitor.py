import asyncio

from conftest import connected
from monitor import LivenessMonitor
from notifier import Notifier
from session_context import PeerHandle, SessionContext
from store_paths import VIEWER_PATH, VIEWERS_PATH


def make_context(store, broadcaster_id="host"):
    return SessionContext(store=store, notifier=Notifier(interval=0), broadcaster_id=broadcaster_id, is_streaming=True)


def test_reap_removes_stale_and_tracks_fresh(memory_store, clock):
    async def scenario():
        store = await connected(memory_store)
        await store.set(VIEWER_PATH.format(viewer_id="fresh"), {"lastSeen": clock.ms - 5_000})
        await store.set(VIEWER_PATH.format(viewer_id="edge"), {"lastSeen": clock.ms - 40_000})
        await store.set(VIEWER_PATH.format(viewer_id="stale"), {"lastSeen": clock.ms - 40_001})
        await store.set(VIEWER_PATH.format(viewer_id="broken"), {"joined": True})

        ctx = make_context(store)
        reaped = await LivenessMonitor(ctx).reap()

        assert sorted(reaped) == ["broken", "stale"]
        assert sorted(await store.get(VIEWERS_PATH)) == ["edge", "fresh"]
        assert sorted(ctx.peers) == ["edge", "fresh"]
        assert ctx.peers["fresh"].last_seen == clock.ms - 5_000
        assert [entry.id for entry in ctx.connections] == ["host", "edge", "fresh"]
        assert [entry.type for entry in ctx.connections] == ["Host", "Viewer", "Viewer"]

    asyncio.run(scenario())


def test_reap_closes_handles_of_departed_viewers(memory_store, clock):
    async def scenario():
        store = await connected(memory_store)
        ctx = make_context(store)
        closed = []
        ctx.peers["gone"] = PeerHandle(viewer_id="gone", connected_at=0, unsubscribe=lambda: closed.append("gone"))
        ctx.peers["late"] = PeerHandle(viewer_id="late", connected_at=0, unsubscribe=lambda: closed.append("late"))
        await store.set(VIEWER_PATH.format(viewer_id="late"), {"lastSeen": clock.ms - 60_000})

        monitor = LivenessMonitor(ctx)
        assert await monitor.reap() == ["late"]
        assert sorted(closed) == ["gone", "late"]
        assert ctx.peers == {}
        assert await store.get(VIEWERS_PATH) is None

        # a second pass finds nothing new to close
        await monitor.reap()
        assert sorted(closed) == ["gone", "late"]

    asyncio.run(scenario())


def test_reap_skips_when_store_is_unavailable(memory_store):
    async def scenario():
        store = await connected(memory_store)
        ctx = make_context(store)
        ctx.peers["keep"] = PeerHandle(viewer_id="keep", connected_at=0)
        store.connected = False

        assert await LivenessMonitor(ctx).reap() == []
        assert list(ctx.peers) == ["keep"]

    asyncio.run(scenario())


def test_peer_handle_close_is_idempotent():
    calls = []
    handle = PeerHandle(viewer_id="v", connected_at=0, unsubscribe=lambda: calls.append("unsubscribe"))
    handle.close()
    handle.close()
    assert calls == ["unsubscribe"]
    assert handle.closed


def test_tracked_viewer_leaving_is_dropped_before_next_reap(memory_store, clock):
    async def scenario():
        store = await connected(memory_store)
        viewer = await connected(memory_store)
        path = VIEWER_PATH.format(viewer_id="v1")
        await viewer.set(path, {"lastSeen": clock.ms})

        ctx = make_context(store)
        await LivenessMonitor(ctx).reap()
        assert list(ctx.peers) == ["v1"]

        clock.advance(15)
        await viewer.set(path, {"lastSeen": clock.ms})
        assert ctx.peers["v1"].last_seen == clock.ms

        await viewer.remove(path)
        assert ctx.peers == {}
        assert [entry.type for entry in ctx.connections] == ["Host"]

    asyncio.run(scenario())


def test_dropping_peers_releases_their_watches(memory_store, clock):
    async def scenario():
        store = await connected(memory_store)
        for viewer_id in ("v1", "v2"):
            await store.set(VIEWER_PATH.format(viewer_id=viewer_id), {"lastSeen": clock.ms})

        ctx = make_context(store)
        await LivenessMonitor(ctx).reap()
        assert len(memory_store.watches) == 2

        ctx.clear()
        assert memory_store.watches == []

    asyncio.run(scenario())
