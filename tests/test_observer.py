import asyncio

from conftest import RecordingFactory, RecordingPlayer, connected, links_record, messages
from coordinator import SessionCoordinator
from observer import SessionObserver
from store_paths import LINKS_PATH, ONLINE_PATH, VIEWER_PATH

ONLINE = {"started": True, "startedAt": 1, "broadcasterId": "host"}


async def setup(memory_store, notifier, factory=None, *video_ids, **options):
    host = await connected(memory_store)
    for video_id in video_ids:
        await host.push(LINKS_PATH, links_record(video_id))
    viewer_store = await connected(memory_store)
    observer = SessionObserver(viewer_store, factory or RecordingFactory(), notifier, ping_interval=3600, **options)
    return host, viewer_store, observer


def test_waits_until_session_goes_live(memory_store, notifier):
    async def scenario():
        factory = RecordingFactory()
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11)
        await observer.mount()

        assert factory.created == []
        assert observer.snapshot()["view"] == "waiting"
        assert len(observer.playlist) == 1

    asyncio.run(scenario())


def test_live_session_plays_from_first_item(memory_store, notifier):
    async def scenario():
        factory = RecordingFactory()
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11, "B" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)

        assert len(factory.created) == 1
        player = factory.created[0]
        assert player.container == "player"
        assert player.calls == []

        await player.fire_ready()
        assert player.calls == [("mute",), ("load_by_id", "A" * 11)]
        snapshot = observer.snapshot()
        assert snapshot["view"] == "live"
        assert snapshot["current_video_id"] == "A" * 11
        assert snapshot["playlist"][0]["videoId"] == "A" * 11

    asyncio.run(scenario())


def test_late_joiner_starts_from_the_top(memory_store, notifier):
    async def scenario():
        factory = RecordingFactory()
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11, "B" * 11)
        await host.set(ONLINE_PATH, ONLINE)

        await observer.mount()
        assert observer.has_started_once
        await factory.created[0].fire_ready()
        assert factory.created[0].loads == ["A" * 11]

    asyncio.run(scenario())


def test_playlist_change_reuses_player(memory_store, notifier):
    async def scenario():
        factory = RecordingFactory()
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11, "B" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        player = factory.created[0]
        await player.fire_ready()
        await player.fire_ended()

        await host.push(LINKS_PATH, links_record("C" * 11))
        assert len(factory.created) == 1
        assert player.loads == ["A" * 11, "B" * 11, "A" * 11]
        assert observer.sequencer.current_index == 0

    asyncio.run(scenario())


def test_player_created_once_playlist_arrives(memory_store, notifier):
    async def scenario():
        factory = RecordingFactory()
        host, _, observer = await setup(memory_store, notifier, factory)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        assert factory.created == []

        await host.push(LINKS_PATH, links_record("A" * 11))
        assert len(factory.created) == 1

    asyncio.run(scenario())


def test_ended_events_walk_the_playlist(memory_store, notifier):
    async def scenario():
        factory = RecordingFactory()
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11, "B" * 11, "C" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        player = factory.created[0]
        await player.fire_ready()
        for _ in range(4):
            await player.fire_ended()

        assert player.loads == ["A" * 11, "B" * 11, "C" * 11]
        assert messages(notifier).count("Playlist finished") == 1

    asyncio.run(scenario())


def test_going_offline_destroys_player_before_flag_drops(memory_store, notifier):
    async def scenario():
        observed = []

        class FlagPlayer(RecordingPlayer):
            def destroy(self):
                observed.append(observer.is_streaming)
                super().destroy()

        factory = RecordingFactory(FlagPlayer)
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        player = factory.created[0]
        await player.fire_ready()

        await host.remove(ONLINE_PATH)
        assert observed == [True]
        assert observer.player is None
        assert not observer.is_streaming
        assert observer.snapshot()["view"] == "ended"

        await host.remove(ONLINE_PATH)
        await player.fire_ended()
        assert player.count("destroy") == 1
        assert player.loads == ["A" * 11]

    asyncio.run(scenario())


def test_release_falls_back_to_stop(memory_store, notifier):
    class StopOnlyPlayer(RecordingPlayer):
        destroy = None

    async def scenario():
        factory = RecordingFactory(StopOnlyPlayer)
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        await host.remove(ONLINE_PATH)

        assert factory.created[0].calls == [("stop",)]

    asyncio.run(scenario())


def test_offline_while_player_is_being_created(memory_store, notifier):
    async def scenario():
        host = await connected(memory_store)
        await host.push(LINKS_PATH, links_record("A" * 11))
        inner = RecordingFactory()

        async def slow_factory(container, on_ready=None, on_ended=None):
            await host.remove(ONLINE_PATH)
            return await inner(container, on_ready=on_ready, on_ended=on_ended)

        viewer_store = await connected(memory_store)
        observer = SessionObserver(viewer_store, slow_factory, notifier)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)

        assert observer.player is None
        assert inner.created[0].calls == [("destroy",)]

    asyncio.run(scenario())


def test_enable_audio(memory_store, notifier):
    class VolumeOnlyPlayer(RecordingPlayer):
        unmute = None

    async def scenario():
        factory = RecordingFactory(VolumeOnlyPlayer)
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        player = factory.created[0]
        await player.fire_ready()

        await observer.enable_audio()
        assert player.calls[-1] == ("set_volume", 100)
        # toggling audio re-syncs the player to the top of the list
        assert player.loads == ["A" * 11, "A" * 11]
        assert len(factory.created) == 1
        assert "Audio enabled" in messages(notifier)

        # later loads keep the audio on
        await player.fire_ended()
        await host.push(LINKS_PATH, links_record("B" * 11))
        assert player.calls[-1] == ("set_volume", 100)

    asyncio.run(scenario())


def test_broken_player_never_breaks_the_observer(memory_store, notifier):
    class BrokenPlayer(RecordingPlayer):
        def load_by_id(self, video_id):
            raise RuntimeError("boom")

        def cue_by_id(self, video_id):
            raise RuntimeError("boom")

        def mute(self):
            raise RuntimeError("boom")

        def destroy(self):
            raise RuntimeError("boom")

    async def scenario():
        factory = RecordingFactory(BrokenPlayer)
        host, _, observer = await setup(memory_store, notifier, factory, "A" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        await factory.created[0].fire_ready()
        await host.remove(ONLINE_PATH)

        assert observer.player is None
        assert not observer.is_streaming

    asyncio.run(scenario())


def test_factory_failure_is_notified(memory_store, notifier):
    async def failing_factory(container, on_ready=None, on_ended=None):
        raise RuntimeError("widget script failed to load")

    async def scenario():
        host, _, observer = await setup(memory_store, notifier, failing_factory, "A" * 11)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)

        assert observer.player is None
        assert observer.is_streaming
        assert "Player unavailable" in messages(notifier)

    asyncio.run(scenario())


def test_viewer_record_lifecycle(memory_store, clock, notifier):
    async def scenario():
        host, viewer_store, observer = await setup(memory_store, notifier, None, "A" * 11, viewer_id="v1")
        await observer.mount()
        path = VIEWER_PATH.format(viewer_id="v1")

        assert await host.get(path) == {"lastSeen": clock.ms}
        assert path in viewer_store.disconnect_paths

        await observer.unmount()
        assert await host.get(path) is None
        assert viewer_store.disconnect_paths == set()

    asyncio.run(scenario())


def test_viewer_record_removed_on_disconnect(memory_store, notifier):
    async def scenario():
        host, viewer_store, observer = await setup(memory_store, notifier, None, "A" * 11, viewer_id="v1")
        await observer.mount()

        await viewer_store.disconnect()
        assert await host.get(VIEWER_PATH.format(viewer_id="v1")) is None
        await observer.unmount()

    asyncio.run(scenario())


def test_follows_a_coordinated_session(memory_store, clock, notifier):
    async def scenario():
        host, _, observer = await setup(memory_store, notifier, None, "A" * 11, "B" * 11)
        coordinator = SessionCoordinator(host, notifier, clock=clock, heartbeat_interval=3600, tick_seconds=3600)
        await observer.mount()

        await coordinator.start_session()
        player = observer.player
        await player.fire_ready()
        assert player.loads == ["A" * 11]

        clock.advance(10)
        assert await coordinator.stop_session()
        assert player.count("destroy") == 1
        assert observer.snapshot()["view"] == "ended"

    asyncio.run(scenario())


def test_state_listener_receives_snapshots(memory_store, notifier):
    async def scenario():
        snapshots = []

        async def on_change(snapshot):
            snapshots.append(snapshot["view"])

        host, _, observer = await setup(memory_store, notifier, None, "A" * 11, on_change=on_change)
        await observer.mount()
        await host.set(ONLINE_PATH, ONLINE)
        await host.remove(ONLINE_PATH)

        assert snapshots[0] == "waiting"
        assert "live" in snapshots
        assert snapshots[-1] == "ended"

    asyncio.run(scenario())
