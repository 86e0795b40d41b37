import asyncio

import pytest

from schemas.rooms import DEFAULT_VIDEO_STATE, MessageType, VideoState
from client.video_sync import PlaybackKind, VideoStateSynchronizer, clamp_time


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class FakePlayer:
    def __init__(self, position=0.0, paused=True):
        self._position = position
        self._paused = paused
        self.calls = []

    def play(self):
        self.calls.append("play")
        self._paused = False

    def pause(self):
        self.calls.append("pause")
        self._paused = True

    def seek(self, time):
        self.calls.append(("seek", time))
        self._position = time

    def position(self):
        return self._position

    def is_paused(self):
        return self._paused


def _synchronizer(published=None, **kwargs):
    published = published if published is not None else []

    async def publish(envelope):
        published.append(envelope)

    return VideoStateSynchronizer("R1", publish, **kwargs)


def test_remote_state_replaces_local_wholesale():
    changes = []
    sync = _synchronizer(on_change=changes.append)
    sync.state = VideoState(playing=True, time=50.0, source="https://x/a.mp4")

    remote = VideoState(playing=False, time=3.0, source="https://x/b.mp4")
    sync.apply_remote(remote)

    assert sync.state == remote
    assert changes == [remote]


def test_apply_remote_without_notify_is_silent():
    changes = []
    sync = _synchronizer(on_change=changes.append)

    sync.apply_remote(VideoState(time=4.0), notify=False)

    assert sync.state.time == 4.0
    assert changes == []


def test_partial_delta_keeps_other_fields():
    published = []
    sync = _synchronizer(published)
    sync.state = VideoState(playing=True, time=10.0, source="https://x/a.mp4")

    state = asyncio.run(sync.local_change(PlaybackKind.SEEK, {"time": 42.5}))

    assert state == VideoState(playing=True, time=42.5, source="https://x/a.mp4")
    assert published[0].type == MessageType.SEEK
    assert published[0].payload == {
        "playing": True, "time": 42.5, "source": "https://x/a.mp4", "isEmbeddedPlatform": False,
    }


def test_play_and_pause_flip_playing():
    sync = _synchronizer()

    assert asyncio.run(sync.local_change(PlaybackKind.PLAY, {"time": 3.0})).playing is True
    assert asyncio.run(sync.local_change(PlaybackKind.PAUSE)).playing is False
    assert sync.state.time == 3.0


def test_set_source_resets_cursor_and_detects_platform():
    published = []
    sync = _synchronizer(published)
    sync.state = VideoState(playing=True, time=80.0, source="https://x/a.mp4")

    state = asyncio.run(sync.local_change(PlaybackKind.SET_SOURCE, {"source": "https://youtu.be/abc"}))

    assert state == VideoState(playing=False, time=0.0, source="https://youtu.be/abc", is_embedded_platform=True)
    assert published[0].type == MessageType.SET_VIDEO


def test_set_source_rejects_bad_url():
    sync = _synchronizer()

    with pytest.raises(ValueError):
        sync.next_state(PlaybackKind.SET_SOURCE, {"source": "not a url"})
    assert sync.state == DEFAULT_VIDEO_STATE


def test_negative_time_is_clamped():
    sync = _synchronizer()
    assert sync.next_state(PlaybackKind.SEEK, {"time": -5}).time == 0.0


def test_player_events_are_suppressed_inside_sync_window():
    published = []
    clock = FakeClock()
    sync = _synchronizer(published, clock=clock)

    sync.apply_remote(VideoState(playing=True, time=12.0, source="https://x/a.mp4"))
    assert sync.is_syncing()
    assert asyncio.run(sync.on_player_event(PlaybackKind.PLAY, 12.0)) is None
    assert published == []

    clock.now += 0.6
    assert not sync.is_syncing()
    state = asyncio.run(sync.on_player_event(PlaybackKind.PAUSE, 14.0))
    assert state.playing is False
    assert state.time == 14.0
    assert len(published) == 1


def test_drift_past_threshold_returns_authoritative_time():
    sync = _synchronizer()
    sync.state = VideoState(playing=True, time=30.0, source="https://x/a.mp4")

    assert sync.check_drift(30.9) is None
    assert sync.check_drift(28.5) == 30.0
    assert sync.check_drift(31.5) == 30.0


def test_remote_state_drives_player():
    sync = _synchronizer()
    player = FakePlayer(position=0.0, paused=True)
    sync.attach_player(player)
    assert player.calls == []

    sync.apply_remote(VideoState(playing=True, time=20.0, source="https://x/a.mp4"))
    assert player.calls == ["play", ("seek", 20.0)]

    player.calls.clear()
    sync.apply_remote(VideoState(playing=False, time=20.4, source="https://x/a.mp4"))
    assert player.calls == ["pause"]


@pytest.mark.parametrize(
    "position, seconds, duration, expected",
    [
        (5.0, -10.0, 100.0, 0.0),
        (95.0, 10.0, 100.0, 100.0),
        (50.0, 10.0, None, 60.0),
        (50.0, 10.0, float("inf"), 60.0),
    ],
)
def test_skip_is_clamped(position, seconds, duration, expected):
    sync = _synchronizer()
    assert sync.skip(position, seconds, duration) == expected


def test_clamp_time_with_zero_duration_is_open_ended():
    assert clamp_time(12.0, 0) == 12.0


def test_set_source_to_empty_clears_platform_flag():
    sync = _synchronizer()
    sync.state = VideoState(playing=True, time=8.0, source="https://youtu.be/abc", is_embedded_platform=True)

    assert sync.next_state(PlaybackKind.SET_SOURCE, {"source": ""}) == DEFAULT_VIDEO_STATE


def test_set_source_without_source_keeps_current_one():
    sync = _synchronizer()
    sync.state = VideoState(playing=True, time=8.0, source="https://youtu.be/abc", is_embedded_platform=True)

    state = sync.next_state(PlaybackKind.SET_SOURCE)

    assert state == VideoState(playing=False, time=0.0, source="https://youtu.be/abc", is_embedded_platform=True)
