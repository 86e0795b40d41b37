import asyncio

import pytest

from schemas.rooms import DEFAULT_VIDEO_STATE, ChatMessage, MessageType, VideoState
from client.connection import ConnectionStatus
from client.errors import ConnectivityError, RoomNotFound
from client.session import RoomSession
from client.video_sync import PlaybackKind
from tests.fakes import FakeRelay, FakeTransport, Gate, SlowRoomRecords, wait_until


class Recorder:
    """Collects every callback a session fires."""

    def __init__(self):
        self.video = []
        self.chat = []
        self.sync = []
        self.errors = []
        self.statuses = []
        self.connected = []
        self.joined = []
        self.left = []

    def session(self, relay, user_id, username, is_admin, **kwargs) -> RoomSession:
        return RoomSession(
            "R1",
            user_id,
            username,
            is_admin,
            kwargs.pop("transport", None) or FakeTransport(relay),
            on_video_state_change=self.video.append,
            on_chat_message=self.chat.append,
            on_sync_state=self.sync.append,
            on_error=self.errors.append,
            on_status=self.statuses.append,
            on_connected=lambda: self.connected.append(True),
            on_user_joined=lambda entry: self.joined.append(entry.user_id),
            on_user_left=lambda entry: self.left.append(entry.user_id),
            **kwargs,
        )


def test_guest_gets_snapshot_then_live_updates():
    relay = FakeRelay()
    admin_events, guest_events = Recorder(), Recorder()

    async def _run():
        admin = admin_events.session(relay, "a1", "Admin", True)
        guest = guest_events.session(relay, "g1", "Guest", False)
        await admin.start()
        await guest.start()
        await guest.drain()
        assert guest_events.sync == [DEFAULT_VIDEO_STATE]
        assert guest_events.video == []

        await admin.set_source("https://x/video.mp4")
        await guest.drain()
        await admin.update_video_state("PLAY", {"time": 1.5})
        await guest.drain()
        await admin.drain()
        states = (admin.video_state, guest.video_state)
        await guest.disconnect()
        await admin.disconnect()
        return states

    admin_state, guest_state = asyncio.run(_run())

    assert guest_events.video[0] == VideoState(playing=False, time=0.0, source="https://x/video.mp4")
    assert guest_events.video[1].playing is True
    assert guest_state == admin_state == VideoState(playing=True, time=1.5, source="https://x/video.mp4")


def test_chat_reaches_everyone_once_in_relay_order():
    relay = FakeRelay()
    admin_events, guest_events = Recorder(), Recorder()

    async def _run():
        admin = admin_events.session(relay, "a1", "Admin", True)
        guest = guest_events.session(relay, "g1", "Guest", False)
        await admin.start()
        await guest.start()

        assert await guest.send_chat("   ") is None
        await admin.send_chat(" hello ")
        await guest.send_chat("hi back")
        duplicate = relay.records("R1").log[0]
        relay.deliver("R1", {"type": "CHAT", "payload": duplicate.to_wire()})
        await admin.drain()
        await guest.drain()
        return admin, guest

    admin, guest = asyncio.run(_run())

    def texts(session):
        return [m.text for m in session.messages if not m.is_system]

    assert texts(admin) == texts(guest) == ["hello", "hi back"]
    assert guest.messages[0].text == "You joined the room as Guest"
    assert admin.messages[0].text == "You joined the room as Admin"
    assert guest.unread_count == 1
    guest.clear_unread()
    assert guest.unread_count == 0
    assert [m.text for m in guest_events.chat if not m.is_system] == ["hello", "hi back"]


def test_guest_joining_late_sees_history():
    relay = FakeRelay()

    async def _run():
        admin = Recorder().session(relay, "a1", "Admin", True)
        await admin.start()
        await admin.send_chat("before you came")
        guest = Recorder().session(relay, "g1", "Guest", False)
        await guest.start()
        await guest.drain()
        return guest

    guest = asyncio.run(_run())

    assert [m.text for m in guest.messages] == ["You joined the room as Guest", "before you came"]


def test_messages_sent_while_disconnected_are_flushed_in_order():
    relay = FakeRelay()
    admin_events, guest_events = Recorder(), Recorder()

    async def _run():
        gate = Gate()
        admin = admin_events.session(relay, "a1", "Admin", True)
        guest = guest_events.session(relay, "g1", "Guest", False, sleep=gate.sleep)
        await admin.start()
        await guest.start()

        guest.transport.drop()
        assert guest.connection.status == ConnectionStatus.RECONNECTING
        for text in ["one", "two", "three"]:
            await guest.send_chat(text)
        await admin.drain()
        assert [m.text for m in admin.messages if not m.is_system] == []

        gate.open()
        await wait_until(lambda: guest.is_connected() and not guest.connection.queue)
        await wait_until(lambda: guest._resync_task is not None and guest._resync_task.done())
        await admin.drain()
        await guest.drain()
        return admin, guest

    admin, guest = asyncio.run(_run())

    assert [m.text for m in admin.messages if not m.is_system] == ["one", "two", "three"]
    assert [m.text for m in guest.messages if not m.is_system] == ["one", "two", "three"]
    assert ConnectionStatus.RECONNECTING in guest_events.statuses
    assert guest_events.statuses[-1] == ConnectionStatus.CONNECTED


def test_last_leave_tears_down_room():
    relay = FakeRelay()
    late = Recorder()

    async def _run():
        admin = Recorder().session(relay, "a1", "Admin", True)
        guest = Recorder().session(relay, "g1", "Guest", False)
        await admin.start()
        await guest.start()

        await admin.disconnect()
        assert relay.records("R1").created is True
        await guest.disconnect()
        assert relay.records("R1").created is False

        newcomer = late.session(relay, "g2", "Late", False)
        try:
            await newcomer.start()
        finally:
            await newcomer.disconnect()

    with pytest.raises(RoomNotFound):
        asyncio.run(_run())
    assert late.errors == ["Room R1 not found"]


def test_admin_rejoining_keeps_existing_state():
    relay = FakeRelay()

    async def _run():
        admin = Recorder().session(relay, "a1", "Admin", True)
        guest = Recorder().session(relay, "g1", "Guest", False)
        await admin.start()
        await guest.start()
        await admin.update_video_state(PlaybackKind.SEEK, {"time": 30.0})
        await admin.disconnect()

        again = Recorder().session(relay, "a1", "Admin", True)
        created = await again.create_room()
        return created, relay.records("R1").state

    created, state = asyncio.run(_run())

    assert created is False
    assert state.time == 30.0


def test_malformed_and_error_envelopes():
    relay = FakeRelay()
    events = Recorder()

    async def _run():
        admin = events.session(relay, "a1", "Admin", True)
        await admin.start()
        relay.deliver("R1", {"type": "CHAT", "payload": {"text": "no id"}})
        relay.deliver("R1", {"type": "NOT_A_TYPE"})
        relay.deliver("R1", {"type": "PLAY"})
        relay.deliver("R1", {"type": "ERROR", "payload": {"message": "Room not found"}})
        ok = ChatMessage(id="u2-1", author_id="u2", author_name="Bob", text="still here", timestamp_ms=1)
        relay.deliver("R1", {"type": "CHAT", "payload": ok.to_wire()})
        await admin.drain()
        return admin

    admin = asyncio.run(_run())

    assert events.errors == ["Room not found"]
    assert [m.text for m in admin.messages if not m.is_system] == ["still here"]
    assert events.video == []


def test_envelopes_for_other_rooms_are_ignored():
    relay = FakeRelay()
    events = Recorder()

    async def _run():
        admin = events.session(relay, "a1", "Admin", True)
        await admin.start()
        admin._enqueue({"type": "PLAY", "roomId": "other", "payload": VideoState(playing=True).to_wire()})
        await admin.drain()

    asyncio.run(_run())

    assert events.video == []


def test_start_fails_when_relay_stays_down():
    events = Recorder()

    async def _run():
        gate = Gate(open_=True)
        transport = FakeTransport(fail_connects=100)
        session = events.session(None, "a1", "Admin", True, transport=transport, sleep=gate.sleep)
        try:
            await session.start()
        finally:
            await session.disconnect()

    with pytest.raises(ConnectivityError):
        asyncio.run(_run())
    assert events.errors == ["Failed to connect to server"]
    assert ConnectionStatus.FAILED in events.statuses


def test_unknown_playback_kind_is_rejected():
    relay = FakeRelay()

    async def _run():
        admin = Recorder().session(relay, "a1", "Admin", True)
        await admin.update_video_state("REWIND")

    with pytest.raises(ValueError):
        asyncio.run(_run())


def test_set_video_alias_maps_to_set_source():
    relay = FakeRelay()

    async def _run():
        admin = Recorder().session(relay, "a1", "Admin", True)
        await admin.start()
        await admin.update_video_state("SET_VIDEO", {"source": "https://youtu.be/abc"})
        return admin.transport.sent[-1]

    envelope = asyncio.run(_run())

    assert envelope.type == MessageType.SET_VIDEO
    assert envelope.payload["isEmbeddedPlatform"] is True


def test_disconnect_cancels_pending_backoff_before_teardown():
    relay = FakeRelay()
    events = Recorder()
    records = SlowRoomRecords("R1", remove_delay=0.05)
    relay.rooms["R1"] = records

    async def _run():
        gate = Gate()
        admin = events.session(relay, "a1", "Admin", True, sleep=gate.sleep)
        await admin.start()
        admin.transport.drop()
        assert admin.connection.status == ConnectionStatus.RECONNECTING

        closing = asyncio.create_task(admin.disconnect())
        # teardown is still removing presence when the backoff would have expired
        await asyncio.sleep(0.01)
        gate.open()
        await closing
        for _ in range(5):
            await asyncio.sleep(0)
        return admin

    admin = asyncio.run(_run())

    assert events.connected == [True]
    assert admin.transport.connects == 1
    assert admin._resync_task is None
    assert admin.connection.status == ConnectionStatus.DISCONNECTED
    assert records.created is False


def test_disconnect_during_existence_check_abandons_start():
    relay = FakeRelay()
    events = Recorder()

    async def _run():
        gate = Gate()
        records = SlowRoomRecords("R1", exists_gate=gate)
        records.created = True
        relay.rooms["R1"] = records
        guest = events.session(relay, "g1", "Guest", False)

        starting = asyncio.create_task(guest.start())
        await wait_until(lambda: records.exists_calls == 1)
        await guest.disconnect()
        gate.open()
        result = await starting
        return guest, records, result

    guest, records, result = asyncio.run(_run())

    assert result is None
    assert records.entries == {}
    assert events.connected == []
    assert events.errors == []
    assert guest.transport.connects == 0
    assert guest.connection.status == ConnectionStatus.DISCONNECTED


def test_presence_changes_reach_the_session_callbacks():
    relay = FakeRelay()
    admin_events, guest_events = Recorder(), Recorder()

    async def _run():
        admin = admin_events.session(relay, "a1", "Admin", True)
        guest = guest_events.session(relay, "g1", "Guest", False)
        await admin.start()
        await guest.start()
        await admin.refresh_presence()
        await guest.disconnect()
        await admin.refresh_presence()

    asyncio.run(_run())

    assert admin_events.joined == ["a1", "g1"]
    assert admin_events.left == ["g1"]
    assert guest_events.joined == ["g1", "a1"]
    assert guest_events.left == ["g1"]


def test_clearing_the_source_is_allowed():
    relay = FakeRelay()
    events = Recorder()

    async def _run():
        admin = events.session(relay, "a1", "Admin", True)
        await admin.start()
        await admin.set_source("https://youtu.be/abc")
        return await admin.update_video_state(PlaybackKind.SET_SOURCE, {"source": ""})

    state = asyncio.run(_run())

    assert state == DEFAULT_VIDEO_STATE
