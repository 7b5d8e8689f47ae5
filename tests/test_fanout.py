"""
Realtime fan-out hub: channel bookkeeping, delivery and the Redis relay.
"""
from unittest.mock import AsyncMock

import pytest

from routers.messaging import fanout
from routers.messaging.fanout import ConnectionManager, conversation_channel, user_channel


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.send_json = AsyncMock(side_effect=self._record)
        self._fail = fail

    async def _record(self, payload):
        if self._fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


CONVERSATION_ID = "6f1c1c9e-8a34-4b6b-9a55-1f6f2f1b2a10"


class TestConnectionManager:
    """Channel membership and exactly-once delivery"""

    @pytest.mark.asyncio
    async def test_session_in_two_target_channels_gets_one_copy(self):
        hub = ConnectionManager()
        socket = FakeSocket()
        session = hub.connect(socket, 1)
        hub.join(session, conversation_channel(CONVERSATION_ID))

        delivered = await hub.deliver(
            [conversation_channel(CONVERSATION_ID), user_channel(1), user_channel(2)],
            fanout.build_event("new-message", {"id": "m1"}),
        )

        assert delivered == 1
        assert socket.sent == [{"event": "new-message", "data": {"id": "m1"}}]

    @pytest.mark.asyncio
    async def test_every_session_of_a_user_receives(self):
        hub = ConnectionManager()
        phone, laptop, stranger = FakeSocket(), FakeSocket(), FakeSocket()
        hub.connect(phone, 1)
        hub.connect(laptop, 1)
        hub.connect(stranger, 3)

        await hub.deliver([user_channel(1)], fanout.build_event("ping", {}))

        assert len(phone.sent) == len(laptop.sent) == 1
        assert stranger.sent == []
        assert hub.channel_size(user_channel(1)) == 2

    @pytest.mark.asyncio
    async def test_excluded_session_is_skipped(self):
        hub = ConnectionManager()
        typist, watcher = FakeSocket(), FakeSocket()
        typist_session = hub.connect(typist, 1)
        watcher_session = hub.connect(watcher, 2)
        channel = conversation_channel(CONVERSATION_ID)
        hub.join(typist_session, channel)
        hub.join(watcher_session, channel)

        await hub.deliver([channel], fanout.build_event("user-typing", {}), typist_session.session_id)

        assert typist.sent == []
        assert len(watcher.sent) == 1

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped(self):
        hub = ConnectionManager()
        healthy, dead = FakeSocket(), FakeSocket(fail=True)
        hub.connect(healthy, 1)
        dead_session = hub.connect(dead, 1)

        delivered = await hub.deliver([user_channel(1)], fanout.build_event("ping", {}))

        assert delivered == 1
        assert len(healthy.sent) == 1
        assert hub.session_count == 1
        assert dead_session.session_id not in {
            s.session_id for s in hub.sessions_for([user_channel(1)])
        }

    def test_leave_and_disconnect_clean_up_channels(self):
        hub = ConnectionManager()
        session = hub.connect(FakeSocket(), 1)
        channel = conversation_channel(CONVERSATION_ID)
        hub.join(session, channel)
        assert hub.channel_size(channel) == 1

        hub.leave(session, channel)
        assert hub.channel_size(channel) == 0
        assert channel not in session.channels

        hub.disconnect(session)
        assert hub.session_count == 0
        assert hub.channel_size(user_channel(1)) == 0

    @pytest.mark.asyncio
    async def test_deliver_without_subscribers(self):
        hub = ConnectionManager()
        assert await hub.deliver([user_channel(99)], fanout.build_event("ping", {})) == 0


class TestPublish:
    """Publishing helpers on top of the process-wide manager"""

    @pytest.mark.asyncio
    async def test_new_message_reaches_member_rooms(self):
        alice, bruno, chen = FakeSocket(), FakeSocket(), FakeSocket()
        fanout.manager.connect(alice, 1)
        fanout.manager.connect(bruno, 2)
        fanout.manager.connect(chen, 3)

        await fanout.publish_message({"id": "m1", "conversation_id": CONVERSATION_ID}, [1, 2])

        assert [frame["event"] for frame in alice.sent] == ["new-message"]
        assert bruno.sent[0]["data"]["id"] == "m1"
        assert chen.sent == []

    @pytest.mark.asyncio
    async def test_read_receipt_goes_to_conversation_room(self):
        watcher = FakeSocket()
        session = fanout.manager.connect(watcher, 2)
        fanout.manager.join(session, conversation_channel(CONVERSATION_ID))

        await fanout.publish_read_receipt(CONVERSATION_ID, ["m1", "m2"], 1)

        assert watcher.sent == [
            {
                "event": "message-read",
                "data": {"conversation_id": CONVERSATION_ID, "message_ids": ["m1", "m2"], "reader_id": 1},
            }
        ]

    @pytest.mark.asyncio
    async def test_typing_skips_the_sending_session(self):
        typist, other_tab, peer = FakeSocket(), FakeSocket(), FakeSocket()
        channel = conversation_channel(CONVERSATION_ID)
        typist_session = fanout.manager.connect(typist, 1)
        for socket, user_id in ((other_tab, 1), (peer, 2)):
            fanout.manager.join(fanout.manager.connect(socket, user_id), channel)
        fanout.manager.join(typist_session, channel)

        await fanout.publish_typing(CONVERSATION_ID, 1, True, exclude_session_id=typist_session.session_id)

        assert typist.sent == []
        assert other_tab.sent[0]["data"] == {"conversation_id": CONVERSATION_ID, "user_id": 1, "is_typing": True}
        assert len(peer.sent) == 1

    @pytest.mark.asyncio
    async def test_message_deleted_reaches_members(self):
        member = FakeSocket()
        fanout.manager.connect(member, 2)

        await fanout.publish_message_deleted(CONVERSATION_ID, "m1", [1, 2])

        assert member.sent == [
            {"event": "message-deleted", "data": {"conversation_id": CONVERSATION_ID, "message_id": "m1"}}
        ]

    @pytest.mark.asyncio
    async def test_redis_backend_publishes_envelope(self, monkeypatch):
        publish = AsyncMock(return_value=1)
        monkeypatch.setattr(fanout, "REALTIME_BACKEND", "redis")
        monkeypatch.setattr(fanout, "publish_envelope", publish)
        local = FakeSocket()
        fanout.manager.connect(local, 1)

        await fanout.publish_typing(CONVERSATION_ID, 1, False, exclude_session_id="abc")

        publish.assert_awaited_once()
        envelope = publish.call_args.args[0]
        assert envelope["channels"] == [conversation_channel(CONVERSATION_ID)]
        assert envelope["event"]["event"] == "user-typing"
        assert envelope["exclude"] == "abc"
        # Local sessions are reached through the relay, not directly
        assert local.sent == []

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self, monkeypatch):
        monkeypatch.setattr(fanout, "REALTIME_BACKEND", "redis")
        monkeypatch.setattr(
            fanout, "publish_envelope", AsyncMock(side_effect=ConnectionError("redis down"))
        )

        await fanout.publish_message({"id": "m1", "conversation_id": CONVERSATION_ID}, [1, 2])


class TestRedisRelay:
    @pytest.mark.asyncio
    async def test_relay_delivers_envelopes_locally(self, monkeypatch):
        socket = FakeSocket()
        session = fanout.manager.connect(socket, 2)
        envelopes = [
            {"channels": [user_channel(2)], "event": fanout.build_event("new-message", {"id": "m1"})},
            {"channels": [user_channel(2)], "event": None},
            {
                "channels": [user_channel(2)],
                "event": fanout.build_event("user-typing", {}),
                "exclude": session.session_id,
            },
            {"channels": [user_channel(2)], "event": fanout.build_event("message-deleted", {"id": "m1"})},
        ]

        async def fake_subscribe():
            for envelope in envelopes:
                yield envelope

        monkeypatch.setattr(fanout, "subscribe_envelopes", fake_subscribe)

        await fanout.run_redis_relay()

        assert [frame["event"] for frame in socket.sent] == ["new-message", "message-deleted"]
