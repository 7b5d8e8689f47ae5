"""
Client-side conversation state: optimistic sends, echo reconciliation,
unread badges and history paging.
"""
import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from auth import create_access_token
from client import ConversationView, MessagingAPIError, MessagingClient
from client.conversation_view import STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from models import Message

CONVERSATION_ID = "6f1c1c9e-8a34-4b6b-9a55-1f6f2f1b2a10"
ME = 1000000001
PEER = 1000000002


def _api_for(client, user) -> MessagingClient:
    return MessagingClient(http=client, token=create_access_token(user.account_id))


def _view_for(client, user, **kwargs) -> ConversationView:
    return ConversationView(_api_for(client, user), user.account_id, **kwargs)


def _offline_view(**kwargs) -> ConversationView:
    """A view with an open conversation and a mocked API."""
    view = ConversationView(MagicMock(spec=MessagingClient), ME, **kwargs)
    view.active_conversation_id = CONVERSATION_ID
    view.conversations = [
        {
            "id": CONVERSATION_ID,
            "is_group": False,
            "members": [{"user_id": ME}, {"user_id": PEER}],
            "unread_count": 0,
            "last_message_at": None,
            "created_at": "2026-03-01T09:00:00",
        }
    ]
    return view


def _server_message(message_id, text, sender_id=ME, created_at=None, client_message_id=None):
    return {
        "id": message_id,
        "conversation_id": CONVERSATION_ID,
        "sender": {"user_id": sender_id, "username": "someone"},
        "message_text": text,
        "client_message_id": client_message_id,
        "created_at": (created_at or datetime.utcnow()).isoformat(),
        "read": False,
        "read_by": [],
    }


def _pending(text, created_at, client_message_id):
    return {
        "id": None,
        "conversation_id": CONVERSATION_ID,
        "sender": {"user_id": ME},
        "message_text": text,
        "client_message_id": client_message_id,
        "created_at": created_at.isoformat(),
        "local_status": STATUS_PENDING,
    }


class TestOptimisticSend:
    def test_pending_entry_is_replaced_by_server_copy(self, client, users, monkeypatch):
        alice_api = _api_for(client, users["alice"])
        conversation_id = alice_api.create_direct_conversation(users["bruno"].account_id)["conversation"]["id"]
        view = ConversationView(alice_api, users["alice"].account_id)
        view.refresh_conversations()
        view.open_conversation(conversation_id)

        seen = []
        real_send = alice_api.send_message

        def spying_send(*args, **kwargs):
            seen.append([dict(m) for m in view.messages])
            return real_send(*args, **kwargs)

        monkeypatch.setattr(alice_api, "send_message", spying_send)

        message = view.send_text("Checked in!")

        pending = seen[0][-1]
        assert pending["id"] is None
        assert pending["local_status"] == STATUS_PENDING
        assert len(view.messages) == 1
        assert view.messages[0]["id"] == message["id"]
        assert view.messages[0]["local_status"] == STATUS_SENT
        assert view.messages[0]["client_message_id"] == pending["client_message_id"]
        assert view.get_conversation(conversation_id)["last_message"] == "Checked in!"
        assert view.get_conversation(conversation_id)["unread_count"] == 0

    def test_echo_arriving_before_reply_is_not_duplicated(self, client, users, monkeypatch):
        alice_api = _api_for(client, users["alice"])
        conversation_id = alice_api.create_direct_conversation(users["bruno"].account_id)["conversation"]["id"]
        view = ConversationView(alice_api, users["alice"].account_id)
        view.open_conversation(conversation_id)
        real_send = alice_api.send_message

        def echo_first(*args, **kwargs):
            result = real_send(*args, **kwargs)
            view.apply_event({"event": "new-message", "data": result["message"]})
            return result

        monkeypatch.setattr(alice_api, "send_message", echo_first)

        view.send_text("on my way")

        assert len(view.messages) == 1
        assert view.messages[0]["local_status"] == STATUS_SENT

    def test_failed_send_is_marked(self, client, users, monkeypatch):
        alice_api = _api_for(client, users["alice"])
        conversation_id = alice_api.create_direct_conversation(users["bruno"].account_id)["conversation"]["id"]
        view = ConversationView(alice_api, users["alice"].account_id)
        view.open_conversation(conversation_id)

        def rejected(*args, **kwargs):
            raise MessagingAPIError(429, "RATE_LIMITED", "slow down")

        monkeypatch.setattr(alice_api, "send_message", rejected)

        with pytest.raises(MessagingAPIError) as exc:
            view.send_text("too fast")

        assert exc.value.code == "RATE_LIMITED"
        assert view.messages[-1]["local_status"] == STATUS_FAILED
        assert view.messages[-1]["id"] is None

    def test_send_without_open_conversation(self):
        view = ConversationView(MagicMock(spec=MessagingClient), ME)
        with pytest.raises(RuntimeError):
            view.send_text("hello?")


class TestEchoMatching:
    def test_uncorrelated_echo_matches_latest_pending_with_same_text(self):
        view = _offline_view()
        now = datetime.utcnow()
        view.messages = [
            _pending("see you", now - timedelta(seconds=3), "a"),
            _pending("see you", now - timedelta(seconds=1), "b"),
            _pending("different", now, "c"),
        ]

        view.apply_event({"event": "new-message", "data": _server_message("m1", "see you", created_at=now)})

        assert [m["id"] for m in view.messages] == [None, "m1", None]
        assert view.messages[1]["local_status"] == STATUS_SENT
        assert view.messages[0]["local_status"] == STATUS_PENDING

    def test_echo_outside_window_is_appended(self):
        view = _offline_view()
        now = datetime.utcnow()
        view.messages = [_pending("see you", now, "a")]

        late = _server_message("m1", "see you", created_at=now + timedelta(seconds=30))
        view.apply_event({"event": "new-message", "data": late})

        assert [m["id"] for m in view.messages] == [None, "m1"]

    def test_correlated_echo_wins_over_text_match(self):
        view = _offline_view()
        now = datetime.utcnow()
        view.messages = [_pending("ok", now, "first"), _pending("ok", now, "second")]

        view.apply_event(
            {"event": "new-message", "data": _server_message("m1", "ok", created_at=now, client_message_id="first")}
        )

        assert [m["id"] for m in view.messages] == ["m1", None]

    def test_peer_message_never_matches_pending(self):
        view = _offline_view()
        now = datetime.utcnow()
        view.messages = [_pending("hi", now, "a")]

        view.apply_event({"event": "new-message", "data": _server_message("m1", "hi", sender_id=PEER, created_at=now)})

        assert [m["id"] for m in view.messages] == [None, "m1"]

    def test_repeated_echo_is_idempotent(self):
        view = _offline_view()
        message = _server_message("m1", "hello", sender_id=PEER)

        view.apply_event({"event": "new-message", "data": message})
        view.apply_event({"event": "new-message", "data": message})

        assert [m["id"] for m in view.messages] == ["m1"]


class TestIncomingEvents:
    def test_peer_message_in_open_conversation_is_marked_read(self):
        view = _offline_view()
        view.typing_users = {PEER}

        view.apply_event({"event": "new-message", "data": _server_message("m1", "hey", sender_id=PEER)})

        view.api.mark_conversation_read.assert_called_once_with(CONVERSATION_ID)
        assert view.typing_users == set()
        assert view.get_conversation(CONVERSATION_ID)["unread_count"] == 0
        assert view.get_conversation(CONVERSATION_ID)["last_message"] == "hey"

    def test_auto_read_can_be_disabled(self):
        view = _offline_view(mark_read_on_receive=False)
        view.apply_event({"event": "new-message", "data": _server_message("m1", "hey", sender_id=PEER)})
        view.api.mark_conversation_read.assert_not_called()

    def test_mark_read_failure_is_not_raised(self):
        view = _offline_view()
        view.api.mark_conversation_read.side_effect = MessagingAPIError(500, None, "boom")

        view.apply_event({"event": "new-message", "data": _server_message("m1", "hey", sender_id=PEER)})

        assert [m["id"] for m in view.messages] == ["m1"]

    def test_typing_indicators(self):
        view = _offline_view()

        def typing(user_id, is_typing, conversation_id=CONVERSATION_ID):
            view.apply_event(
                {
                    "event": "user-typing",
                    "data": {"conversation_id": conversation_id, "user_id": user_id, "is_typing": is_typing},
                }
            )

        typing(PEER, True)
        typing(ME, True)
        typing(1000000003, True, conversation_id="another")
        assert view.typing_users == {PEER}

        typing(PEER, False)
        assert view.typing_users == set()

    def test_read_receipt_and_deletion(self):
        view = _offline_view()
        view.messages = [
            dict(_server_message("m1", "one"), local_status=STATUS_SENT),
            dict(_server_message("m2", "two"), local_status=STATUS_SENT),
        ]

        view.apply_event(
            {
                "event": "message-read",
                "data": {"conversation_id": CONVERSATION_ID, "message_ids": ["m1"], "reader_id": PEER},
            }
        )
        assert view.messages[0]["read"] is True
        assert [r["user_id"] for r in view.messages[0]["read_by"]] == [PEER]
        assert view.messages[1]["read"] is False

        view.apply_event(
            {"event": "message-deleted", "data": {"conversation_id": CONVERSATION_ID, "message_id": "m1"}}
        )
        assert [m["id"] for m in view.messages] == ["m2"]

    def test_unknown_events_are_ignored(self):
        view = _offline_view()
        view.apply_event({"event": "presence", "data": {}})
        assert view.messages == []


class TestDirectory:
    def test_message_in_background_conversation_bumps_badge(self, client, users, auth_headers, monkeypatch):
        alice_api = _api_for(client, users["alice"])
        with_bruno = alice_api.create_direct_conversation(users["bruno"].account_id)["conversation"]["id"]
        with_chen = alice_api.create_direct_conversation(users["chen"].account_id)["conversation"]["id"]
        view = ConversationView(alice_api, users["alice"].account_id)
        view.refresh_conversations()
        view.open_conversation(with_bruno)

        incoming = client.post(
            f"/conversations/{with_chen}/messages",
            json={"message_text": "Are you still in Porto?"},
            headers=auth_headers(users["chen"]),
        ).json()["message"]

        fetch = MagicMock(wraps=alice_api.get_conversation)
        monkeypatch.setattr(alice_api, "get_conversation", fetch)

        view.apply_event({"event": "new-message", "data": incoming})

        background = view.get_conversation(with_chen)
        assert background["unread_count"] == 1
        assert background["last_message"] == "Are you still in Porto?"
        assert view.total_unread == 1
        assert view.conversations[0]["id"] == with_chen
        assert [m["id"] for m in view.messages] == []
        fetch.assert_not_called()

    def test_message_for_unknown_conversation_refreshes_directory(self, client, users, auth_headers):
        view = _view_for(client, users["alice"])
        view.refresh_conversations()
        assert view.conversations == []

        bruno_headers = auth_headers(users["bruno"])
        group = client.post(
            "/conversations",
            json={
                "is_group": True,
                "group_name": "Surprise party",
                "member_ids": [users["alice"].account_id, users["chen"].account_id],
            },
            headers=bruno_headers,
        ).json()["conversation"]
        incoming = client.post(
            f"/conversations/{group['id']}/messages",
            json={"message_text": "Keep it a secret from Dara"},
            headers=bruno_headers,
        ).json()["message"]

        view.apply_event({"event": "new-message", "data": incoming})

        assert [c["id"] for c in view.conversations] == [group["id"]]
        assert view.total_unread == 1

    def test_opening_clears_badge(self, client, users, auth_headers):
        alice_api = _api_for(client, users["alice"])
        conversation_id = alice_api.create_direct_conversation(users["bruno"].account_id)["conversation"]["id"]
        client.post(
            f"/conversations/{conversation_id}/messages",
            json={"message_text": "ping"},
            headers=auth_headers(users["bruno"]),
        )
        view = ConversationView(alice_api, users["alice"].account_id)
        view.refresh_conversations()
        assert view.total_unread == 1

        view.open_conversation(conversation_id)

        assert view.total_unread == 0
        assert alice_api.unread_count() == 0

        view.close_conversation()
        assert view.active_conversation_id is None
        assert view.messages == []


class TestHistory:
    def test_load_older_prepends_pages(self, client, users, test_db):
        alice_api = _api_for(client, users["alice"])
        conversation_id = alice_api.create_direct_conversation(users["bruno"].account_id)["conversation"]["id"]
        view = ConversationView(alice_api, users["alice"].account_id, page_size=25)

        start = datetime(2026, 3, 1, 9, 0, 0)
        rows = [
            Message(
                conversation_id=uuid.UUID(conversation_id),
                sender_id=users["bruno"].account_id,
                message_text=f"note {i}",
                created_at=start + timedelta(minutes=i),
            )
            for i in range(60)
        ]
        test_db.add_all(rows)
        test_db.commit()
        seeded = [str(row.id) for row in rows]

        view.open_conversation(conversation_id)
        assert [m["id"] for m in view.messages] == seeded[35:]
        assert view.has_more is True

        assert view.load_older() == 25
        assert [m["id"] for m in view.messages] == seeded[10:]

        assert view.load_older() == 10
        assert [m["id"] for m in view.messages] == seeded
        assert view.has_more is False

        assert view.load_older() == 0
