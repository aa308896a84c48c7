"""
tests/test_chat_service.py — Chats, Messages, Reactions & Read State
=====================================================================
"""

from __future__ import annotations

import pytest

from huddle.engine.pagination import page_request
from huddle.errors import ServiceError
from huddle.services import chat_service


@pytest.fixture
def chat(db_engine, make_user):
    """A private chat between alice and bob."""
    alice = make_user("alice")
    bob = make_user("bob")
    data = chat_service.open_private_chat(db_engine, alice["id"], bob["id"])
    return data["id"], alice, bob


class TestPrivateChats:
    def test_open_is_idempotent_in_either_direction(self, db_engine, chat):
        chat_id, alice, bob = chat
        again = chat_service.open_private_chat(db_engine, bob["id"], alice["id"])
        assert again["id"] == chat_id
        assert again["chat_type"] == "private"
        assert [p["username"] for p in again["participants"]] == ["alice", "bob"]

    def test_cannot_chat_with_self(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError) as exc_info:
            chat_service.open_private_chat(db_engine, alice["id"], alice["id"])
        assert exc_info.value.status_code == 400

    def test_outsider_forbidden(self, db_engine, chat, make_user):
        chat_id, _, _ = chat
        eve = make_user("eve")
        with pytest.raises(ServiceError) as exc_info:
            chat_service.get_chat(db_engine, eve["id"], chat_id)
        assert exc_info.value.status_code == 403
        assert chat_service.is_participant(db_engine, chat_id, eve["id"]) is False

    def test_unknown_chat_404(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError) as exc_info:
            chat_service.get_chat(db_engine, alice["id"], 999)
        assert exc_info.value.status_code == 404

    def test_user_chat_ids(self, db_engine, chat):
        chat_id, alice, _ = chat
        assert chat_service.user_chat_ids(db_engine, alice["id"]) == [chat_id]


class TestMessages:
    def test_send_counts_unread_for_others(self, db_engine, chat):
        chat_id, alice, bob = chat
        msg = chat_service.send_message(db_engine, alice["id"], chat_id, "  hi <b>bob</b> ")
        assert msg["content"] == "hi bob"
        assert msg["status"] == "sent"
        assert msg["sender"]["username"] == "alice"

        chat_service.send_message(db_engine, alice["id"], chat_id, "are you there?")
        bob_view = chat_service.get_chat(db_engine, bob["id"], chat_id)
        alice_view = chat_service.get_chat(db_engine, alice["id"], chat_id)
        assert bob_view["unread_count"] == 2
        assert alice_view["unread_count"] == 0
        assert bob_view["last_message"]["content"] == "are you there?"

    def test_empty_message_rejected(self, db_engine, chat):
        chat_id, alice, _ = chat
        with pytest.raises(ServiceError) as exc_info:
            chat_service.send_message(db_engine, alice["id"], chat_id, "   ")
        assert exc_info.value.status_code == 400

    def test_list_newest_first_and_hides_deleted(self, db_engine, chat):
        chat_id, alice, bob = chat
        first = chat_service.send_message(db_engine, alice["id"], chat_id, "one")
        chat_service.send_message(db_engine, bob["id"], chat_id, "two")
        chat_service.delete_message(db_engine, alice["id"], first["id"])

        history = chat_service.list_messages(db_engine, bob["id"], chat_id, page_request(1, 20))
        assert [m["content"] for m in history["messages"]] == ["two"]
        assert history["pagination"]["total"] == 1

    def test_edit_only_own(self, db_engine, chat):
        chat_id, alice, bob = chat
        msg = chat_service.send_message(db_engine, alice["id"], chat_id, "typo")
        with pytest.raises(ServiceError) as exc_info:
            chat_service.edit_message(db_engine, bob["id"], msg["id"], "hijack")
        assert exc_info.value.status_code == 403

        edited = chat_service.edit_message(db_engine, alice["id"], msg["id"], "fixed")
        assert edited["content"] == "fixed"
        assert edited["edited_at"] is not None

    def test_moderator_may_delete_others(self, db_engine, chat):
        chat_id, alice, bob = chat
        msg = chat_service.send_message(db_engine, alice["id"], chat_id, "spam")
        with pytest.raises(ServiceError):
            chat_service.delete_message(db_engine, bob["id"], msg["id"])
        result = chat_service.delete_message(db_engine, bob["id"], msg["id"], ("user", "moderator"))
        assert result == {"id": msg["id"], "chat_id": chat_id, "deleted_by": bob["id"]}

        with pytest.raises(ServiceError) as exc_info:
            chat_service.edit_message(db_engine, alice["id"], msg["id"], "too late")
        assert exc_info.value.status_code == 404


class TestReactions:
    def test_new_reaction_replaces_old(self, db_engine, chat):
        chat_id, alice, bob = chat
        msg = chat_service.send_message(db_engine, alice["id"], chat_id, "hello")
        chat_service.add_reaction(db_engine, bob["id"], msg["id"], "👍")
        result = chat_service.add_reaction(db_engine, bob["id"], msg["id"], "🎉")
        assert result["reaction"] == "🎉"

        history = chat_service.list_messages(db_engine, alice["id"], chat_id, page_request(1, 20))
        assert history["messages"][0]["reactions"] == [{"user_id": bob["id"], "reaction": "🎉"}]

    def test_remove_missing_reaction_404(self, db_engine, chat):
        chat_id, alice, bob = chat
        msg = chat_service.send_message(db_engine, alice["id"], chat_id, "hello")
        with pytest.raises(ServiceError) as exc_info:
            chat_service.remove_reaction(db_engine, bob["id"], msg["id"])
        assert exc_info.value.status_code == 404

    def test_outsider_cannot_react(self, db_engine, chat, make_user):
        chat_id, alice, _ = chat
        eve = make_user("eve")
        msg = chat_service.send_message(db_engine, alice["id"], chat_id, "hello")
        with pytest.raises(ServiceError) as exc_info:
            chat_service.add_reaction(db_engine, eve["id"], msg["id"], "👀")
        assert exc_info.value.status_code == 403


class TestReadState:
    def test_mark_read_marks_others_messages_seen(self, db_engine, chat):
        chat_id, alice, bob = chat
        m1 = chat_service.send_message(db_engine, alice["id"], chat_id, "one")
        m2 = chat_service.send_message(db_engine, alice["id"], chat_id, "two")
        chat_service.send_message(db_engine, bob["id"], chat_id, "mine")

        result = chat_service.mark_read(db_engine, bob["id"], chat_id)
        assert sorted(result["message_ids"]) == [m1["id"], m2["id"]]
        assert chat_service.get_chat(db_engine, bob["id"], chat_id)["unread_count"] == 0

        # nothing new to mark the second time
        assert chat_service.mark_read(db_engine, bob["id"], chat_id)["message_ids"] == []

        history = chat_service.list_messages(db_engine, alice["id"], chat_id, page_request(1, 20))
        statuses = {m["content"]: m["status"] for m in history["messages"]}
        assert statuses == {"one": "seen", "two": "seen", "mine": "sent"}
