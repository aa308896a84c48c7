"""
tests/test_friend_service.py — Friend Requests, Friendships & Follows
======================================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from huddle.database.engine import get_session
from huddle.database.models import Chat, Friendship, Notification, User
from huddle.engine.pagination import page_request
from huddle.errors import ServiceError
from huddle.services import friend_service


@pytest.fixture
def pair(make_user):
    return make_user("alice"), make_user("bob")


def _notes(engine, user_id: int) -> list[Notification]:
    with get_session(engine) as session:
        return session.scalars(
            select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
        ).all()


class TestFriendRequests:
    def test_send_notifies_receiver(self, db_engine, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        assert req["status"] == "pending"
        assert req["sender"]["username"] == "alice"

        notes = _notes(db_engine, bob["id"])
        assert len(notes) == 1
        assert notes[0].notification_type == "friend_request"
        assert notes[0].link == f"/friends/requests/{req['id']}"

    def test_cannot_befriend_self(self, db_engine, pair):
        alice, _ = pair
        with pytest.raises(ServiceError) as exc_info:
            friend_service.send_request(db_engine, alice["id"], alice["id"])
        assert exc_info.value.status_code == 400

    def test_duplicate_pending_rejected_both_directions(self, db_engine, pair):
        alice, bob = pair
        friend_service.send_request(db_engine, alice["id"], bob["id"])
        with pytest.raises(ServiceError, match="already exists"):
            friend_service.send_request(db_engine, alice["id"], bob["id"])
        with pytest.raises(ServiceError, match="already exists"):
            friend_service.send_request(db_engine, bob["id"], alice["id"])

    def test_accept_creates_friendship_chat_and_points(self, db_engine, cache, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        result = friend_service.accept_request(db_engine, bob["id"], req["id"], cache)

        assert result["status"] == "accepted"
        with get_session(db_engine) as session:
            assert session.get(Friendship, (alice["id"], bob["id"])) is not None
            assert session.get(Friendship, (bob["id"], alice["id"])) is not None
            chat = session.get(Chat, result["chat_id"])
            assert chat.chat_type == "private"
            assert session.get(User, alice["id"]).points == 5
            assert session.get(User, bob["id"]).points == 5

        assert any("accepted your friend request" in n.message for n in _notes(db_engine, alice["id"]))
        friends = friend_service.list_friends(db_engine, alice["id"], page_request(1, 20))
        assert [f["username"] for f in friends["friends"]] == ["bob"]

    def test_only_recipient_may_accept(self, db_engine, cache, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        with pytest.raises(ServiceError) as exc_info:
            friend_service.accept_request(db_engine, alice["id"], req["id"], cache)
        assert exc_info.value.status_code == 403

    def test_answered_request_cannot_be_answered_again(self, db_engine, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        friend_service.reject_request(db_engine, bob["id"], req["id"])
        with pytest.raises(ServiceError, match="already rejected"):
            friend_service.reject_request(db_engine, bob["id"], req["id"])

    def test_resend_after_rejection(self, db_engine, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        friend_service.reject_request(db_engine, bob["id"], req["id"])
        again = friend_service.send_request(db_engine, alice["id"], bob["id"])
        assert again["status"] == "pending"

    def test_cancel_by_sender_only(self, db_engine, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        with pytest.raises(ServiceError) as exc_info:
            friend_service.cancel_request(db_engine, bob["id"], req["id"])
        assert exc_info.value.status_code == 403
        friend_service.cancel_request(db_engine, alice["id"], req["id"])
        assert friend_service.pending_requests(db_engine, bob["id"])["incoming"] == []

    def test_pending_lists(self, db_engine, pair, make_user):
        alice, bob = pair
        carol = make_user("carol")
        friend_service.send_request(db_engine, alice["id"], bob["id"])
        friend_service.send_request(db_engine, carol["id"], alice["id"])

        pending = friend_service.pending_requests(db_engine, alice["id"])
        assert [r["receiver"]["username"] for r in pending["outgoing"]] == ["bob"]
        assert [r["sender"]["username"] for r in pending["incoming"]] == ["carol"]

    def test_already_friends(self, db_engine, cache, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        friend_service.accept_request(db_engine, bob["id"], req["id"], cache)
        with pytest.raises(ServiceError, match="already friends"):
            friend_service.send_request(db_engine, bob["id"], alice["id"])


class TestRemoveFriend:
    def test_remove_deletes_both_rows(self, db_engine, cache, pair):
        alice, bob = pair
        req = friend_service.send_request(db_engine, alice["id"], bob["id"])
        friend_service.accept_request(db_engine, bob["id"], req["id"], cache)

        friend_service.remove_friend(db_engine, bob["id"], alice["id"])
        with get_session(db_engine) as session:
            assert session.get(Friendship, (alice["id"], bob["id"])) is None
            assert session.get(Friendship, (bob["id"], alice["id"])) is None

        # a fresh request is possible again
        friend_service.send_request(db_engine, alice["id"], bob["id"])

    def test_remove_non_friend_404(self, db_engine, pair):
        alice, bob = pair
        with pytest.raises(ServiceError) as exc_info:
            friend_service.remove_friend(db_engine, alice["id"], bob["id"])
        assert exc_info.value.status_code == 404


class TestFollows:
    def test_follow_is_idempotent(self, db_engine, pair):
        alice, bob = pair
        assert friend_service.follow(db_engine, alice["id"], bob["id"]) == {"following": True, "created": True}
        assert friend_service.follow(db_engine, alice["id"], bob["id"]) == {"following": True, "created": False}

        followers = friend_service.list_followers(db_engine, bob["id"], page_request(1, 20))
        assert [u["username"] for u in followers["followers"]] == ["alice"]
        following = friend_service.list_following(db_engine, alice["id"], page_request(1, 20))
        assert [u["username"] for u in following["following"]] == ["bob"]

    def test_unfollow(self, db_engine, pair):
        alice, bob = pair
        friend_service.follow(db_engine, alice["id"], bob["id"])
        assert friend_service.unfollow(db_engine, alice["id"], bob["id"]) == {"following": False, "removed": True}
        assert friend_service.unfollow(db_engine, alice["id"], bob["id"]) == {"following": False, "removed": False}

    def test_cannot_follow_self(self, db_engine, pair):
        alice, _ = pair
        with pytest.raises(ServiceError):
            friend_service.follow(db_engine, alice["id"], alice["id"])
