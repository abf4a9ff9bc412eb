"""
Tests for direct and group chats, chat members and messages.
"""

import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from tests.conftest import bearer

logger = logging.getLogger(__name__)


def create_chat(client: TestClient, owner: models.User, user_ids, is_group: bool = False,
                name: str = "Chat") -> dict:
    response = client.post(
        "/api/chats",
        json={"name": name, "is_group": is_group, "user_ids": user_ids},
        headers=bearer(owner),
    )
    assert response.status_code == 201, response.json()
    return response.json()


def send(client: TestClient, chat_id: int, user: models.User, content: str, **extra) -> dict:
    response = client.post(
        f"/api/chats/{chat_id}/messages", json={"content": content, **extra}, headers=bearer(user)
    )
    assert response.status_code == 201, response.json()
    return response.json()


# ============== Chats ==============


def test_create_direct_chat(client: TestClient, test_db: Session,
                            regular_user: models.User, another_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id, regular_user.id])
    assert chat["is_group"] is False
    assert chat["owner_id"] == regular_user.id
    roles = {m["user_id"]: m["role"] for m in chat["members"]}
    assert roles == {regular_user.id: "admin", another_user.id: "member"}

    log = test_db.query(models.ActivityLog).filter(models.ActivityLog.action == "chat_created").one()
    assert log.details == {"kind": "chat", "chat_id": chat["id"], "message_id": None}
    logger.info("✓ Direct chat created with owner as admin")


def test_direct_chat_needs_exactly_one_other_user(client: TestClient, regular_user: models.User,
                                                  another_user: models.User, admin_user: models.User):
    for user_ids in ([], [regular_user.id], [another_user.id, admin_user.id]):
        response = client.post(
            "/api/chats", json={"name": "DM", "user_ids": user_ids}, headers=bearer(regular_user)
        )
        assert response.status_code == 400, f"{user_ids} should be rejected"

    response = client.post(
        "/api/chats", json={"name": "DM", "user_ids": ["uid-ghost"]}, headers=bearer(regular_user)
    )
    assert response.status_code == 404


def test_group_chat_and_listing(client: TestClient, regular_user: models.User,
                                another_user: models.User, admin_user: models.User):
    group = create_chat(client, regular_user, [another_user.id, admin_user.id], is_group=True, name="Crew")
    direct = create_chat(client, another_user, [admin_user.id], name="Side")
    send(client, group["id"], regular_user, "hello crew")

    response = client.get("/api/chats", headers=bearer(another_user))
    assert response.status_code == 200
    chats = response.json()
    assert [c["id"] for c in chats] == [group["id"], direct["id"]], "Most recent activity first"
    assert chats[0]["last_message"]["content"] == "hello crew"
    assert chats[0]["unread_count"] == 1
    assert chats[1]["last_message"] is None

    response = client.get("/api/chats", headers=bearer(regular_user))
    assert [c["id"] for c in response.json()] == [group["id"]]
    assert response.json()[0]["unread_count"] == 0, "Own messages are never unread"
    logger.info("✓ Chat list shows last message and unread count")


def test_non_member_cannot_read_chat(client: TestClient, regular_user: models.User,
                                     another_user: models.User, admin_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    assert client.get(f"/api/chats/{chat['id']}", headers=bearer(admin_user)).status_code == 403
    assert client.get(f"/api/chats/{chat['id']}/messages", headers=bearer(admin_user)).status_code == 403
    assert client.get("/api/chats/999", headers=bearer(regular_user)).status_code == 404


def test_only_owner_deletes_chat(client: TestClient, test_db: Session,
                                 regular_user: models.User, another_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    send(client, chat["id"], another_user, "bye")

    response = client.delete(f"/api/chats/{chat['id']}", headers=bearer(another_user))
    assert response.status_code == 403

    response = client.delete(f"/api/chats/{chat['id']}", headers=bearer(regular_user))
    assert response.status_code == 200

    test_db.expire_all()
    assert test_db.query(models.Message).count() == 0
    assert test_db.query(models.ChatUser).count() == 0
    logger.info("✓ Chat deletion is owner-only and removes messages and members")


# ============== Members ==============


def test_add_user_to_group(client: TestClient, regular_user: models.User,
                           another_user: models.User, admin_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id], is_group=True)
    url = f"/api/chats/{chat['id']}/users"

    response = client.post(url, json={"user_id": admin_user.id}, headers=bearer(another_user))
    assert response.status_code == 403, "Only chat admins can add users"

    response = client.post(url, json={"user_id": admin_user.id}, headers=bearer(regular_user))
    assert response.status_code == 201, response.json()
    assert admin_user.id in {m["user_id"] for m in response.json()["members"]}

    response = client.post(url, json={"user_id": admin_user.id}, headers=bearer(regular_user))
    assert response.status_code == 409

    response = client.post(url, json={"user_id": "uid-ghost"}, headers=bearer(regular_user))
    assert response.status_code == 404
    logger.info("✓ Chat admins add users; duplicates conflict")


def test_cannot_add_user_to_direct_chat(client: TestClient, regular_user: models.User,
                                        another_user: models.User, admin_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    response = client.post(
        f"/api/chats/{chat['id']}/users", json={"user_id": admin_user.id}, headers=bearer(regular_user)
    )
    assert response.status_code == 400


def test_remove_user(client: TestClient, regular_user: models.User,
                     another_user: models.User, admin_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id, admin_user.id], is_group=True)
    base = f"/api/chats/{chat['id']}/users"

    response = client.delete(f"{base}/{admin_user.id}", headers=bearer(another_user))
    assert response.status_code == 403, "Members cannot remove others"

    response = client.delete(f"{base}/{another_user.id}", headers=bearer(another_user))
    assert response.status_code == 200, "Members can leave"

    response = client.delete(f"{base}/{admin_user.id}", headers=bearer(regular_user))
    assert response.status_code == 200

    response = client.get(f"/api/chats/{chat['id']}", headers=bearer(regular_user))
    assert [m["user_id"] for m in response.json()["members"]] == [regular_user.id]
    logger.info("✓ Admins remove users and members remove themselves")


# ============== Messages ==============


def test_messages_newest_first_and_mark_read(client: TestClient, regular_user: models.User,
                                             another_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    first = send(client, chat["id"], regular_user, "one")
    second = send(client, chat["id"], regular_user, "two")

    summary = client.get(f"/api/chats/{chat['id']}", headers=bearer(another_user)).json()
    assert summary["unread_count"] == 2

    response = client.get(f"/api/chats/{chat['id']}/messages", headers=bearer(another_user))
    assert response.status_code == 200
    assert [m["id"] for m in response.json()] == [second["id"], first["id"]]

    summary = client.get(f"/api/chats/{chat['id']}", headers=bearer(another_user)).json()
    assert summary["unread_count"] == 0, "Reading messages marks the chat as read"

    response = client.get(f"/api/chats/{chat['id']}/messages", params={"limit": 1},
                          headers=bearer(another_user))
    assert [m["content"] for m in response.json()] == ["two"]
    logger.info("✓ Messages listed newest first and reading clears unread count")


def test_mark_read_endpoint(client: TestClient, regular_user: models.User, another_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    send(client, chat["id"], regular_user, "ping")

    response = client.post(f"/api/chats/{chat['id']}/read", headers=bearer(another_user))
    assert response.status_code == 200
    assert response.json()["unread_count"] == 0


def test_text_message_requires_content(client: TestClient, regular_user: models.User, another_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    response = client.post(
        f"/api/chats/{chat['id']}/messages", json={"content": "   "}, headers=bearer(regular_user)
    )
    assert response.status_code == 400


def test_reply_must_be_in_same_chat(client: TestClient, regular_user: models.User,
                                    another_user: models.User, admin_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    other = create_chat(client, regular_user, [admin_user.id])
    foreign = send(client, other["id"], regular_user, "elsewhere")
    local = send(client, chat["id"], regular_user, "here")

    response = client.post(
        f"/api/chats/{chat['id']}/messages",
        json={"content": "re", "reply_to_id": foreign["id"]},
        headers=bearer(another_user),
    )
    assert response.status_code == 400

    reply = send(client, chat["id"], another_user, "re", reply_to_id=local["id"])
    assert reply["reply_to_id"] == local["id"]


def test_only_author_edits_and_deletes_message(client: TestClient, test_db: Session,
                                               regular_user: models.User, another_user: models.User):
    chat = create_chat(client, regular_user, [another_user.id])
    message = send(client, chat["id"], another_user, "original")
    url = f"/api/chats/{chat['id']}/messages/{message['id']}"

    response = client.put(url, json={"content": "hijack"}, headers=bearer(regular_user))
    assert response.status_code == 403

    response = client.put(url, json={"content": "fixed"}, headers=bearer(another_user))
    assert response.status_code == 200
    assert response.json()["content"] == "fixed"
    assert response.json()["edited"] is True
    assert response.json()["edited_at"] is not None

    response = client.delete(url, headers=bearer(regular_user))
    assert response.status_code == 403
    response = client.delete(url, headers=bearer(another_user))
    assert response.status_code == 200

    response = client.delete(url, headers=bearer(another_user))
    assert response.status_code == 404
    assert test_db.query(models.ActivityLog).filter(models.ActivityLog.action == "message_sent").count() == 1
    logger.info("✓ Only the author can edit or delete a message")
