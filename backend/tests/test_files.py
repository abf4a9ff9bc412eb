"""
Tests for task attachments, chat files and upload validation.
"""

import logging

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from starlette.requests import Request

import models
from config import UPLOAD_DIR
from storage import require_content_length
from tests.conftest import bearer

logger = logging.getLogger(__name__)


@pytest.fixture
def task(test_db: Session, regular_user: models.User, team: models.Team) -> models.Task:
    t = models.Task(title="With files", creator_id=regular_user.id, team_id=team.id)
    test_db.add(t)
    test_db.commit()
    test_db.refresh(t)
    return t


def disk_path(public_path: str):
    return UPLOAD_DIR / public_path[len("/uploads/"):]


def test_upload_list_and_delete(client: TestClient, test_db: Session, task: models.Task,
                                regular_user: models.User):
    headers = bearer(regular_user)
    response = client.post(
        f"/api/tasks/{task.id}/files",
        files=[
            ("files", ("notes.txt", b"hello world", "text/plain")),
            ("files", ("diagram.png", b"\x89PNG fake", "image/png")),
        ],
        headers=headers,
    )
    assert response.status_code == 201, response.json()
    uploaded = response.json()
    assert [f["name"] for f in uploaded] == ["notes.txt", "diagram.png"]
    assert uploaded[0]["size"] == 11
    assert uploaded[0]["owner_id"] == regular_user.id
    assert disk_path(uploaded[0]["path"]).read_bytes() == b"hello world"

    served = client.get(uploaded[0]["path"])
    assert served.status_code == 200
    assert served.content == b"hello world"

    response = client.get(f"/api/tasks/{task.id}/files", headers=headers)
    assert len(response.json()) == 2

    response = client.delete(f"/api/tasks/{task.id}/files/{uploaded[0]['id']}", headers=headers)
    assert response.status_code == 200
    assert not disk_path(uploaded[0]["path"]).exists()

    response = client.delete(f"/api/tasks/{task.id}/files/{uploaded[0]['id']}", headers=headers)
    assert response.status_code == 404

    actions = [log.action for log in test_db.query(models.ActivityLog).order_by(models.ActivityLog.id)]
    assert actions == ["file_uploaded", "file_deleted"]
    logger.info("✓ Task files uploaded, served, listed and deleted")


def test_disallowed_extension_rejected(client: TestClient, task: models.Task, regular_user: models.User):
    response = client.post(
        f"/api/tasks/{task.id}/files",
        files=[("files", ("payload.svg", b"<svg/>", "image/svg+xml"))],
        headers=bearer(regular_user),
    )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("File type not allowed")


def test_disallowed_mime_type_rejected(client: TestClient, task: models.Task, regular_user: models.User):
    response = client.post(
        f"/api/tasks/{task.id}/files",
        files=[("files", ("notes.txt", b"text", "application/x-msdownload"))],
        headers=bearer(regular_user),
    )
    assert response.status_code == 400


def test_failed_batch_leaves_nothing_behind(client: TestClient, test_db: Session, task: models.Task,
                                            regular_user: models.User):
    task_dir = UPLOAD_DIR / "tasks" / str(task.id)
    before = set(task_dir.glob("*"))
    response = client.post(
        f"/api/tasks/{task.id}/files",
        files=[
            ("files", ("ok.txt", b"fine", "text/plain")),
            ("files", ("bad.exe", b"MZ", "application/octet-stream")),
        ],
        headers=bearer(regular_user),
    )
    assert response.status_code == 400
    assert test_db.query(models.TaskFile).count() == 0
    assert set(task_dir.glob("*")) == before


def test_file_sharing_disabled(client: TestClient, test_db: Session, task: models.Task, team: models.Team,
                               regular_user: models.User):
    team.settings = {"allow_invites": True, "allow_file_sharing": False}
    test_db.commit()

    response = client.post(
        f"/api/tasks/{task.id}/files",
        files=[("files", ("notes.txt", b"hello", "text/plain"))],
        headers=bearer(regular_user),
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "File sharing is disabled for this team"


def test_upload_requires_task_access(client: TestClient, task: models.Task, another_user: models.User):
    response = client.post(
        f"/api/tasks/{task.id}/files",
        files=[("files", ("notes.txt", b"hello", "text/plain"))],
        headers=bearer(another_user),
    )
    assert response.status_code == 403


def test_content_length_required():
    request = Request({"type": "http", "method": "POST", "headers": []})
    with pytest.raises(HTTPException) as exc_info:
        require_content_length(request)
    assert exc_info.value.status_code == 411

    request = Request({"type": "http", "method": "POST", "headers": [(b"content-length", b"lots")]})
    with pytest.raises(HTTPException) as exc_info:
        require_content_length(request)
    assert exc_info.value.status_code == 400

    request = Request({"type": "http", "method": "POST", "headers": [(b"content-length", str(10 ** 10).encode())]})
    with pytest.raises(HTTPException) as exc_info:
        require_content_length(request)
    assert exc_info.value.status_code == 413


# ============== Chat files ==============


def test_chat_file_upload(client: TestClient, regular_user: models.User, another_user: models.User):
    chat = client.post(
        "/api/chats", json={"name": "Files", "user_ids": [another_user.id]}, headers=bearer(regular_user)
    ).json()

    response = client.post(
        f"/api/chats/{chat['id']}/files",
        files={"file": ("photo.jpg", b"\xff\xd8 jpeg", "image/jpeg")},
        data={"content": "look"},
        headers=bearer(regular_user),
    )
    assert response.status_code == 201, response.json()
    message = response.json()
    assert message["message_type"] == "image"
    assert message["content"] == "look"
    assert message["files"][0]["name"] == "photo.jpg"
    file_id = message["files"][0]["id"]

    response = client.delete(f"/api/chats/{chat['id']}/files/{file_id}", headers=bearer(another_user))
    assert response.status_code == 403, "Only the message author can delete its files"

    response = client.delete(f"/api/chats/{chat['id']}/files/{file_id}", headers=bearer(regular_user))
    assert response.status_code == 200
    assert not disk_path(message["files"][0]["path"]).exists()
    logger.info("✓ Chat image uploaded as an image message and deleted by its author")


def test_chat_file_non_member(client: TestClient, regular_user: models.User,
                              another_user: models.User, admin_user: models.User):
    chat = client.post(
        "/api/chats", json={"name": "Private", "user_ids": [another_user.id]}, headers=bearer(regular_user)
    ).json()
    response = client.post(
        f"/api/chats/{chat['id']}/files",
        files={"file": ("notes.pdf", b"%PDF", "application/pdf")},
        headers=bearer(admin_user),
    )
    assert response.status_code == 403


def test_chat_file_counts_as_sent_message(client: TestClient, test_db: Session,
                                          regular_user: models.User, another_user: models.User):
    chat = client.post(
        "/api/chats", json={"name": "Files", "user_ids": [another_user.id]}, headers=bearer(regular_user)
    ).json()

    response = client.post(
        f"/api/chats/{chat['id']}/files",
        files={"file": ("notes.pdf", b"%PDF", "application/pdf")},
        headers=bearer(regular_user),
    )
    assert response.status_code == 201, response.json()
    message_id = response.json()["id"]

    response = client.get("/api/chats", headers=bearer(regular_user))
    assert response.json()[0]["unread_count"] == 0, "Own uploads are never unread"
    response = client.get("/api/chats", headers=bearer(another_user))
    assert response.json()[0]["unread_count"] == 1

    log = test_db.query(models.ActivityLog).filter(models.ActivityLog.action == "message_sent").one()
    assert log.actor_id == regular_user.id
    assert log.details["message_id"] == message_id
    logger.info("✓ Chat upload marks the chat read for the uploader and is logged as a sent message")
