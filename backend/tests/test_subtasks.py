"""
Tests for subtasks and subtask dependencies.
"""

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from tests.conftest import add_member, bearer

logger = logging.getLogger(__name__)


@pytest.fixture
def task(test_db: Session, regular_user: models.User, team: models.Team) -> models.Task:
    t = models.Task(title="Parent", creator_id=regular_user.id, team_id=team.id)
    test_db.add(t)
    test_db.commit()
    test_db.refresh(t)
    return t


def create_subtask(client: TestClient, task_id: int, headers, **body) -> dict:
    body.setdefault("title", "Step")
    response = client.post(f"/api/tasks/{task_id}/subtasks", json=body, headers=headers)
    assert response.status_code == 201, response.json()
    return response.json()


def test_create_and_list(client: TestClient, task: models.Task, regular_user: models.User):
    headers = bearer(regular_user)
    first = create_subtask(client, task.id, headers, title="One")
    second = create_subtask(client, task.id, headers, title="Two")
    assert (first["order"], second["order"]) == (0, 1), "Order defaults to the end of the list"
    assert first["completed"] is False
    assert first["dependencies"] == []

    response = client.get(f"/api/tasks/{task.id}/subtasks", headers=headers)
    assert [s["title"] for s in response.json()] == ["One", "Two"]
    logger.info("✓ Subtasks created in order")


def test_subtasks_require_task_access(client: TestClient, task: models.Task, another_user: models.User):
    response = client.get(f"/api/tasks/{task.id}/subtasks", headers=bearer(another_user))
    assert response.status_code == 403


def test_complete_records_who_and_when(client: TestClient, task: models.Task, regular_user: models.User):
    headers = bearer(regular_user)
    subtask = create_subtask(client, task.id, headers)

    response = client.put(f"/api/subtasks/{subtask['id']}", json={"completed": True}, headers=headers)
    assert response.status_code == 200, response.json()
    data = response.json()
    assert data["completed"] is True
    assert data["completed_by_id"] == regular_user.id
    assert data["completed_at"] is not None

    response = client.put(f"/api/subtasks/{subtask['id']}", json={"completed": False}, headers=headers)
    assert response.json()["completed_at"] is None
    assert response.json()["completed_by_id"] is None
    logger.info("✓ Completion stamps are set and cleared")


def test_assign_subtask_notifies(client: TestClient, test_db: Session, task: models.Task, team: models.Team,
                                 regular_user: models.User, another_user: models.User):
    headers = bearer(regular_user)
    subtask = create_subtask(client, task.id, headers)

    response = client.put(f"/api/subtasks/{subtask['id']}", json={"assignee_id": another_user.id}, headers=headers)
    assert response.status_code == 400, "Assignee must be a team member"

    add_member(test_db, team, another_user)
    response = client.put(f"/api/subtasks/{subtask['id']}", json={"assignee_id": another_user.id}, headers=headers)
    assert response.status_code == 200
    assert test_db.query(models.Notification).filter(models.Notification.type == "subtask_assigned").count() == 1


def test_dependencies(client: TestClient, task: models.Task, regular_user: models.User):
    headers = bearer(regular_user)
    a = create_subtask(client, task.id, headers, title="A")
    b = create_subtask(client, task.id, headers, title="B")

    response = client.post(f"/api/subtasks/{b['id']}/dependencies", json={"dependency_id": a["id"]},
                           headers=headers)
    assert response.status_code == 200, response.json()
    assert response.json()["dependencies"] == [a["id"]]

    # Adding the same dependency again is a no-op
    response = client.post(f"/api/subtasks/{b['id']}/dependencies", json={"dependency_id": a["id"]},
                           headers=headers)
    assert response.json()["dependencies"] == [a["id"]]

    response = client.post(f"/api/subtasks/{a['id']}/dependencies", json={"dependency_id": b["id"]},
                           headers=headers)
    assert response.status_code == 400
    assert "Circular" in response.json()["detail"]

    response = client.post(f"/api/subtasks/{a['id']}/dependencies", json={"dependency_id": a["id"]},
                           headers=headers)
    assert response.status_code == 400
    logger.info("✓ Dependencies are idempotent and reject cycles and self-links")


def test_dependency_must_share_task(client: TestClient, test_db: Session, task: models.Task,
                                   regular_user: models.User):
    headers = bearer(regular_user)
    other_task = models.Task(title="Other", creator_id=regular_user.id)
    test_db.add(other_task)
    test_db.commit()

    here = create_subtask(client, task.id, headers)
    there = create_subtask(client, other_task.id, headers)

    response = client.post(f"/api/subtasks/{here['id']}/dependencies", json={"dependency_id": there["id"]},
                           headers=headers)
    assert response.status_code == 400

    response = client.post(f"/api/subtasks/{here['id']}/dependencies", json={"dependency_id": 9999},
                           headers=headers)
    assert response.status_code == 404


def test_delete_removes_from_sibling_dependencies(client: TestClient, task: models.Task,
                                                  regular_user: models.User):
    headers = bearer(regular_user)
    a = create_subtask(client, task.id, headers, title="A")
    b = create_subtask(client, task.id, headers, title="B")
    client.post(f"/api/subtasks/{b['id']}/dependencies", json={"dependency_id": a["id"]}, headers=headers)

    response = client.delete(f"/api/subtasks/{a['id']}", headers=headers)
    assert response.status_code == 200

    remaining = client.get(f"/api/tasks/{task.id}/subtasks", headers=headers).json()
    assert [(s["id"], s["dependencies"]) for s in remaining] == [(b["id"], [])]
    logger.info("✓ Deleting a subtask clears it from sibling dependencies")


def test_remove_dependency(client: TestClient, task: models.Task, regular_user: models.User):
    headers = bearer(regular_user)
    a = create_subtask(client, task.id, headers, title="A")
    b = create_subtask(client, task.id, headers, title="B")
    client.post(f"/api/subtasks/{b['id']}/dependencies", json={"dependency_id": a["id"]}, headers=headers)

    response = client.delete(f"/api/subtasks/{b['id']}/dependencies/{a['id']}", headers=headers)
    assert response.status_code == 200
    assert response.json()["dependencies"] == []

    response = client.delete(f"/api/subtasks/{b['id']}/dependencies/{a['id']}", headers=headers)
    assert response.status_code == 404
