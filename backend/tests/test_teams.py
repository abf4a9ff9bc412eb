"""
Tests for teams and team membership.

Roles: owner > admin > member. The owner can never be removed, demoted or
leave; admins manage members; settings and deletion belong to the owner.
"""

import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from tests.conftest import add_member, bearer

logger = logging.getLogger(__name__)


def test_create_team_makes_creator_owner(client: TestClient, test_db: Session, regular_user: models.User):
    response = client.post(
        "/api/teams",
        json={"name": "Platform", "description": "Infra folks"},
        headers=bearer(regular_user),
    )
    assert response.status_code == 201, response.json()
    data = response.json()
    assert data["owner_id"] == regular_user.id
    assert data["settings"] == {"allow_invites": True, "allow_file_sharing": True}
    assert [(m["user_id"], m["role"]) for m in data["members"]] == [(regular_user.id, "owner")]

    log = test_db.query(models.ActivityLog).filter(models.ActivityLog.action == "team_created").one()
    assert log.details["kind"] == "team"
    logger.info("✓ Team creator becomes owner and creation is logged")


def test_list_teams_only_memberships(client: TestClient, team: models.Team,
                                     regular_user: models.User, another_user: models.User):
    response = client.get("/api/teams", headers=bearer(regular_user))
    assert [t["id"] for t in response.json()] == [team.id]

    response = client.get("/api/teams", headers=bearer(another_user))
    assert response.json() == []


def test_non_member_cannot_view_team(client: TestClient, team: models.Team, another_user: models.User):
    response = client.get(f"/api/teams/{team.id}", headers=bearer(another_user))
    assert response.status_code == 403, f"Expected 403, got {response.status_code}"
    assert response.json()["error"] == "authorization_error"


def test_missing_team_is_404(client: TestClient, regular_user: models.User):
    response = client.get("/api/teams/999", headers=bearer(regular_user))
    assert response.status_code == 404


def test_update_team_requires_admin(client: TestClient, test_db: Session, team: models.Team,
                                    regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.put(f"/api/teams/{team.id}", json={"name": "Nope"}, headers=bearer(another_user))
    assert response.status_code == 403

    response = client.put(f"/api/teams/{team.id}", json={"name": "Renamed"}, headers=bearer(regular_user))
    assert response.status_code == 200
    assert response.json()["name"] == "Renamed"
    logger.info("✓ Only owners/admins can update the team")


def test_settings_owner_only(client: TestClient, test_db: Session, team: models.Team,
                             regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user, models.TeamRole.admin)
    response = client.put(
        f"/api/teams/{team.id}/settings", json={"allow_invites": False}, headers=bearer(another_user)
    )
    assert response.status_code == 403, "Admins cannot change team settings"

    response = client.put(
        f"/api/teams/{team.id}/settings", json={"allow_file_sharing": False}, headers=bearer(regular_user)
    )
    assert response.status_code == 200, response.json()
    assert response.json()["settings"] == {"allow_invites": True, "allow_file_sharing": False}
    logger.info("✓ Settings are owner-only and merged")


def test_add_member_by_email(client: TestClient, test_db: Session, team: models.Team,
                             regular_user: models.User, another_user: models.User):
    response = client.post(
        f"/api/teams/{team.id}/members",
        json={"email": another_user.email, "role": "admin"},
        headers=bearer(regular_user),
    )
    assert response.status_code == 201, response.json()
    assert response.json()["role"] == "admin"
    assert response.json()["user"]["id"] == another_user.id

    notification = test_db.query(models.Notification).filter(
        models.Notification.recipient_id == another_user.id
    ).one()
    assert notification.type == "team_invite"
    logger.info("✓ Member added by email and notified")


def test_add_member_duplicate_is_conflict(client: TestClient, test_db: Session, team: models.Team,
                                          regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.post(
        f"/api/teams/{team.id}/members", json={"email": another_user.email}, headers=bearer(regular_user)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


def test_add_unknown_email_is_404(client: TestClient, team: models.Team, regular_user: models.User):
    response = client.post(
        f"/api/teams/{team.id}/members", json={"email": "ghost@test.com"}, headers=bearer(regular_user)
    )
    assert response.status_code == 404


def test_member_cannot_add_members(client: TestClient, test_db: Session, team: models.Team,
                                   another_user: models.User, admin_user: models.User):
    add_member(test_db, team, another_user)
    response = client.post(
        f"/api/teams/{team.id}/members", json={"email": admin_user.email}, headers=bearer(another_user)
    )
    assert response.status_code == 403


def test_change_role_notifies(client: TestClient, test_db: Session, team: models.Team,
                              regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.put(
        f"/api/teams/{team.id}/members/{another_user.id}/role",
        json={"role": "admin"},
        headers=bearer(regular_user),
    )
    assert response.status_code == 200, response.json()
    assert response.json()["role"] == "admin"

    notification = test_db.query(models.Notification).filter(models.Notification.type == "role_update").one()
    assert notification.message == "Your role in team Test Team has been updated to admin"
    logger.info("✓ Role change persisted and notified")


def test_owner_cannot_be_demoted_or_removed(client: TestClient, test_db: Session, team: models.Team,
                                            regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user, models.TeamRole.admin)
    headers = bearer(another_user)

    response = client.put(
        f"/api/teams/{team.id}/members/{regular_user.id}/role", json={"role": "member"}, headers=headers
    )
    assert response.status_code == 403

    response = client.delete(f"/api/teams/{team.id}/members/{regular_user.id}", headers=headers)
    assert response.status_code == 403
    logger.info("✓ Team owner is protected from role changes and removal")


def test_owner_role_cannot_be_assigned(client: TestClient, test_db: Session, team: models.Team,
                                       regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.put(
        f"/api/teams/{team.id}/members/{another_user.id}/role",
        json={"role": "owner"},
        headers=bearer(regular_user),
    )
    assert response.status_code == 400


def test_remove_member(client: TestClient, test_db: Session, team: models.Team,
                       regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.delete(f"/api/teams/{team.id}/members/{another_user.id}", headers=bearer(regular_user))
    assert response.status_code == 200

    response = client.get(f"/api/teams/{team.id}", headers=bearer(another_user))
    assert response.status_code == 403
    assert test_db.query(models.Notification).filter(models.Notification.type == "team_removal").count() == 1


def test_leave_team(client: TestClient, test_db: Session, team: models.Team,
                    regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.post(f"/api/teams/{team.id}/leave", headers=bearer(another_user))
    assert response.status_code == 200

    response = client.post(f"/api/teams/{team.id}/leave", headers=bearer(regular_user))
    assert response.status_code == 403, "Owner cannot leave"
    logger.info("✓ Members can leave, owner cannot")


def test_delete_team_owner_only_and_cascades(client: TestClient, test_db: Session, team: models.Team,
                                             regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user, models.TeamRole.admin)
    task = models.Task(title="Team task", creator_id=regular_user.id, team_id=team.id)
    test_db.add(task)
    test_db.commit()
    task_id = task.id

    response = client.delete(f"/api/teams/{team.id}", headers=bearer(another_user))
    assert response.status_code == 403

    response = client.delete(f"/api/teams/{team.id}", headers=bearer(regular_user))
    assert response.status_code == 200, response.json()

    test_db.expire_all()
    assert test_db.query(models.Task).filter(models.Task.id == task_id).first() is None
    assert test_db.query(models.TeamMember).count() == 0
    logger.info("✓ Team deletion is owner-only and removes tasks and members")


def test_delete_team_keeps_activity_history(client: TestClient, test_db: Session, team: models.Team,
                                            regular_user: models.User):
    team_id = team.id
    response = client.put(f"/api/teams/{team_id}", json={"name": "Renamed"}, headers=bearer(regular_user))
    assert response.status_code == 200, response.json()

    response = client.delete(f"/api/teams/{team_id}", headers=bearer(regular_user))
    assert response.status_code == 200, response.json()

    test_db.expire_all()
    deleted = test_db.query(models.ActivityLog).filter(models.ActivityLog.action == "team_deleted").one()
    assert deleted.team_id == team_id
    assert deleted.actor_id == regular_user.id
    assert deleted.details == {"kind": "team", "team_id": team_id, "user_id": None, "role": None, "name": "Renamed"}

    updated = test_db.query(models.ActivityLog).filter(models.ActivityLog.action == "team_updated").one()
    assert updated.team_id == team_id, "Earlier entries keep their team id"
    logger.info("✓ Team deletion is logged and earlier team activity survives")


def test_list_members(client: TestClient, test_db: Session, team: models.Team,
                      regular_user: models.User, another_user: models.User):
    add_member(test_db, team, another_user)
    response = client.get(f"/api/teams/{team.id}/members", headers=bearer(another_user))
    assert response.status_code == 200
    assert {m["user_id"] for m in response.json()} == {regular_user.id, another_user.id}

    response = client.get(f"/api/teams/{team.id}/members/{regular_user.id}", headers=bearer(another_user))
    assert response.json()["role"] == "owner"
