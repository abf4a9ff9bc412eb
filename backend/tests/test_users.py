"""
Tests for identity resolution, sessions and user endpoints.
"""

import logging
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth.security import create_identity_token
from tests.conftest import bearer, create_auth_token

logger = logging.getLogger(__name__)


# ============== Identity ==============


def test_missing_token_returns_401(client: TestClient):
    response = client.get("/api/user/me")
    assert response.status_code == 401, f"Expected 401, got {response.status_code}"
    body = response.json()
    assert body["error"] == "authentication_error"
    assert response.headers.get("www-authenticate") == "Bearer"
    logger.info("✓ Missing bearer token is rejected")


def test_expired_token_returns_401(client: TestClient, regular_user: models.User):
    token = create_auth_token(regular_user, expires_delta=timedelta(seconds=-30))
    response = client.get("/api/user/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token has expired"
    logger.info("✓ Expired identity token is rejected with a specific message")


def test_garbage_token_returns_401(client: TestClient):
    response = client.get("/api/user/me", headers={"Authorization": "Bearer abc.def.ghi"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid identity token"


def test_unknown_identity_is_provisioned(client: TestClient, test_db: Session):
    """First request with a valid token for an unknown uid creates the user."""
    token = create_identity_token("uid-new", "new@test.com", name="New Person")
    response = client.get("/api/user/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200, response.json()
    data = response.json()
    assert data["id"] == "uid-new"
    assert data["name"] == "New Person"
    assert data["role"] == "user"
    assert data["status"] == "active"
    assert test_db.query(models.User).filter(models.User.id == "uid-new").count() == 1
    logger.info("✓ Unknown identity auto-provisioned as active user")


def test_name_defaults_to_email_local_part(client: TestClient):
    token = create_identity_token("uid-anon", "anon.person@test.com")
    response = client.get("/api/user/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["name"] == "anon.person"


def test_blocked_user_gets_403(client: TestClient, test_db: Session, regular_user: models.User):
    regular_user.status = models.UserStatus.blocked
    test_db.commit()

    response = client.get("/api/user/me", headers=bearer(regular_user))
    assert response.status_code == 403
    assert response.json()["detail"] == "User account is blocked"
    logger.info("✓ Blocked user cannot authenticate")


def test_sync_uses_profile_fields_on_creation(client: TestClient):
    token = create_identity_token("uid-sync", "sync@test.com")
    response = client.post("/api/user/sync", json={
        "token": token,
        "display_name": "Synced User",
        "photo_url": "https://img.test.com/me.png",
    })
    assert response.status_code == 200, response.json()
    assert response.json()["name"] == "Synced User"
    assert response.json()["avatar"] == "https://img.test.com/me.png"

    # Existing users are returned unchanged
    again = client.post("/api/user/sync", json={"token": token, "display_name": "Other"})
    assert again.json()["name"] == "Synced User"
    logger.info("✓ Sync provisions once and then returns the stored user")


def test_sync_rejects_bad_token(client: TestClient):
    response = client.post("/api/user/sync", json={"token": "nope"})
    assert response.status_code == 401


def test_session_check(client: TestClient, regular_user: models.User):
    response = client.get("/api/user/auth", headers=bearer(regular_user))
    assert response.status_code == 200
    assert response.json()["authenticated"] is True
    assert response.json()["user"]["id"] == regular_user.id


# ============== Profile ==============


def test_update_profile_merges_preferences(client: TestClient, regular_user: models.User):
    headers = bearer(regular_user)
    response = client.put("/api/user/me", json={"preferences": {"theme": "dark"}}, headers=headers)
    assert response.status_code == 200, response.json()
    prefs = response.json()["preferences"]
    assert prefs["theme"] == "dark"
    assert "notifications" in prefs, "Default preference keys should be kept"

    response = client.put("/api/user/me", json={"name": "Renamed"}, headers=headers)
    assert response.json()["name"] == "Renamed"
    assert response.json()["preferences"]["theme"] == "dark"
    logger.info("✓ Preferences are merged, not replaced")


def test_update_status(client: TestClient, regular_user: models.User):
    response = client.patch("/api/user/me/status", json={"status": "inactive"}, headers=bearer(regular_user))
    assert response.status_code == 200
    assert response.json()["status"] == "inactive"

    response = client.patch("/api/user/me/status", json={"status": "blocked"}, headers=bearer(regular_user))
    assert response.status_code == 400, "Users cannot block themselves"
    assert response.json()["error"] == "validation_error"


def test_check_email(client: TestClient, regular_user: models.User, another_user: models.User):
    headers = bearer(regular_user)
    response = client.post("/api/user/check-email", json={"email": "ANOTHER@test.com"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["exists"] is True
    assert response.json()["user"]["id"] == another_user.id

    response = client.post("/api/user/check-email", json={"email": "ghost@test.com"}, headers=headers)
    assert response.json() == {"exists": False, "user": None}


def test_my_stats_counts_created_and_assigned(client: TestClient, test_db: Session,
                                               regular_user: models.User, another_user: models.User):
    mine = models.Task(title="Mine", creator_id=regular_user.id, status=models.TaskStatus.done)
    theirs = models.Task(title="Theirs", creator_id=another_user.id)
    test_db.add_all([mine, theirs])
    test_db.commit()
    test_db.add(models.TaskAssignee(task_id=theirs.id, user_id=regular_user.id))
    test_db.commit()

    response = client.get("/api/user/me/stats", headers=bearer(regular_user))
    assert response.status_code == 200, response.json()
    stats = response.json()
    assert stats["tasks_created"] == 1
    assert stats["tasks_assigned"] == 1
    assert stats["tasks_completed"] == 1
    assert stats["by_status"]["todo"] == 1
    logger.info("✓ User stats count created and assigned tasks")


# ============== Directory ==============


def test_search_users(client: TestClient, test_db: Session, regular_user: models.User,
                      another_user: models.User):
    headers = bearer(regular_user)
    response = client.get("/api/users/search", params={"query": "another"}, headers=headers)
    assert response.status_code == 200
    assert [u["id"] for u in response.json()] == [another_user.id]

    response = client.get("/api/users/search", params={"query": "  "}, headers=headers)
    assert response.status_code == 400

    another_user.status = models.UserStatus.blocked
    test_db.commit()
    response = client.get("/api/users/search", params={"query": "another"}, headers=headers)
    assert response.json() == [], "Blocked users are hidden from search"
    logger.info("✓ Search matches name/email and hides blocked users")


def test_get_user(client: TestClient, regular_user: models.User, another_user: models.User):
    response = client.get(f"/api/users/{another_user.id}", headers=bearer(regular_user))
    assert response.status_code == 200
    assert response.json()["email"] == another_user.email

    response = client.get("/api/users/missing", headers=bearer(regular_user))
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_admin_blocks_user(client: TestClient, admin_user: models.User, regular_user: models.User):
    response = client.patch(
        f"/api/users/{regular_user.id}/status",
        json={"status": "blocked"},
        headers=bearer(admin_user),
    )
    assert response.status_code == 200, response.json()
    assert response.json()["status"] == "blocked"

    response = client.get("/api/user/me", headers=bearer(regular_user))
    assert response.status_code == 403
    logger.info("✓ Admin can block a user")


def test_non_admin_cannot_change_status(client: TestClient, regular_user: models.User,
                                        another_user: models.User):
    response = client.patch(
        f"/api/users/{another_user.id}/status",
        json={"status": "blocked"},
        headers=bearer(regular_user),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "authorization_error"


def test_admin_cannot_demote_self(client: TestClient, admin_user: models.User):
    response = client.patch(
        f"/api/users/{admin_user.id}/status",
        json={"role": "user"},
        headers=bearer(admin_user),
    )
    assert response.status_code == 400
