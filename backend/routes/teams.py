import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session, joinedload

from database import get_db
import models
import schemas
from activity import add_activity, build_details, record_activity
from auth.dependencies import get_current_user
from auth.permissions import Action, require_team
from notifier import notify
from realtime import RoomHub, get_hub, team_room, user_room
from schemas import ActivityAction
from storage import delete_stored_file

logger = logging.getLogger(__name__)

router = APIRouter(tags=["teams"])


def _load_team(db: Session, team_id: int) -> models.Team:
    return (
        db.query(models.Team)
        .options(joinedload(models.Team.members).joinedload(models.TeamMember.user))
        .filter(models.Team.id == team_id)
        .first()
    )


def _get_membership(db: Session, team_id: int, user_id: str) -> models.TeamMember:
    membership = (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team_id, models.TeamMember.user_id == user_id)
        .first()
    )
    if not membership:
        raise HTTPException(status_code=404, detail="Team member not found")
    return membership


@router.post("/api/teams", response_model=schemas.Team, status_code=201)
def create_team(
    team: schemas.TeamCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new team and add the creator as its owner."""
    logger.debug(f"User {current_user.id} creating team: {team.name}")

    team_data = team.model_dump(exclude={"settings"})
    settings = team.settings.model_dump() if team.settings else models.default_team_settings()

    db_team = models.Team(**team_data, owner_id=current_user.id, settings=settings)
    db.add(db_team)
    db.flush()  # Get team ID without committing

    membership = models.TeamMember(
        team_id=db_team.id,
        user_id=current_user.id,
        role=models.TeamRole.owner
    )
    db.add(membership)

    db.commit()
    db.refresh(db_team)

    record_activity(db, current_user.id, ActivityAction.team_created,
                    {"team_id": db_team.id, "name": db_team.name}, team_id=db_team.id)

    logger.info(f"Team created: {db_team.name} (ID: {db_team.id}) by user {current_user.id}")
    return _load_team(db, db_team.id)


@router.get("/api/teams", response_model=List[schemas.Team])
def list_teams(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List all teams the current user is a member of."""
    logger.debug(f"User {current_user.id} listing teams")

    teams = (
        db.query(models.Team)
        .join(models.TeamMember, models.TeamMember.team_id == models.Team.id)
        .filter(models.TeamMember.user_id == current_user.id)
        .options(joinedload(models.Team.members).joinedload(models.TeamMember.user))
        .order_by(models.Team.id)
        .all()
    )

    logger.info(f"User {current_user.id} retrieved {len(teams)} teams")
    return teams


@router.get("/api/teams/{team_id}", response_model=schemas.Team)
def get_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get team details with members (requires membership)."""
    require_team(db, team_id, current_user)
    return _load_team(db, team_id)


@router.put("/api/teams/{team_id}", response_model=schemas.Team)
def update_team(
    team_id: int,
    team_update: schemas.TeamUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Update team details (owner or admin)."""
    team = require_team(db, team_id, current_user, Action.update)

    update_data = team_update.model_dump(exclude_unset=True)
    if "name" in update_data and update_data["name"] is None:
        raise HTTPException(status_code=400, detail="Team name cannot be null")
    for key, value in update_data.items():
        setattr(team, key, value)

    db.commit()

    team = _load_team(db, team_id)
    hub.emit(team_room(team_id), "team:updated", schemas.Team.model_validate(team))
    record_activity(db, current_user.id, ActivityAction.team_updated,
                    {"team_id": team_id, "name": team.name}, team_id=team_id)

    logger.info(f"Team updated: {team.name} (ID: {team_id}) by user {current_user.id}")
    return team


@router.put("/api/teams/{team_id}/settings", response_model=schemas.Team)
def update_team_settings(
    team_id: int,
    settings_update: schemas.TeamSettingsUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Update team settings (owner only)."""
    team = require_team(db, team_id, current_user, Action.update_settings)

    settings = dict(team.settings or models.default_team_settings())
    settings.update({k: v for k, v in settings_update.model_dump(exclude_unset=True).items() if v is not None})
    team.settings = settings
    db.commit()

    team = _load_team(db, team_id)
    hub.emit(team_room(team_id), "team:updated", schemas.Team.model_validate(team))

    logger.info(f"Team {team_id} settings updated by user {current_user.id}")
    return team


@router.delete("/api/teams/{team_id}")
def delete_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a team with its tasks and memberships (owner only)."""
    team = require_team(db, team_id, current_user, Action.delete)

    file_paths = [f.path for task in team.tasks for f in task.files]
    task_count = len(team.tasks)

    # Team calendar entries stay with their owners
    db.query(models.Event).filter(models.Event.team_id == team_id).update(
        {models.Event.team_id: None}, synchronize_session=False
    )
    add_activity(
        db, current_user.id, ActivityAction.team_deleted.value,
        build_details(ActivityAction.team_deleted.value, {"team_id": team_id, "name": team.name}),
        team_id=team_id, commit=False,
    )
    db.delete(team)
    db.commit()

    for path in file_paths:
        delete_stored_file(path)

    hub.emit(team_room(team_id), "team:deleted", {"id": team_id})
    hub.close_room(team_room(team_id))
    logger.info(f"Team deleted: ID {team_id} by user {current_user.id} ({task_count} tasks removed)")
    return {"message": "Team deleted", "deleted_tasks": task_count}


# ============== Members ==============

@router.get("/api/teams/{team_id}/members", response_model=List[schemas.TeamMember])
def list_team_members(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List team members (requires membership)."""
    require_team(db, team_id, current_user)

    members = (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team_id)
        .options(joinedload(models.TeamMember.user))
        .order_by(models.TeamMember.id)
        .all()
    )

    logger.info(f"User {current_user.id} retrieved {len(members)} members for team {team_id}")
    return members


@router.get("/api/teams/{team_id}/members/{user_id}", response_model=schemas.TeamMember)
def get_team_member(
    team_id: int,
    user_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    require_team(db, team_id, current_user)
    return _get_membership(db, team_id, user_id)


@router.post("/api/teams/{team_id}/members", response_model=schemas.TeamMember, status_code=201)
def add_team_member(
    team_id: int,
    member: schemas.TeamMemberAdd,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Add a user to the team by e-mail (owner or admin)."""
    team = require_team(db, team_id, current_user, Action.add_member)

    user = db.query(models.User).filter(models.User.email == member.email).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    existing = (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team_id, models.TeamMember.user_id == user.id)
        .first()
    )
    if existing:
        raise HTTPException(status_code=409, detail="User is already a member of this team")

    membership = models.TeamMember(team_id=team_id, user_id=user.id, role=member.role)
    db.add(membership)
    db.commit()
    db.refresh(membership)

    payload = schemas.TeamMember.model_validate(membership)
    hub.emit(team_room(team_id), "team:memberAdded", {"team_id": team_id, "member": payload})
    notify(
        db, hub, user.id,
        type="team_invite",
        title="Added to Team",
        message=f"You have been added to team {team.name}",
        data={"team_id": team_id, "role": member.role},
    )
    record_activity(db, current_user.id, ActivityAction.member_added,
                    {"team_id": team_id, "user_id": user.id, "role": member.role}, team_id=team_id)

    logger.info(f"User {user.id} added to team {team_id} as {member.role}")
    return membership


@router.put("/api/teams/{team_id}/members/{user_id}/role", response_model=schemas.TeamMember)
def update_team_member_role(
    team_id: int,
    user_id: str,
    role_update: schemas.TeamMemberRoleUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Change a member's role (owner or admin; the owner's role cannot change)."""
    team = require_team(db, team_id, current_user, Action.change_role, target_user_id=user_id)
    membership = _get_membership(db, team_id, user_id)

    membership.role = role_update.role
    db.commit()
    db.refresh(membership)

    hub.emit(team_room(team_id), "team:memberRoleUpdated",
             {"team_id": team_id, "user_id": user_id, "role": role_update.role})
    notify(
        db, hub, user_id,
        type="role_update",
        title="Role Update",
        message=f"Your role in team {team.name} has been updated to {role_update.role}",
        data={"team_id": team_id, "role": role_update.role},
    )
    record_activity(db, current_user.id, ActivityAction.member_role_changed,
                    {"team_id": team_id, "user_id": user_id, "role": role_update.role}, team_id=team_id)

    logger.info(f"Team {team_id} member {user_id} role set to {role_update.role} by {current_user.id}")
    return membership


@router.delete("/api/teams/{team_id}/members/{user_id}")
def remove_team_member(
    team_id: int,
    user_id: str,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Remove a member (owner or admin; the owner cannot be removed)."""
    team = require_team(db, team_id, current_user, Action.remove_member, target_user_id=user_id)
    membership = _get_membership(db, team_id, user_id)

    db.delete(membership)
    db.commit()

    hub.emit(team_room(team_id), "team:memberRemoved", {"team_id": team_id, "user_id": user_id})
    hub.evict(team_room(team_id), user_id)
    notify(
        db, hub, user_id,
        type="team_removal",
        title="Removed from Team",
        message=f"You have been removed from team {team.name}",
        data={"team_id": team_id},
    )
    record_activity(db, current_user.id, ActivityAction.member_removed,
                    {"team_id": team_id, "user_id": user_id}, team_id=team_id)

    logger.info(f"User {user_id} removed from team {team_id} by {current_user.id}")
    return {"message": "Member removed from team"}


@router.post("/api/teams/{team_id}/leave")
def leave_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Leave a team (not allowed for the owner)."""
    require_team(db, team_id, current_user, Action.leave)
    membership = _get_membership(db, team_id, current_user.id)

    db.delete(membership)
    db.commit()

    hub.emit(team_room(team_id), "team:memberRemoved", {"team_id": team_id, "user_id": current_user.id})
    hub.evict(team_room(team_id), current_user.id)
    hub.emit(user_room(current_user.id), "team:left", {"team_id": team_id})
    record_activity(db, current_user.id, ActivityAction.team_left,
                    {"team_id": team_id, "user_id": current_user.id}, team_id=team_id)

    logger.info(f"User {current_user.id} left team {team_id}")
    return {"message": "Left team"}
