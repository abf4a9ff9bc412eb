import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from database import get_db
import models
import schemas
from auth.dependencies import get_current_admin, get_current_user
from auth.permissions import require_notification
from notifier import notify
from realtime import RoomHub, get_hub, user_room

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _unread_count(db: Session, user_id: str) -> int:
    return (
        db.query(func.count(models.Notification.id))
        .filter(models.Notification.recipient_id == user_id, models.Notification.read.is_(False))
        .scalar()
    )


@router.get("", response_model=schemas.NotificationList)
def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's notifications, newest first."""
    query = db.query(models.Notification).filter(models.Notification.recipient_id == current_user.id)
    if unread_only:
        query = query.filter(models.Notification.read.is_(False))

    total = query.count()
    notifications = (
        query.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )

    logger.debug(f"User {current_user.id} retrieved {len(notifications)} of {total} notifications")
    return {
        "notifications": notifications,
        "pagination": {"total": total, "limit": limit, "offset": offset},
        "unread_count": _unread_count(db, current_user.id),
    }


@router.post("", response_model=schemas.Notification, status_code=201)
def create_notification(
    notification: schemas.NotificationCreate,
    admin: models.User = Depends(get_current_admin),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Send a notification to any user (admin only)."""
    if not db.query(models.User).filter(models.User.id == notification.recipient_id).first():
        raise HTTPException(status_code=404, detail="Recipient not found")

    stored = notify(db, hub, **notification.model_dump())
    if stored is None:
        raise HTTPException(status_code=500, detail="Failed to store notification")

    logger.info(f"Admin {admin.id} sent notification {stored.id} to user {notification.recipient_id}")
    return stored


@router.patch("/read-all")
def mark_all_read(
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    updated = (
        db.query(models.Notification)
        .filter(models.Notification.recipient_id == current_user.id, models.Notification.read.is_(False))
        .update({models.Notification.read: True}, synchronize_session=False)
    )
    db.commit()

    hub.emit(user_room(current_user.id), "notification:read", {"all": True})
    logger.info(f"User {current_user.id} marked {updated} notifications as read")
    return {"message": "All notifications marked as read", "updated": updated}


@router.patch("/{notification_id}/read", response_model=schemas.Notification)
def mark_read(
    notification_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    notification = require_notification(db, notification_id, current_user)
    if not notification.read:
        notification.read = True
        db.commit()
        db.refresh(notification)
        hub.emit(user_room(current_user.id), "notification:read", {"id": notification_id})
    return notification


@router.delete("/{notification_id}")
def delete_notification(
    notification_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    notification = require_notification(db, notification_id, current_user)
    db.delete(notification)
    db.commit()

    logger.info(f"Notification {notification_id} deleted by user {current_user.id}")
    return {"message": "Notification deleted"}
