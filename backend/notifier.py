"""
User notifications: persisted rows plus a real-time push to the recipient.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from realtime import RoomHub, user_room

logger = logging.getLogger(__name__)


def notify(
    db: Session,
    hub: RoomHub,
    recipient_id: str,
    type: str,
    title: str,
    message: str,
    data: Optional[dict] = None,
) -> Optional[models.Notification]:
    """
    Persist a notification and push it to the recipient's personal room.

    Best-effort: a failed write is rolled back and logged, and the caller's
    operation continues. Returns the stored notification or None.
    """
    logger.debug(f"Notifying user {recipient_id}: type={type}")
    try:
        notification = models.Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            data=data or {},
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store notification for user {recipient_id}: {e}")
        return None

    hub.emit(
        user_room(recipient_id),
        "notification",
        schemas.Notification.model_validate(notification),
    )
    logger.info(f"Notification {notification.id} sent to user {recipient_id}")
    return notification
