import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload, selectinload

from database import get_db
import models
import schemas
from activity import record_activity
from auth.dependencies import get_current_user
from auth.permissions import Action, require_chat, require_message
from realtime import RoomHub, chat_room, get_hub, user_room
from schemas import ActivityAction
from storage import IMAGE_MIME_TYPES, delete_stored_file, require_content_length, save_upload_file
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chats"])

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _load_chat(db: Session, chat_id: int) -> models.Chat:
    return (
        db.query(models.Chat)
        .options(joinedload(models.Chat.members).joinedload(models.ChatUser.user))
        .filter(models.Chat.id == chat_id)
        .first()
    )


def _membership(db: Session, chat_id: int, user_id: str) -> Optional[models.ChatUser]:
    return (
        db.query(models.ChatUser)
        .filter(models.ChatUser.chat_id == chat_id, models.ChatUser.user_id == user_id)
        .first()
    )


def _unread_count(db: Session, membership: models.ChatUser) -> int:
    """Messages from other members newer than the member's last read mark."""
    query = db.query(func.count(models.Message.id)).filter(
        models.Message.chat_id == membership.chat_id,
        models.Message.author_id != membership.user_id,
    )
    if membership.last_read_at is not None:
        query = query.filter(models.Message.created_at > membership.last_read_at)
    return query.scalar()


def _summarize(db: Session, chat: models.Chat, membership: models.ChatUser) -> schemas.ChatSummary:
    summary = schemas.ChatSummary.model_validate(chat)
    last_message = (
        db.query(models.Message)
        .filter(models.Message.chat_id == chat.id)
        .order_by(models.Message.created_at.desc(), models.Message.id.desc())
        .first()
    )
    if last_message is not None:
        summary.last_message = schemas.Message.model_validate(last_message)
    summary.unread_count = _unread_count(db, membership)
    return summary


def _activity_time(summary: schemas.ChatSummary) -> datetime:
    """Sort key: time of the last message, falling back to chat creation."""
    if summary.last_message is not None and summary.last_message.created_at:
        return ensure_utc(summary.last_message.created_at)
    return ensure_utc(summary.created_at) or EPOCH


def _mark_read(db: Session, chat_id: int, user_id: str) -> None:
    membership = _membership(db, chat_id, user_id)
    if membership is not None:
        membership.last_read_at = utc_now()
        db.commit()


def _store_message(db: Session, db_message: models.Message) -> models.Message:
    """
    Persist a new message from a chat member.

    The sender has read everything up to their own message, and the send is
    recorded as message_sent activity.
    """
    db.add(db_message)
    db.flush()

    membership = _membership(db, db_message.chat_id, db_message.author_id)
    membership.last_read_at = db_message.created_at
    db.commit()
    db.refresh(db_message)

    record_activity(db, db_message.author_id, ActivityAction.message_sent,
                    {"chat_id": db_message.chat_id, "message_id": db_message.id})
    return db_message


@router.post("/api/chats", response_model=schemas.Chat, status_code=201)
def create_chat(
    chat: schemas.ChatCreate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Create a direct chat (exactly one other user) or a group chat."""
    user_ids = [uid for uid in dict.fromkeys(chat.user_ids) if uid != current_user.id]
    if not chat.is_group and len(user_ids) != 1:
        raise HTTPException(status_code=400, detail="A direct chat needs exactly one other user")

    found = {u.id for u in db.query(models.User.id).filter(models.User.id.in_(user_ids)).all()}
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        raise HTTPException(status_code=404, detail=f"User not found: {', '.join(missing)}")

    db_chat = models.Chat(name=chat.name, is_group=chat.is_group, owner_id=current_user.id)
    db.add(db_chat)
    db.flush()

    db.add(models.ChatUser(chat_id=db_chat.id, user_id=current_user.id, role=models.ChatRole.admin))
    for user_id in user_ids:
        db.add(models.ChatUser(chat_id=db_chat.id, user_id=user_id, role=models.ChatRole.member))
    db.commit()

    created = _load_chat(db, db_chat.id)
    payload = schemas.Chat.model_validate(created)
    for user_id in user_ids:
        hub.emit(user_room(user_id), "chat:created", payload)
    record_activity(db, current_user.id, ActivityAction.chat_created, {"chat_id": db_chat.id})

    logger.info(f"Chat {db_chat.id} created by user {current_user.id} with {len(user_ids)} members")
    return created


@router.get("/api/chats", response_model=List[schemas.ChatSummary])
def list_chats(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Chats the user belongs to, with last message and unread count."""
    memberships = (
        db.query(models.ChatUser)
        .filter(models.ChatUser.user_id == current_user.id)
        .options(joinedload(models.ChatUser.chat).selectinload(models.Chat.members))
        .all()
    )

    summaries = [_summarize(db, m.chat, m) for m in memberships]
    summaries.sort(key=_activity_time, reverse=True)
    return summaries


@router.get("/api/chats/{chat_id}", response_model=schemas.ChatSummary)
def get_chat(
    chat_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    require_chat(db, chat_id, current_user)
    return _summarize(db, _load_chat(db, chat_id), _membership(db, chat_id, current_user.id))


@router.delete("/api/chats/{chat_id}")
def delete_chat(
    chat_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a chat with its members and messages (owner only)."""
    chat = require_chat(db, chat_id, current_user, Action.delete)
    file_paths = [f.path for message in chat.messages for f in message.files]

    db.delete(chat)
    db.commit()

    for path in file_paths:
        delete_stored_file(path)

    hub.emit(chat_room(chat_id), "chat:deleted", {"id": chat_id})
    hub.close_room(chat_room(chat_id))
    logger.info(f"Chat {chat_id} deleted by user {current_user.id}")
    return {"message": "Chat deleted"}


@router.post("/api/chats/{chat_id}/read", response_model=schemas.ChatSummary)
def mark_chat_read(
    chat_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    require_chat(db, chat_id, current_user)
    _mark_read(db, chat_id, current_user.id)
    return _summarize(db, _load_chat(db, chat_id), _membership(db, chat_id, current_user.id))


# ============== Members ==============

@router.post("/api/chats/{chat_id}/users", response_model=schemas.Chat, status_code=201)
def add_chat_user(
    chat_id: int,
    new_user: schemas.ChatUserAdd,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Add a user to a group chat (chat admins only)."""
    chat = require_chat(db, chat_id, current_user, Action.add_member)
    if not chat.is_group:
        raise HTTPException(status_code=400, detail="Cannot add users to a direct chat")

    if not db.query(models.User).filter(models.User.id == new_user.user_id).first():
        raise HTTPException(status_code=404, detail="User not found")
    if _membership(db, chat_id, new_user.user_id):
        raise HTTPException(status_code=409, detail="User is already in this chat")

    db.add(models.ChatUser(chat_id=chat_id, user_id=new_user.user_id, role=new_user.role))
    db.commit()

    updated = _load_chat(db, chat_id)
    payload = schemas.Chat.model_validate(updated)
    hub.emit(chat_room(chat_id), "chat:user:added", {"chat_id": chat_id, "user_id": new_user.user_id})
    hub.emit(user_room(new_user.user_id), "chat:created", payload)

    logger.info(f"User {new_user.user_id} added to chat {chat_id} by {current_user.id}")
    return updated


@router.delete("/api/chats/{chat_id}/users/{user_id}")
def remove_chat_user(
    chat_id: int,
    user_id: str,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Remove a user from a chat (chat admins, or users removing themselves)."""
    require_chat(db, chat_id, current_user, Action.remove_member, target_user_id=user_id)

    membership = _membership(db, chat_id, user_id)
    if not membership:
        raise HTTPException(status_code=404, detail="User is not in this chat")

    db.delete(membership)
    db.commit()

    hub.emit(chat_room(chat_id), "chat:user:removed", {"chat_id": chat_id, "user_id": user_id})
    hub.evict(chat_room(chat_id), user_id)
    logger.info(f"User {user_id} removed from chat {chat_id} by {current_user.id}")
    return {"message": "User removed from chat"}


# ============== Messages ==============

@router.get("/api/chats/{chat_id}/messages", response_model=List[schemas.Message])
def list_messages(
    chat_id: int,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[datetime] = Query(None),
    after: Optional[datetime] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Most recent messages (newest first); reading marks the chat as read."""
    require_chat(db, chat_id, current_user)

    query = (
        db.query(models.Message)
        .filter(models.Message.chat_id == chat_id)
        .options(joinedload(models.Message.author), selectinload(models.Message.files))
    )
    if before is not None:
        query = query.filter(models.Message.created_at < before)
    if after is not None:
        query = query.filter(models.Message.created_at > after)

    messages = query.order_by(models.Message.created_at.desc(), models.Message.id.desc()).limit(limit).all()
    result = [schemas.Message.model_validate(m) for m in messages]

    _mark_read(db, chat_id, current_user.id)
    return result


@router.post("/api/chats/{chat_id}/messages", response_model=schemas.Message, status_code=201)
def send_message(
    chat_id: int,
    message: schemas.MessageCreate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Post a message to a chat (members only)."""
    require_chat(db, chat_id, current_user, Action.send)

    if message.reply_to_id is not None:
        original = (
            db.query(models.Message)
            .filter(models.Message.id == message.reply_to_id, models.Message.chat_id == chat_id)
            .first()
        )
        if not original:
            raise HTTPException(status_code=400, detail="Replied-to message is not in this chat")

    db_message = _store_message(
        db, models.Message(chat_id=chat_id, author_id=current_user.id, **message.model_dump())
    )

    payload = schemas.Message.model_validate(db_message)
    hub.emit(chat_room(chat_id), "chat:message:new", payload)

    logger.info(f"Message {db_message.id} sent to chat {chat_id} by user {current_user.id}")
    return payload


@router.put("/api/chats/{chat_id}/messages/{message_id}", response_model=schemas.Message)
def edit_message(
    chat_id: int,
    message_id: int,
    message_update: schemas.MessageUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Edit a message (author only)."""
    chat = require_chat(db, chat_id, current_user)
    db_message = require_message(db, chat, message_id, current_user, Action.update)

    db_message.content = message_update.content
    db_message.edited = True
    db_message.edited_at = utc_now()
    db.commit()
    db.refresh(db_message)

    payload = schemas.Message.model_validate(db_message)
    hub.emit(chat_room(chat_id), "chat:message:edit", payload)
    logger.info(f"Message {message_id} edited by user {current_user.id}")
    return payload


@router.delete("/api/chats/{chat_id}/messages/{message_id}")
def delete_message(
    chat_id: int,
    message_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a message and its files (author only)."""
    chat = require_chat(db, chat_id, current_user)
    db_message = require_message(db, chat, message_id, current_user, Action.delete)
    file_paths = [f.path for f in db_message.files]

    db.delete(db_message)
    db.commit()

    for path in file_paths:
        delete_stored_file(path)

    hub.emit(chat_room(chat_id), "chat:message:delete", {"chat_id": chat_id, "message_id": message_id})
    logger.info(f"Message {message_id} deleted by user {current_user.id}")
    return {"message": "Message deleted"}


# ============== Files ==============

@router.post("/api/chats/{chat_id}/files", response_model=schemas.Message, status_code=201)
async def upload_chat_file(
    chat_id: int,
    request: Request,
    file: UploadFile = File(...),
    content: Optional[str] = Form(None),
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Send a file as a chat message."""
    require_content_length(request)
    require_chat(db, chat_id, current_user, Action.send)

    stored = await save_upload_file("chats", chat_id, file)
    message_type = models.MessageType.image if stored.mime_type in IMAGE_MIME_TYPES else models.MessageType.file

    db_message = models.Message(
        chat_id=chat_id,
        author_id=current_user.id,
        content=content,
        message_type=message_type,
    )
    db_message.files.append(
        models.MessageFile(name=stored.name, path=stored.path, size=stored.size, mime_type=stored.mime_type)
    )
    _store_message(db, db_message)

    payload = schemas.Message.model_validate(db_message)
    hub.emit(chat_room(chat_id), "chat:file:uploaded", payload)
    logger.info(f"File {stored.name} uploaded to chat {chat_id} by user {current_user.id}")
    return payload


@router.delete("/api/chats/{chat_id}/files/{file_id}")
def delete_chat_file(
    chat_id: int,
    file_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a file from a chat message (message author only)."""
    chat = require_chat(db, chat_id, current_user)

    record = (
        db.query(models.MessageFile)
        .join(models.Message, models.Message.id == models.MessageFile.message_id)
        .filter(models.MessageFile.id == file_id, models.Message.chat_id == chat_id)
        .first()
    )
    if not record:
        raise HTTPException(status_code=404, detail="File not found")
    require_message(db, chat, record.message_id, current_user, Action.delete)

    message_id, path = record.message_id, record.path
    db.delete(record)
    db.commit()
    delete_stored_file(path)

    hub.emit(chat_room(chat_id), "chat:file:deleted",
             {"chat_id": chat_id, "message_id": message_id, "file_id": file_id})
    logger.info(f"File {file_id} deleted from chat {chat_id} by user {current_user.id}")
    return {"message": "File deleted"}
