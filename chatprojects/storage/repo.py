# chatprojects/storage/repo.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from chatprojects.storage.database import SessionLocal, engine
from chatprojects.storage.models import CHAT_MODES, MESSAGE_ROLES, Base, Chat, Message
from chatprojects.utils.tokens import approx_tokens

log = logging.getLogger("app.storage")

Base.metadata.create_all(engine)


class MessageStoreError(ValueError):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    with SessionLocal() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


# ---------------- Chats ----------------

def create_chat(
    *,
    user_id: int,
    mode: str,
    provider: str,
    model: Optional[str] = None,
    project_id: Optional[int] = None,
    title: Optional[str] = None,
    instructions: Optional[str] = None,
) -> Chat:
    if mode not in CHAT_MODES:
        raise MessageStoreError(f"Invalid chat mode: {mode}")
    now = datetime.utcnow()
    chat = Chat(
        user_id=user_id,
        mode=mode,
        provider=provider,
        model=model,
        project_id=project_id,
        title=title,
        instructions=instructions,
        message_count=0,
        created_at=now,
        updated_at=now,
    )
    with session_scope() as s:
        s.add(chat)
    return chat


def get_chat(chat_id: int) -> Optional[Chat]:
    with session_scope() as s:
        return s.get(Chat, chat_id)


def get_user_chat(chat_id: int, user_id: int) -> Optional[Chat]:
    chat = get_chat(chat_id)
    if chat is None or chat.user_id != user_id:
        return None
    return chat


def list_chats(user_id: int, mode: Optional[str] = None, project_id: Optional[int] = None) -> List[Chat]:
    with session_scope() as s:
        q = s.query(Chat).filter(Chat.user_id == user_id)
        if mode:
            q = q.filter(Chat.mode == mode)
        if project_id is not None:
            q = q.filter(Chat.project_id == project_id)
        return q.order_by(Chat.updated_at.desc(), Chat.id.desc()).all()


def update_chat_title(chat_id: int, title: str) -> bool:
    with session_scope() as s:
        chat = s.get(Chat, chat_id)
        if chat is None:
            return False
        chat.title = title
        chat.updated_at = datetime.utcnow()
    return True


def delete_chat(chat_id: int) -> bool:
    # Messages go first so no rows outlive their chat
    with session_scope() as s:
        chat = s.get(Chat, chat_id)
        if chat is None:
            return False
        removed = s.query(Message).filter(Message.chat_id == chat_id).delete(synchronize_session=False)
        s.expire(chat, ["messages"])
        s.delete(chat)
    log.info({"event": "chat_deleted", "chat_id": chat_id, "messages": removed})
    return True


# ---------------- Messages ----------------

def _refresh_chat_stats(s: Session, chat_id: int) -> int:
    count = s.query(func.count(Message.id)).filter(Message.chat_id == chat_id).scalar() or 0
    chat = s.get(Chat, chat_id)
    if chat is not None:
        chat.message_count = count
        chat.updated_at = datetime.utcnow()
    return count


def save_message(chat_id: int, role: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
    if role not in MESSAGE_ROLES:
        raise MessageStoreError(f"Invalid message role: {role}")
    if not content or not content.strip():
        raise MessageStoreError("Message content cannot be empty.")
    with session_scope() as s:
        if s.get(Chat, chat_id) is None:
            raise MessageStoreError(f"Chat {chat_id} not found.")
        msg = Message(chat_id=chat_id, role=role, content=content, meta=metadata or None, created_at=datetime.utcnow())
        s.add(msg)
        s.flush()
        _refresh_chat_stats(s, chat_id)
    return msg


def get_messages(chat_id: int, limit: int = 0, offset: int = 0) -> List[Message]:
    with session_scope() as s:
        q = s.query(Message).filter(Message.chat_id == chat_id).order_by(Message.created_at.asc(), Message.id.asc())
        if offset:
            q = q.offset(offset)
        if limit:
            q = q.limit(limit)
        return q.all()


def get_recent_messages(chat_id: int, limit: int = 20) -> List[Message]:
    """Newest ``limit`` messages, returned oldest-first."""
    with session_scope() as s:
        rows = (
            s.query(Message)
            .filter(Message.chat_id == chat_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
    rows.reverse()
    return rows


def get_messages_for_api(chat_id: int, limit: int = 20, instructions: Optional[str] = None) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if instructions:
        out.append({"role": "system", "content": instructions})
    for m in get_recent_messages(chat_id, limit):
        if m.role == "system":
            continue
        out.append({"role": m.role, "content": m.content})
    return out


def get_messages_within_token_limit(chat_id: int, max_tokens: int = 8000) -> List[Message]:
    picked: List[Message] = []
    used = 0
    with session_scope() as s:
        rows = (
            s.query(Message)
            .filter(Message.chat_id == chat_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .all()
        )
    for m in rows:
        cost = approx_tokens(m.content)
        if used + cost > max_tokens:
            break
        used += cost
        picked.append(m)
    picked.reverse()
    return picked


def count_messages(chat_id: int) -> int:
    with session_scope() as s:
        return s.query(func.count(Message.id)).filter(Message.chat_id == chat_id).scalar() or 0


def get_last_message(chat_id: int, role: Optional[str] = None) -> Optional[Message]:
    with session_scope() as s:
        q = s.query(Message).filter(Message.chat_id == chat_id)
        if role:
            q = q.filter(Message.role == role)
        return q.order_by(Message.created_at.desc(), Message.id.desc()).first()


def delete_message(message_id: int) -> bool:
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None:
            return False
        chat_id = msg.chat_id
        s.delete(msg)
        s.flush()
        _refresh_chat_stats(s, chat_id)
    return True


def delete_chat_messages(chat_id: int) -> int:
    with session_scope() as s:
        removed = s.query(Message).filter(Message.chat_id == chat_id).delete(synchronize_session=False)
        _refresh_chat_stats(s, chat_id)
    return removed


def search_messages(chat_id: int, query: str, limit: int = 50) -> List[Message]:
    if not query:
        return []
    with session_scope() as s:
        return (
            s.query(Message)
            .filter(Message.chat_id == chat_id)
            .filter(func.lower(Message.content).contains(query.lower(), autoescape=True))
            .order_by(Message.created_at.asc(), Message.id.asc())
            .limit(limit)
            .all()
        )
