# chatprojects/storage/models.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

CHAT_MODES = ("project", "general")
MESSAGE_ROLES = ("user", "assistant", "system")


class Chat(Base):
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mode = Column(String(16), nullable=False, default="project")
    provider = Column(String(32), nullable=False, default="openai")
    model = Column(String(128), nullable=True)
    project_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    title = Column(String(256), nullable=True)
    instructions = Column(Text, nullable=True)

    # Recounted by the message store after every write
    message_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("mode in ('project','general')", name="ck_chats_mode"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (
        CheckConstraint("role in ('user','assistant','system')", name="ck_messages_role"),
    )
