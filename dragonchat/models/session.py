from __future__ import annotations

import os
import re
import time
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, relationship

from .base import Base, TimestampMixin, utcnow

SESSION_ID_PATTERN = re.compile(r"^[0-9a-f]{24}$")


def new_session_id() -> str:
    """
    24 hex characters: 4-byte big-endian seconds followed by 8 random bytes,
    so ids sort roughly by creation time.
    """
    return f"{int(time.time()) & 0xFFFFFFFF:08x}{os.urandom(8).hex()}"


def is_valid_session_id(value: object) -> bool:
    return isinstance(value, str) and bool(SESSION_ID_PATTERN.match(value))


class ChatSession(TimestampMixin, Base):
    """One conversation owned by one user."""

    __tablename__ = "chat_sessions"
    __table_args__ = (Index("ix_chat_sessions_user_updated", "user_id", "updated_at"),)

    id: Mapped[str] = Column(String(24), primary_key=True, default=new_session_id)
    user_id: Mapped[str] = Column(String(255), nullable=False, index=True)
    title: Mapped[str] = Column(String(200), nullable=False, default="New Chat")
    model: Mapped[str] = Column(String(255), nullable=False, default="")

    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ChatMessage.id",
    )


class ChatMessage(Base):
    """
    One turn. Ordered by the autoincrement id; rows are only ever inserted.
    """

    __tablename__ = "chat_messages"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = Column(
        String(24),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = Column(String(16), nullable=False)
    content: Mapped[str] = Column(Text, nullable=False, default="")
    attachments = Column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes.
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    session = relationship("ChatSession", back_populates="messages")


__all__ = [
    "ChatMessage",
    "ChatSession",
    "SESSION_ID_PATTERN",
    "is_valid_session_id",
    "new_session_id",
]
