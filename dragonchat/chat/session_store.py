"""
Session Store Gateway: ownership-scoped access to sessions and messages.

Every lookup filters by ``user_id``; a session that exists but belongs to
someone else is indistinguishable from one that does not exist.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from dragonchat.errors import NotFoundError, PersistenceError, ValidationError
from dragonchat.logging_config import logger
from dragonchat.models import ChatMessage, ChatSession, is_valid_session_id, utcnow
from dragonchat.settings import settings

from .reconciler import TranscriptMessage

SESSION_NOT_FOUND = "Session not found"
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 50


def to_transcript(message: ChatMessage) -> TranscriptMessage:
    return TranscriptMessage(
        role=message.role,
        content=message.content or "",
        attachments=tuple(message.attachments or ()),
        metadata=message.message_metadata,
    )


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


class SessionStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create(
        self, user_id: str, *, title: Optional[str] = None, model: Optional[str] = None
    ) -> ChatSession:
        session = ChatSession(
            user_id=user_id,
            title=(title or "").strip() or settings.default_session_title,
            model=model or "",
        )
        self.db.add(session)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(session)
        return session

    def get(self, session_id: str, user_id: str, *, with_messages: bool = False) -> ChatSession:
        if not is_valid_session_id(session_id):
            raise NotFoundError(SESSION_NOT_FOUND)
        stmt = select(ChatSession).where(
            ChatSession.id == session_id, ChatSession.user_id == user_id
        )
        if with_messages:
            stmt = stmt.options(selectinload(ChatSession.messages))
        session = self.db.execute(stmt).scalars().first()
        if session is None:
            raise NotFoundError(SESSION_NOT_FOUND)
        return session

    def load_transcript(self, session_id: str, user_id: str) -> Tuple[ChatSession, List[TranscriptMessage]]:
        session = self.get(session_id, user_id, with_messages=True)
        return session, [to_transcript(m) for m in session.messages]

    def append_messages(
        self,
        session_id: str,
        user_id: str,
        messages: Sequence[TranscriptMessage],
        *,
        model: Optional[str] = None,
    ) -> int:
        """
        Append ``messages`` in one transaction and bump ``updated_at``.
        Returns the number of rows written.
        """
        try:
            session = self.db.execute(
                select(ChatSession).where(
                    ChatSession.id == session_id, ChatSession.user_id == user_id
                )
            ).scalars().first()
            if session is None:
                raise PersistenceError(f"Session {session_id} no longer exists")

            for msg in messages:
                self.db.add(
                    ChatMessage(
                        session_id=session.id,
                        role=msg.role,
                        content=msg.content,
                        attachments=[dict(a) for a in msg.attachments],
                        message_metadata=msg.metadata,
                    )
                )
            if model:
                session.model = model
            session.updated_at = utcnow()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Failed to append messages to session {session_id}: {exc}") from exc
        return len(messages)

    def rename(self, session_id: str, user_id: str, title: Optional[str]) -> ChatSession:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title is required and must be a non-empty string")
        session = self.get(session_id, user_id)
        session.title = title.strip()[:200]
        session.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(session)
        return session

    def delete(self, session_id: str, user_id: str) -> None:
        session = self.get(session_id, user_id, with_messages=True)
        self.db.delete(session)
        self.db.commit()
        logger.info("Deleted session %s for user %s", session_id, user_id)

    def list_sessions(
        self, user_id: str, *, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT
    ) -> Tuple[List[ChatSession], int, int, int]:
        """
        Newest ``updated_at`` first. Returns (items, total, page, limit) with
        page and limit clamped.
        """
        page = max(1, int(page or 1))
        limit = min(MAX_PAGE_LIMIT, max(1, int(limit or DEFAULT_PAGE_LIMIT)))
        total = self.db.execute(
            select(func.count()).select_from(ChatSession).where(ChatSession.user_id == user_id)
        ).scalar_one()
        items = list(
            self.db.execute(
                select(ChatSession)
                .where(ChatSession.user_id == user_id)
                .order_by(ChatSession.updated_at.desc(), ChatSession.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
        )
        return items, int(total), page, limit


__all__ = [
    "DEFAULT_PAGE_LIMIT",
    "MAX_PAGE_LIMIT",
    "SESSION_NOT_FOUND",
    "SessionStore",
    "page_count",
    "to_transcript",
]
