from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from dragonchat.auth import AuthenticatedUser, require_user
from dragonchat.chat.session_store import DEFAULT_PAGE_LIMIT, SessionStore, page_count
from dragonchat.deps import get_db
from dragonchat.models import ChatSession
from dragonchat.schemas import (
    DeleteResponse,
    MessageRead,
    Pagination,
    SessionCreate,
    SessionListResponse,
    SessionRead,
    SessionRename,
    SessionRenamed,
    SessionSummary,
)

router = APIRouter(
    prefix="/api/sessions",
    tags=["sessions"],
    dependencies=[Depends(require_user)],
)


def _summary(session: ChatSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        title=session.title,
        model=session.model,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def _read(session: ChatSession, *, include_messages: bool = True) -> SessionRead:
    messages = []
    if include_messages:
        messages = [
            MessageRead(
                id=m.id,
                role=m.role,
                content=m.content,
                attachments=m.attachments or [],
                metadata=m.message_metadata,
                created_at=m.created_at,
            )
            for m in session.messages
        ]
    return SessionRead(**_summary(session).model_dump(), messages=messages)


@router.post("", response_model=SessionRead, status_code=status.HTTP_201_CREATED)
async def create_session_endpoint(
    payload: Optional[SessionCreate] = None,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(require_user),
) -> SessionRead:
    payload = payload or SessionCreate()
    session = SessionStore(db).create(current_user.id, title=payload.title, model=payload.model)
    return _read(session, include_messages=False)


@router.get("", response_model=SessionListResponse)
async def list_sessions_endpoint(
    page: int = Query(1),
    limit: int = Query(DEFAULT_PAGE_LIMIT),
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(require_user),
) -> SessionListResponse:
    """
    The caller's sessions, most recently updated first. ``limit`` is
    clamped to 1..50.
    """
    items, total, page, limit = SessionStore(db).list_sessions(
        current_user.id, page=page, limit=limit
    )
    return SessionListResponse(
        sessions=[_summary(s) for s in items],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/{session_id}", response_model=SessionRead)
async def get_session_endpoint(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(require_user),
) -> SessionRead:
    session = SessionStore(db).get(session_id, current_user.id, with_messages=True)
    return _read(session)


@router.patch("/{session_id}", response_model=SessionRenamed)
async def rename_session_endpoint(
    session_id: str,
    payload: SessionRename,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(require_user),
) -> SessionRenamed:
    session = SessionStore(db).rename(session_id, current_user.id, payload.title)
    return SessionRenamed(id=session.id, title=session.title, updated_at=session.updated_at)


@router.delete("/{session_id}", response_model=DeleteResponse)
async def delete_session_endpoint(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(require_user),
) -> DeleteResponse:
    SessionStore(db).delete(session_id, current_user.id)
    return DeleteResponse()


__all__ = ["router"]
