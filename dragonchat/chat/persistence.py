"""
Detached transcript persistence.

The chat stream hands finished (or interrupted) turns to the persister and
moves on; the write happens in a background task with its own database
session so that neither the client's disconnect nor the end of the request
can cancel it. A failed write leaves the stored history behind the client's
copy until the next turn re-sends it.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Sequence, Set

from sqlalchemy.orm import Session

from dragonchat.db import SessionLocal
from dragonchat.errors import PersistenceError
from dragonchat.logging_config import logger

from .reconciler import TranscriptMessage
from .session_store import SessionStore


class ChatPersister:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0
        self.completed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        session_id: str,
        user_id: str,
        messages: Sequence[TranscriptMessage],
        *,
        model: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        if not messages:
            return None
        task = asyncio.create_task(
            self._run(session_id, user_id, list(messages), model),
            name=f"persist-session-{session_id}",
        )
        # Keep a strong reference until the task is done.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        session_id: str,
        user_id: str,
        messages: Sequence[TranscriptMessage],
        model: Optional[str],
    ) -> None:
        try:
            written = await asyncio.to_thread(self._write, session_id, user_id, messages, model)
        except PersistenceError as exc:
            self.failures += 1
            logger.error("Failed to persist chat turn for session %s: %s", session_id, exc.message, exc_info=True)
            return
        except Exception:
            self.failures += 1
            logger.exception("Unexpected error while persisting chat turn for session %s", session_id)
            return
        self.completed += 1
        logger.debug("Persisted %d message(s) to session %s", written, session_id)

    def _write(
        self,
        session_id: str,
        user_id: str,
        messages: Sequence[TranscriptMessage],
        model: Optional[str],
    ) -> int:
        db = self._session_factory()
        try:
            return SessionStore(db).append_messages(session_id, user_id, messages, model=model)
        finally:
            db.close()

    async def wait_idle(self) -> None:
        """Wait until every submitted write has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["ChatPersister"]
