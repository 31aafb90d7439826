from .base import Base, TimestampMixin, utcnow
from .session import (
    SESSION_ID_PATTERN,
    ChatMessage,
    ChatSession,
    is_valid_session_id,
    new_session_id,
)

__all__ = [
    "Base",
    "ChatMessage",
    "ChatSession",
    "SESSION_ID_PATTERN",
    "TimestampMixin",
    "is_valid_session_id",
    "new_session_id",
    "utcnow",
]
