from __future__ import annotations

from typing import Iterable, Optional

from dragonchat.settings import settings

TITLE_MAX_CHARS = 50


def derive_title(messages: Iterable, default: Optional[str] = None) -> str:
    """
    Session title from the first user message: its first 50 characters,
    with ``...`` appended when it was cut.
    """
    fallback = default or settings.default_session_title
    for msg in messages:
        if getattr(msg, "role", None) != "user":
            continue
        text = " ".join((getattr(msg, "content", None) or "").split())
        if not text:
            return fallback
        if len(text) > TITLE_MAX_CHARS:
            return text[:TITLE_MAX_CHARS] + "..."
        return text
    return fallback


__all__ = ["TITLE_MAX_CHARS", "derive_title"]
