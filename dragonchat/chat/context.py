"""
Provider context assembly: trim the transcript to the model's context
window and turn attachment references into provider-ready content.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from dragonchat.logging_config import logger
from dragonchat.provider.base import ProviderMessage, ResolvedAttachment
from dragonchat.provider.registry import ProviderModelEntry
from dragonchat.settings import settings
from dragonchat.storage import StorageGateway

from .reconciler import TranscriptMessage

# Rough chars-per-token ratio; good enough to stay under the window.
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
ATTACHMENT_TOKENS = 258
TEXT_ATTACHMENT_MAX_CHARS = 100_000

_TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/csv",
    "application/x-yaml",
}


def estimate_tokens(message: TranscriptMessage) -> int:
    return (
        MESSAGE_OVERHEAD_TOKENS
        + len(message.content) // CHARS_PER_TOKEN
        + ATTACHMENT_TOKENS * len(message.attachments)
    )


def trim_to_context(
    messages: Sequence[TranscriptMessage],
    entry: ProviderModelEntry,
    *,
    system_prompt: Optional[str] = None,
) -> List[TranscriptMessage]:
    """
    Drop the oldest turns until the transcript fits the model's context
    window. The final message (the turn being answered) is always kept.
    """
    if not messages:
        return []
    max_context = entry.capabilities.max_context
    if not max_context:
        return list(messages)

    budget = max_context - entry.capabilities.max_output_tokens
    if system_prompt:
        budget -= len(system_prompt) // CHARS_PER_TOKEN

    kept: List[TranscriptMessage] = [messages[-1]]
    used = estimate_tokens(messages[-1])
    for msg in reversed(messages[:-1]):
        cost = estimate_tokens(msg)
        if used + cost > budget:
            break
        kept.append(msg)
        used += cost
    kept.reverse()

    # Providers expect the conversation to open with a user turn.
    while len(kept) > 1 and kept[0].role != "user":
        kept.pop(0)

    if len(kept) < len(messages):
        logger.info(
            "Trimmed context for %s from %d to %d messages (~%d tokens)",
            entry.key,
            len(messages),
            len(kept),
            used,
        )
    return kept


def _is_text_type(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in _TEXT_MIME_TYPES


class AttachmentResolver:
    """
    Resolves attachments for one request; each file is fetched at most once.
    """

    def __init__(self, storage: StorageGateway, owner_id: str, *, inline: bool) -> None:
        self.storage = storage
        self.owner_id = owner_id
        self.inline = inline
        self._cache: Dict[str, Tuple[bytes, str]] = {}

    async def _fetch(self, file_id: str, declared_type: str) -> Tuple[bytes, str]:
        if file_id not in self._cache:
            data, mime = await self.storage.fetch(file_id, self.owner_id)
            self._cache[file_id] = (data, mime or declared_type)
        return self._cache[file_id]

    async def resolve(self, attachment: dict) -> ResolvedAttachment:
        file_id = str(attachment.get("fileId") or "")
        name = str(attachment.get("fileName") or file_id)
        declared_type = str(attachment.get("fileType") or "application/octet-stream")
        size = int(attachment.get("fileSize") or 0)

        if self.inline and size <= settings.max_attachment_bytes:
            data, mime = await self._fetch(file_id, declared_type)
            return ResolvedAttachment(file_id=file_id, name=name, mime_type=mime, data=data)

        if _is_text_type(declared_type) and size <= settings.max_attachment_bytes:
            data, mime = await self._fetch(file_id, declared_type)
            text = data.decode("utf-8", errors="replace")[:TEXT_ATTACHMENT_MAX_CHARS]
            return ResolvedAttachment(file_id=file_id, name=name, mime_type=mime, text=text)

        return ResolvedAttachment(file_id=file_id, name=name, mime_type=declared_type)


async def build_provider_messages(
    messages: Sequence[TranscriptMessage],
    entry: ProviderModelEntry,
    *,
    storage: StorageGateway,
    owner_id: str,
) -> List[ProviderMessage]:
    resolver = AttachmentResolver(storage, owner_id, inline=entry.capabilities.vision)
    out: List[ProviderMessage] = []
    for msg in messages:
        attachments = [await resolver.resolve(a) for a in msg.attachments]
        out.append(ProviderMessage(role=msg.role, text=msg.content, attachments=tuple(attachments)))
    return out


__all__ = [
    "AttachmentResolver",
    "build_provider_messages",
    "estimate_tokens",
    "trim_to_context",
]
