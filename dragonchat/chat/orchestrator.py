"""
Streaming chat orchestration.

A turn runs in two phases. ``prepare`` validates the request, resolves the
model and the session, and reconciles the transcript; any failure there is
an ordinary JSON error because nothing has been streamed yet. ``stream``
then produces the SSE frames: the session id, the model's text fragments
and the terminal ``[DONE]``. Provider failures after that point are
reported in-band. The transcript is committed by the background persister
once the reply is complete, or when the client goes away mid-reply.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from redis.asyncio import Redis
from sqlalchemy.orm import Session

from dragonchat.errors import ProviderError, ValidationError
from dragonchat.logging_config import logger
from dragonchat.provider.base import SDKDriver
from dragonchat.provider.key_pool import (
    acquire_provider_key,
    record_key_failure,
    record_key_success,
)
from dragonchat.provider.registry import ModelRegistry, ProviderEntry, ProviderModelEntry
from dragonchat.provider.sdk_selector import get_sdk_driver
from dragonchat.schemas.chat import ChatMessageIn, ChatRequest
from dragonchat.settings import settings
from dragonchat.storage import StorageGateway

from . import sse
from .context import build_provider_messages, trim_to_context
from .persistence import ChatPersister
from .reconciler import Reconciliation, TranscriptMessage, reconcile
from .session_store import SessionStore
from .title import derive_title

VALID_ROLES = ("user", "assistant")


class ChatState(str, enum.Enum):
    VALIDATING = "validating"
    SESSION_RESOLVING = "session_resolving"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class PreparedChat:
    user_id: str
    session_id: str
    created_session: bool
    entry: ProviderModelEntry
    provider: ProviderEntry
    stored: List[TranscriptMessage]
    reconciliation: Reconciliation
    state: ChatState = ChatState.SESSION_RESOLVING

    @property
    def delta(self) -> List[TranscriptMessage]:
        return self.reconciliation.delta

    @property
    def context(self) -> List[TranscriptMessage]:
        return [*self.stored, *self.reconciliation.delta]


def _to_transcript(message: ChatMessageIn) -> TranscriptMessage:
    return TranscriptMessage(
        role=message.role or "",
        content=message.content or "",
        attachments=tuple(a.to_storage_dict() for a in message.attachments),
    )


def validate_messages(messages: Optional[List[ChatMessageIn]]) -> List[TranscriptMessage]:
    if not messages:
        raise ValidationError("messages array is required and must not be empty")
    for msg in messages:
        if msg.role not in VALID_ROLES:
            raise ValidationError('Message role must be "user" or "assistant"')
        if not (msg.content or "").strip() and not msg.attachments:
            raise ValidationError("Each message must have content or at least one attachment")
    if messages[-1].role != "user":
        raise ValidationError("The last message must be a user message")
    return [_to_transcript(m) for m in messages]


class ChatOrchestrator:
    def __init__(
        self,
        *,
        registry: ModelRegistry,
        storage: StorageGateway,
        persister: ChatPersister,
        redis: Optional[Redis] = None,
        system_prompt: Optional[str] = None,
        driver_for: Callable[[ProviderEntry], SDKDriver] = get_sdk_driver,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.persister = persister
        self.redis = redis
        self.system_prompt = system_prompt if system_prompt is not None else settings.chat_system_prompt
        self.driver_for = driver_for

    def prepare(self, request: ChatRequest, user_id: str, db: Session) -> PreparedChat:
        """
        Validate and resolve everything the stream needs. Raises
        ``ValidationError`` / ``NotFoundError`` before any output exists.
        """
        incoming = validate_messages(request.messages)
        entry = self.registry.resolve(request.model)
        provider = self.registry.get_provider(entry.provider_id)
        if provider is None:  # pragma: no cover - registry invariant
            raise ValidationError("Invalid model specified or no models configured")

        store = SessionStore(db)
        if request.session_id:
            session, stored = store.load_transcript(request.session_id, user_id)
            created = False
        else:
            session = store.create(user_id, title=derive_title(incoming), model=entry.key)
            stored = []
            created = True
            logger.info("Created session %s for user %s", session.id, user_id)

        result = reconcile(stored, incoming, session_id=session.id)
        # The stream does not use the request session; release its connection.
        db.commit()
        return PreparedChat(
            user_id=user_id,
            session_id=session.id,
            created_session=created,
            entry=entry,
            provider=provider,
            stored=stored,
            reconciliation=result,
        )

    def _persist(self, prepared: PreparedChat, reply: str, status: ChatState) -> None:
        batch = list(prepared.delta)
        if reply:
            batch.append(
                TranscriptMessage(
                    role="assistant",
                    content=reply,
                    metadata={"model": prepared.entry.key, "status": status.value},
                )
            )
        self.persister.submit(
            prepared.session_id, prepared.user_id, batch, model=prepared.entry.key
        )

    async def stream(self, prepared: PreparedChat) -> AsyncIterator[bytes]:
        entry = prepared.entry
        prepared.state = ChatState.STREAMING
        pieces: List[str] = []
        upstream: Optional[AsyncIterator[str]] = None
        try:
            yield sse.session_frame(prepared.session_id)
            context = trim_to_context(prepared.context, entry, system_prompt=self.system_prompt)
            provider_messages = await build_provider_messages(
                context, entry, storage=self.storage, owner_id=prepared.user_id
            )
            driver = self.driver_for(prepared.provider)
            selection = await acquire_provider_key(prepared.provider, self.redis)
            upstream = driver.stream_completion(
                api_key=selection.key,
                model_id=entry.model_id,
                messages=provider_messages,
                system_prompt=self.system_prompt,
                base_url=prepared.provider.base_url,
                max_output_tokens=entry.capabilities.max_output_tokens,
            )
            try:
                async for text in upstream:
                    if not text:
                        continue
                    pieces.append(text)
                    yield sse.chunk_frame(text)
            except ProviderError as exc:
                record_key_failure(selection, status_code=exc.upstream_status, redis=self.redis)
                raise
            record_key_success(selection, redis=self.redis)
            prepared.state = ChatState.COMPLETED
        except ProviderError as exc:
            prepared.state = ChatState.FAILED
            logger.warning(
                "Chat stream failed: session=%s model=%s error=%s",
                prepared.session_id,
                entry.key,
                exc.message,
            )
            yield sse.error_frame(exc.message)
            yield sse.DONE_FRAME
            return
        except Exception:
            prepared.state = ChatState.FAILED
            logger.exception(
                "Unexpected error while streaming session=%s model=%s",
                prepared.session_id,
                entry.key,
            )
            yield sse.error_frame("Internal server error")
            yield sse.DONE_FRAME
            return
        finally:
            if prepared.state is ChatState.STREAMING:
                # Still streaming means the consumer went away.
                prepared.state = ChatState.INTERRUPTED
                logger.info(
                    "Client disconnected: session=%s model=%s partial_chars=%d",
                    prepared.session_id,
                    entry.key,
                    sum(len(p) for p in pieces),
                )
                self._persist(prepared, "".join(pieces), ChatState.INTERRUPTED)
                if upstream is not None:
                    await upstream.aclose()

        self._persist(prepared, "".join(pieces), ChatState.COMPLETED)
        yield sse.DONE_FRAME


__all__ = ["ChatOrchestrator", "ChatState", "PreparedChat", "validate_messages"]
