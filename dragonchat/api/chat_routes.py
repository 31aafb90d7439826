from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from dragonchat.auth import AuthenticatedUser, require_user
from dragonchat.chat.orchestrator import ChatOrchestrator
from dragonchat.chat.sse import SSE_HEADERS
from dragonchat.deps import get_db, get_model_registry, get_orchestrator
from dragonchat.errors import ErrorResponse
from dragonchat.provider.registry import ModelRegistry
from dragonchat.schemas import ChatRequest, ProvidersResponse

router = APIRouter(
    prefix="/api/chat",
    tags=["chat"],
    dependencies=[Depends(require_user)],
)


@router.get("/models", response_model=ProvidersResponse)
async def list_models_endpoint(
    registry: ModelRegistry = Depends(get_model_registry),
) -> ProvidersResponse:
    """
    Providers and their models as configured in ``AI_PROVIDERS_CONFIG``.
    """
    return ProvidersResponse.model_validate({"providers": registry.list_providers()})


@router.post(
    "",
    response_class=StreamingResponse,
    responses={
        200: {"content": {"text/event-stream": {}}},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def chat_endpoint(
    payload: ChatRequest,
    db: Session = Depends(get_db),
    current_user: AuthenticatedUser = Depends(require_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """
    Stream one assistant reply as server-sent events.

    Frames: ``{"sessionId"}`` first, then ``{"chunk"}`` per fragment, and
    ``[DONE]`` last. A provider failure after the stream has started is sent
    as an ``{"error"}`` frame followed by ``[DONE]``.
    """
    prepared = orchestrator.prepare(payload, current_user.id, db)
    return StreamingResponse(
        orchestrator.stream(prepared),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


__all__ = ["router"]
