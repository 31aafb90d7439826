"""
FastAPI dependencies. Tests swap any of these through
``app.dependency_overrides``.
"""

from collections.abc import Generator

import httpx
from fastapi import Depends, Request
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from dragonchat.chat.orchestrator import ChatOrchestrator
from dragonchat.chat.persistence import ChatPersister
from dragonchat.db import get_db_session
from dragonchat.provider.registry import ModelRegistry, get_model_registry
from dragonchat.redis_client import get_redis_client
from dragonchat.storage import HttpStorageGateway, StorageGateway


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


async def get_redis() -> Redis:
    """
    Shared Redis client; the connection pool is reused by the rate limiter
    and the provider key pool.
    """
    return get_redis_client()


def get_http_client(request: Request) -> httpx.AsyncClient:
    """
    Application-wide AsyncClient created in the lifespan handler. A
    per-request client would be closed before a streamed response finishes.
    """
    return request.app.state.http_client


def get_storage(client: httpx.AsyncClient = Depends(get_http_client)) -> StorageGateway:
    return HttpStorageGateway(client)


def get_persister(request: Request) -> ChatPersister:
    return request.app.state.persister


def get_orchestrator(
    registry: ModelRegistry = Depends(get_model_registry),
    storage: StorageGateway = Depends(get_storage),
    persister: ChatPersister = Depends(get_persister),
    redis: Redis = Depends(get_redis),
) -> ChatOrchestrator:
    return ChatOrchestrator(
        registry=registry,
        storage=storage,
        persister=persister,
        redis=redis,
    )


__all__ = [
    "get_db",
    "get_http_client",
    "get_model_registry",
    "get_orchestrator",
    "get_persister",
    "get_redis",
    "get_storage",
]
