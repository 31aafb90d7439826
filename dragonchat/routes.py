import uuid
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.chat_routes import router as chat_router
from .api.session_routes import router as session_router
from .api.system_routes import router as system_router
from .chat.persistence import ChatPersister
from .db import init_db
from .errors import register_exception_handlers
from .logging_config import logger
from .middleware import RateLimitMiddleware
from .provider.registry import get_model_registry
from .redis_client import close_redis_client, get_redis_client
from .settings import settings


async def handle_unexpected_error(request: Request, exc: Exception):
    error_id = uuid.uuid4().hex
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    startup: create tables, load the model registry, open the shared HTTP
    client and the transcript persister.
    shutdown: let pending transcript writes finish, then close clients.
    """
    init_db()
    get_model_registry()
    if not hasattr(app.state, "persister"):
        app.state.persister = ChatPersister()
    app.state.http_client = httpx.AsyncClient(timeout=settings.storage_timeout)

    yield

    await app.state.persister.wait_idle()
    await app.state.http_client.aclose()
    await close_redis_client()


def create_app() -> FastAPI:
    app = FastAPI(title="Dragon Chat Backend", version="0.1.0", lifespan=lifespan)
    register_exception_handlers(app)
    app.add_exception_handler(Exception, handle_unexpected_error)

    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            redis_client=get_redis_client(),
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    else:
        logger.warning(
            "Rate limiting is disabled (environment=%s); set RATE_LIMIT_ENABLED=true to enable.",
            settings.environment,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(system_router)
    app.include_router(chat_router)
    app.include_router(session_router)

    return app


__all__ = ["create_app"]
