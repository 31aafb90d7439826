from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dragonchat.chat.persistence import ChatPersister
from dragonchat.db import get_db_session
from dragonchat.deps import get_db, get_model_registry, get_redis, get_storage
from dragonchat.errors import ProviderError
from dragonchat.models import Base
from dragonchat.provider.base import ProviderMessage, SDKDriver
from dragonchat.provider.registry import ModelRegistry
from dragonchat.provider.sdk_selector import register_sdk_driver
from dragonchat.settings import settings

FAKE_KEYS_ENV = "FAKE_API_KEYS"

DEFAULT_PROVIDERS: Dict[str, Any] = {
    "providers": [
        {
            "id": "fake",
            "name": "Fake Provider",
            "sdk": "fake",
            "apiKeysEnv": FAKE_KEYS_ENV,
            "models": [
                {"id": "fake-fast", "name": "Fake Fast", "default": True},
                {"id": "fake-vision", "name": "Fake Vision", "vision": True, "maxContext": 8192},
            ],
        }
    ]
}


def build_registry(config: Optional[Dict[str, Any]] = None) -> ModelRegistry:
    return ModelRegistry.from_config(json.dumps(config or DEFAULT_PROVIDERS))


class FakeProvider:
    """
    Stands in for a vendor SDK module. ``fragments`` are yielded in order;
    when ``fail_after`` is set a ProviderError is raised after that many
    fragments.
    """

    def __init__(
        self,
        fragments: Sequence[str] = ("Hel", "lo", "!"),
        *,
        fail_after: Optional[int] = None,
        error_message: str = "upstream exploded",
        upstream_status: Optional[int] = None,
    ) -> None:
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.error_message = error_message
        self.upstream_status = upstream_status
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def stream_completion(
        self,
        *,
        api_key: str,
        model_id: str,
        messages: Sequence[ProviderMessage],
        system_prompt: Optional[str] = None,
        base_url: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        self.calls.append(
            {
                "api_key": api_key,
                "model_id": model_id,
                "messages": list(messages),
                "system_prompt": system_prompt,
            }
        )
        try:
            for idx, fragment in enumerate(self.fragments):
                if self.fail_after is not None and idx >= self.fail_after:
                    raise ProviderError(self.error_message, upstream_status=self.upstream_status)
                yield fragment
            if self.fail_after is not None and self.fail_after >= len(self.fragments):
                raise ProviderError(self.error_message, upstream_status=self.upstream_status)
        finally:
            self.closed = True

    def install(self) -> "FakeProvider":
        register_sdk_driver(
            "fake",
            SDKDriver(name="fake", stream_completion=self.stream_completion),
        )
        return self


class FakeStorage:
    def __init__(self, files: Optional[Dict[str, Tuple[bytes, str]]] = None) -> None:
        self.files = files or {}
        self.fetched: List[str] = []

    async def download_url(self, file_id: str, owner_id: str) -> str:
        return f"https://storage.local/{owner_id}/{file_id}"

    async def fetch(self, file_id: str, owner_id: str) -> Tuple[bytes, Optional[str]]:
        from dragonchat.storage import AttachmentError

        self.fetched.append(file_id)
        if file_id not in self.files:
            raise AttachmentError(f"Attachment {file_id} is not available (status 404)")
        return self.files[file_id]


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def install_inmemory_db(
    app,
    *,
    registry: Optional[ModelRegistry] = None,
    storage: Optional[FakeStorage] = None,
) -> sessionmaker[Session]:
    """
    Attach an in-memory SQLite database, an in-memory Redis, a fake storage
    service and a model registry to the FastAPI app.
    """
    SessionLocal = make_session_factory()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_db_session] = override_get_db

    redis = InMemoryRedis()
    app.state._test_redis = redis

    async def override_get_redis():
        return redis

    app.dependency_overrides[get_redis] = override_get_redis

    registry = registry or build_registry()
    app.dependency_overrides[get_model_registry] = lambda: registry

    storage = storage or FakeStorage()
    app.state._test_storage = storage
    app.dependency_overrides[get_storage] = lambda: storage

    app.state.persister = ChatPersister(SessionLocal)
    return SessionLocal


def make_token(user_id: str, *, expires_in: int = 3600, secret: Optional[str] = None) -> str:
    claims = {"sub": user_id, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret or settings.jwt_secret_key, algorithm="HS256")


def jwt_auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def parse_sse(body: str) -> List[Any]:
    """Decode an SSE body into JSON payloads; ``[DONE]`` is kept as a string."""
    frames: List[Any] = []
    for block in body.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        assert block.startswith("data: "), block
        payload = block[len("data: ") :]
        frames.append(payload if payload == "[DONE]" else json.loads(payload))
    return frames


class _Pipeline:
    def __init__(self, redis: "InMemoryRedis") -> None:
        self._redis = redis
        self._ops: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        def _queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> List[Any]:
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops.clear()
        return results


class InMemoryRedis:
    def __init__(self) -> None:
        self._zsets: dict[str, dict[str, float]] = {}

    def pipeline(self) -> _Pipeline:
        return _Pipeline(self)

    async def expire(self, key: str, seconds: int) -> bool:
        _ = (key, seconds)
        return True

    async def zadd(self, key: str, mapping: dict[str, float], nx: bool = False) -> int:
        z = self._zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if nx and member in z:
                continue
            z[member] = float(score)
            added += 1
        return added

    async def zscore(self, key: str, member: str):
        val = self._zsets.get(key, {}).get(member)
        return None if val is None else float(val)

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        z = self._zsets.setdefault(key, {})
        z[member] = float(z.get(member, 0.0)) + float(amount)
        return z[member]

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        z = self._zsets.get(key, {})
        stale = [m for m, s in z.items() if min_score <= s <= max_score]
        for member in stale:
            z.pop(member, None)
        return len(stale)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False):
        items = sorted(self._zsets.get(key, {}).items(), key=lambda kv: kv[1])
        stop = None if end == -1 else end + 1
        sliced = items[start:stop]
        return sliced if withscores else [m for m, _ in sliced]
