"""
API key selection and backoff for providers configured with several keys.

Keys come from the environment (see ``ProviderEntry.get_api_keys``). A key
that fails upstream is put into exponential backoff; when Redis is
available, success/failure also nudges a per-key preference score so that
healthy keys are preferred across worker processes.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import random
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from redis.asyncio import Redis

from dragonchat.errors import ProviderError
from dragonchat.logging_config import logger
from dragonchat.settings import settings

from .registry import ProviderEntry


@dataclass
class ProviderKeyState:
    key: str
    label: str
    weight: float = 1.0
    fail_count: int = 0
    backoff_until: float = 0.0
    last_used_at: float = 0.0


@dataclass
class SelectedProviderKey:
    provider_id: str
    key: str
    label: str
    state: ProviderKeyState


class NoAvailableProviderKey(ProviderError):
    """
    Raised when no healthy key can be selected for a provider.
    """


_KEY_STATES: Dict[str, Dict[str, ProviderKeyState]] = {}
_LOCKS: Dict[str, asyncio.Lock] = {}
_BACKGROUND_TASKS: Set[asyncio.Task] = set()
_PREFERENCE_BASE = 1.0
_PREFERENCE_MIN = 0.1
_PREFERENCE_MAX = 10.0
_PREFERENCE_SUCCESS_DELTA = 0.5
_PREFERENCE_RETRYABLE_FAILURE_DELTA = -1.0
_PREFERENCE_AUTH_FAILURE_DELTA = -3.0
_PREFERENCE_GROUP_TOLERANCE = 0.05
_PREFERENCE_KEY_PREFIX = "dragonchat:provider:{provider_id}:key_scores"


def _get_lock(provider_id: str) -> asyncio.Lock:
    if provider_id not in _LOCKS:
        _LOCKS[provider_id] = asyncio.Lock()
    return _LOCKS[provider_id]


def _mask_label(raw_key: str, idx: int) -> str:
    tail = raw_key[-4:] if raw_key else "xxxx"
    return f"key{idx + 1}-***{tail}"


def _hash_provider_key(provider_id: str, raw_key: str) -> str:
    # Only HMAC digests go to Redis, never the raw key.
    secret = settings.jwt_secret_key.encode("utf-8")
    msg = f"{provider_id}:{raw_key}".encode("utf-8")
    return hmac.new(secret, msg, hashlib.sha256).hexdigest()


def _ensure_states(provider: ProviderEntry) -> List[ProviderKeyState]:
    pool = _KEY_STATES.setdefault(provider.id, {})
    keys = provider.get_api_keys()
    if not keys:
        raise NoAvailableProviderKey(f"Provider {provider.id} has no configured API keys")

    for idx, raw_key in enumerate(keys):
        if raw_key not in pool:
            pool[raw_key] = ProviderKeyState(key=raw_key, label=_mask_label(raw_key, idx))

    # Drop state for keys that were removed from the environment.
    valid = set(keys)
    for stale in [k for k in pool if k not in valid]:
        pool.pop(stale, None)
    return list(pool.values())


async def _load_preference_scores(
    redis: Optional[Redis], provider_id: str, states: List[ProviderKeyState]
) -> Dict[str, float]:
    if redis is None:
        return {}

    zset_key = _PREFERENCE_KEY_PREFIX.format(provider_id=provider_id)
    scores: Dict[str, float] = {}
    for state in states:
        member = _hash_provider_key(provider_id, state.key)
        try:
            await redis.zadd(zset_key, {member: _PREFERENCE_BASE}, nx=True)
            score = await redis.zscore(zset_key, member)
        except Exception as exc:  # pragma: no cover - Redis outage must not block chat
            logger.debug("provider=%s preference score lookup failed: %s", provider_id, exc)
            return {}
        if score is not None:
            scores[member] = float(score)
    return scores


async def _adjust_preference_score(
    redis: Redis, selection: SelectedProviderKey, delta: float
) -> None:
    member = _hash_provider_key(selection.provider_id, selection.key)
    zset_key = _PREFERENCE_KEY_PREFIX.format(provider_id=selection.provider_id)
    try:
        await redis.zadd(zset_key, {member: _PREFERENCE_BASE}, nx=True)
        new_score = await redis.zincrby(zset_key, delta, member)
        clamped = min(max(new_score, _PREFERENCE_MIN), _PREFERENCE_MAX)
        if clamped != new_score:
            await redis.zadd(zset_key, {member: clamped})
    except Exception as exc:  # pragma: no cover - Redis outage must not block chat
        logger.debug(
            "provider=%s preference score update skipped: %s", selection.provider_id, exc
        )


def _schedule_adjustment(redis: Optional[Redis], selection: SelectedProviderKey, delta: float) -> None:
    if redis is None:
        return
    task = asyncio.create_task(_adjust_preference_score(redis, selection, delta))
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)


async def acquire_provider_key(
    provider: ProviderEntry, redis: Optional[Redis] = None
) -> SelectedProviderKey:
    """
    Choose a key for ``provider``: highest preference group first, weighted
    random inside a group. Keys in backoff are skipped.
    """
    async with _get_lock(provider.id):
        states = _ensure_states(provider)
        now = time.time()
        candidates = [s for s in states if s.backoff_until <= now]
        if not candidates:
            raise NoAvailableProviderKey(
                f"No available API keys for provider {provider.id} (all in backoff)"
            )

        scores = await _load_preference_scores(redis, provider.id, candidates)
        ranked = sorted(
            candidates,
            key=lambda s: scores.get(_hash_provider_key(provider.id, s.key), _PREFERENCE_BASE),
            reverse=True,
        )
        top_score = scores.get(_hash_provider_key(provider.id, ranked[0].key), _PREFERENCE_BASE)
        group = [
            s
            for s in ranked
            if scores.get(_hash_provider_key(provider.id, s.key), _PREFERENCE_BASE)
            >= top_score - _PREFERENCE_GROUP_TOLERANCE
        ]
        state = random.choices(group, weights=[max(s.weight, 0.0001) for s in group], k=1)[0]
        state.last_used_at = now
        return SelectedProviderKey(
            provider_id=provider.id, key=state.key, label=state.label, state=state
        )


def record_key_success(selection: SelectedProviderKey, *, redis: Optional[Redis] = None) -> None:
    selection.state.fail_count = 0
    selection.state.backoff_until = 0.0
    _schedule_adjustment(redis, selection, _PREFERENCE_SUCCESS_DELTA)


def record_key_failure(
    selection: SelectedProviderKey,
    *,
    status_code: Optional[int] = None,
    redis: Optional[Redis] = None,
) -> None:
    """
    Put a key into backoff after an upstream failure.
    """
    selection.state.fail_count += 1
    backoff_seconds = 2.0 ** min(selection.state.fail_count, 5)
    delta = _PREFERENCE_RETRYABLE_FAILURE_DELTA
    if status_code in (401, 403):
        backoff_seconds = max(backoff_seconds, 30.0)
        delta = _PREFERENCE_AUTH_FAILURE_DELTA
    backoff_seconds = min(backoff_seconds, 60.0)
    selection.state.backoff_until = time.time() + backoff_seconds
    logger.warning(
        "provider=%s key=%s enter backoff for %.1fs (status=%s)",
        selection.provider_id,
        selection.label,
        backoff_seconds,
        status_code,
    )
    _schedule_adjustment(redis, selection, delta)


def reset_key_pool(provider_id: Optional[str] = None) -> None:
    """
    Clear cached key state (useful in tests).
    """
    if provider_id is None:
        _KEY_STATES.clear()
        _LOCKS.clear()
    else:
        _KEY_STATES.pop(provider_id, None)
        _LOCKS.pop(provider_id, None)


__all__ = [
    "NoAvailableProviderKey",
    "SelectedProviderKey",
    "acquire_provider_key",
    "record_key_failure",
    "record_key_success",
    "reset_key_pool",
]
