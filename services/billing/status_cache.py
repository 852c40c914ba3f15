"""TTL cache for status outcomes, keyed by organization id.

Entries are stamped with the evaluation time and are only served while
``evaluated_at <= now < evaluated_at + ttl``; an active outcome is also dropped
once its own end date passes. Every billing write calls :meth:`invalidate`.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

import redis

from core.env import env_int, env_str
from core.logging import get_logger
from core.time_utils import ensure_utc
from services.billing.status_evaluator import StatusOutcome, outcome_from_dict

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300
_REDIS_PREFIX = "billing:status"


class StatusCache(Protocol):
    def get(self, org_id: uuid.UUID, now: datetime) -> Optional[StatusOutcome]: ...

    def set(self, org_id: uuid.UUID, outcome: StatusOutcome, now: datetime) -> None: ...

    def invalidate(self, org_id: uuid.UUID) -> None: ...

    def clear(self) -> None: ...


@dataclass(frozen=True)
class _Entry:
    outcome: StatusOutcome
    evaluated_at: datetime


def _entry_valid(entry: _Entry, now: datetime, ttl: timedelta) -> bool:
    now = ensure_utc(now)
    if now < entry.evaluated_at or now >= entry.evaluated_at + ttl:
        return False
    ends_at = getattr(entry.outcome, "ends_at", None)
    if entry.outcome.is_active and ends_at is not None and now >= ends_at:
        return False
    return True


class MemoryStatusCache:
    """Process-local cache guarded by a lock."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._entries: Dict[uuid.UUID, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, org_id: uuid.UUID, now: datetime) -> Optional[StatusOutcome]:
        with self._lock:
            entry = self._entries.get(org_id)
            if entry is None:
                return None
            if not _entry_valid(entry, now, self._ttl):
                self._entries.pop(org_id, None)
                return None
            return entry.outcome

    def set(self, org_id: uuid.UUID, outcome: StatusOutcome, now: datetime) -> None:
        if self._ttl.total_seconds() <= 0:
            return
        with self._lock:
            self._entries[org_id] = _Entry(outcome=outcome, evaluated_at=ensure_utc(now))

    def invalidate(self, org_id: uuid.UUID) -> None:
        with self._lock:
            self._entries.pop(org_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisStatusCache:
    """Shared cache for multi-worker deployments. Redis errors degrade to cache misses."""

    def __init__(self, client: "redis.Redis", ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._client = client
        self._ttl = timedelta(seconds=ttl_seconds)

    @staticmethod
    def _key(org_id: uuid.UUID) -> str:
        return f"{_REDIS_PREFIX}:{org_id}"

    def get(self, org_id: uuid.UUID, now: datetime) -> Optional[StatusOutcome]:
        try:
            raw = self._client.get(self._key(org_id))
        except redis.RedisError as exc:
            logger.warning("Failed to read status cache for org %s: %s", org_id, exc)
            return None
        if raw is None:
            return None
        payload = json.loads(raw)
        entry = _Entry(
            outcome=outcome_from_dict(payload["outcome"]),
            evaluated_at=ensure_utc(datetime.fromisoformat(payload["evaluatedAt"])),
        )
        if not _entry_valid(entry, now, self._ttl):
            return None
        return entry.outcome

    def set(self, org_id: uuid.UUID, outcome: StatusOutcome, now: datetime) -> None:
        seconds = int(self._ttl.total_seconds())
        if seconds <= 0:
            return
        payload = {"outcome": outcome.to_dict(), "evaluatedAt": ensure_utc(now).isoformat()}
        try:
            self._client.setex(self._key(org_id), seconds, json.dumps(payload))
        except redis.RedisError as exc:
            logger.warning("Failed to write status cache for org %s: %s", org_id, exc)

    def invalidate(self, org_id: uuid.UUID) -> None:
        try:
            self._client.delete(self._key(org_id))
        except redis.RedisError as exc:
            logger.warning("Failed to invalidate status cache for org %s: %s", org_id, exc)

    def clear(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{_REDIS_PREFIX}:*"))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as exc:
            logger.warning("Failed to clear status cache: %s", exc)


def build_status_cache() -> StatusCache:
    ttl = env_int("BILLING_STATUS_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS, minimum=0)
    redis_url = env_str("BILLING_STATUS_CACHE_REDIS_URL")
    if redis_url:
        logger.info("Using Redis status cache (ttl=%ss).", ttl)
        return RedisStatusCache(redis.Redis.from_url(redis_url), ttl_seconds=ttl)
    return MemoryStatusCache(ttl_seconds=ttl)


status_cache: StatusCache = build_status_cache()

__all__ = ["MemoryStatusCache", "RedisStatusCache", "StatusCache", "build_status_cache", "status_cache"]
