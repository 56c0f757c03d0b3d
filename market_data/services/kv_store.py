from __future__ import annotations

import fnmatch
import logging
import threading
import time
from typing import Callable, Protocol

import redis

from market_data.errors import CacheUnavailableError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_sec: int) -> None: ...

    def delete(self, *keys: str) -> int: ...

    def keys(self, pattern: str) -> list[str]: ...

    def ping(self) -> bool: ...


class InMemoryKeyValueStore:
    """Process-local store with per-key expiry; stands in for Redis in tests and demos."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._rows: dict[str, tuple[str, float]] = {}

    def _live(self, key: str, now: float) -> str | None:
        row = self._rows.get(key)
        if row is None:
            return None
        value, expires_at = row
        if now >= expires_at:
            self._rows.pop(key, None)
            return None
        return value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key, self._clock())

    def set(self, key: str, value: str, ttl_sec: int) -> None:
        with self._lock:
            self._rows[key] = (value, self._clock() + ttl_sec)

    def delete(self, *keys: str) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key, now) is not None:
                    removed += 1
                self._rows.pop(key, None)
        return removed

    def keys(self, pattern: str) -> list[str]:
        now = self._clock()
        with self._lock:
            return [
                key
                for key in list(self._rows)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key, now) is not None
            ]

    def ping(self) -> bool:
        return True


class RedisKeyValueStore:
    """Redis-backed store; every client failure surfaces as CacheUnavailableError."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout_sec: float = 2.0) -> "RedisKeyValueStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            encoding_errors="replace",
            socket_timeout=socket_timeout_sec,
            socket_connect_timeout=socket_timeout_sec,
        )
        return cls(client)

    def get(self, key: str) -> str | None:
        try:
            return self.client.get(key)
        except UnicodeDecodeError as exc:
            logger.warning("[CACHE][undecodable_entry] key=%s error=%s", key, exc)
            return None
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"redis get failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_sec: int) -> None:
        try:
            self.client.set(key, value, ex=ttl_sec)
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"redis set failed: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"redis delete failed: {exc}") from exc

    def keys(self, pattern: str) -> list[str]:
        try:
            return list(self.client.scan_iter(match=pattern, count=500))
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"redis keys failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            logger.warning("[CACHE][ping_failed] error=%s", exc)
            return False

    def close(self) -> None:
        self.client.close()
