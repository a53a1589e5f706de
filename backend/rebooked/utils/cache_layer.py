from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Callable

import redis


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 86400) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def settings_cache_ttl_seconds() -> int:
    return _env_int("SETTINGS_CACHE_TTL_SECONDS", 60)


class SettingsCache:
    """Read-through cache for runtime settings.

    Owned by whoever builds it (the app factory stores one in
    ``app.extensions["settings_cache"]``). ``loader(key)`` fetches the
    authoritative value; writers must call :meth:`invalidate` after changing it.
    """

    _MISSING = object()

    def __init__(
        self,
        loader: Callable[[str], Any],
        *,
        ttl_seconds: int = 60,
        redis_client=None,
        namespace: str = "rebooked:settings",
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = max(1, int(ttl_seconds))
        self._redis = redis_client
        self._namespace = namespace
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0, "errors": 0}

    @classmethod
    def from_env(cls, loader: Callable[[str], Any]) -> "SettingsCache":
        ttl = settings_cache_ttl_seconds()
        url = (os.getenv("CACHE_REDIS_URL") or "").strip()
        client = None
        if url:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=0.75,
                socket_connect_timeout=0.75,
                health_check_interval=30,
            )
        return cls(loader, ttl_seconds=ttl, redis_client=client)

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _redis_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _bump(self, name: str) -> None:
        with self._lock:
            self._stats[name] = int(self._stats.get(name, 0)) + 1

    def _read(self, key: str):
        if self._redis is not None:
            try:
                raw = self._redis.get(self._redis_key(key))
            except redis.RedisError:
                self._bump("errors")
                return self._MISSING
            if raw is None:
                return self._MISSING
            return json.loads(raw)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return self._MISSING
        expires_at, value = entry
        if self._clock() >= expires_at:
            with self._lock:
                self._entries.pop(key, None)
            return self._MISSING
        return value

    def _write(self, key: str, value: Any) -> None:
        if self._redis is not None:
            try:
                self._redis.setex(self._redis_key(key), self._ttl, json.dumps(value, default=str))
            except redis.RedisError:
                self._bump("errors")
            return
        with self._lock:
            self._entries[key] = (self._clock() + self._ttl, value)

    def get(self, key: str) -> Any:
        value = self._read(key)
        if value is not self._MISSING:
            self._bump("hits")
            return value
        self._bump("misses")
        value = self._loader(key)
        self._write(key, value)
        return value

    def invalidate(self, key: str) -> None:
        self._bump("invalidations")
        if self._redis is not None:
            try:
                self._redis.delete(self._redis_key(key))
            except redis.RedisError:
                self._bump("errors")
            return
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_all(self) -> None:
        self._bump("invalidations")
        if self._redis is not None:
            try:
                cursor = 0
                while True:
                    cursor, keys = self._redis.scan(cursor=cursor, match=f"{self._namespace}:*", count=200)
                    if keys:
                        self._redis.delete(*keys)
                    if cursor == 0:
                        break
            except redis.RedisError:
                self._bump("errors")
            return
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            out = dict(self._stats)
        out["backend"] = self.backend
        out["ttl_seconds"] = self._ttl
        return out
