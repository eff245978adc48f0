"""In-process TTL cache for session views and leaderboards.

Expiry is purely timer-driven: ``set`` arms one ``threading.Timer`` per
key that deletes the entry when it fires, and ``get``/``has`` never look
at the clock. ``CacheBackend`` is the seam for swapping in a shared
store when the service runs on more than one instance.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

from quizarena.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Key/value store with per-entry TTL."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float) -> None: ...

    @abstractmethod
    def get(self, key: str) -> Any | None: ...

    @abstractmethod
    def has(self, key: str) -> bool: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def size(self) -> int: ...

    def stats(self) -> dict[str, Any]:
        return {"size": self.size()}


class LocalCache(CacheBackend):
    """Process-local cache; one daemon timer per live key."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl: float) -> None:
        timer = threading.Timer(ttl, self._expire, args=(key,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._values[key] = value
            self._timers[key] = timer
        timer.start()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._values.get(key)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def delete(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            return self._values.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._values.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._values)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {"size": len(self._values), "keys": sorted(self._values)}

    def _expire(self, key: str) -> None:
        with self._lock:
            # A newer set() may have replaced the timer that just fired.
            if self._timers.get(key) is not threading.current_thread():
                return
            self._timers.pop(key, None)
            self._values.pop(key, None)
        logger.debug("Cache entry expired: %s", key)


def session_key(code: str) -> str:
    return f"session:{code}"


def leaderboard_key(code: str) -> str:
    return f"leaderboard:{code}"


class SessionCache:
    """Session-scoped view over a ``CacheBackend`` with the configured TTLs."""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        session_ttl: float | None = None,
        leaderboard_ttl: float | None = None,
    ) -> None:
        self.backend = backend or LocalCache()
        self.session_ttl = settings.session_cache_ttl if session_ttl is None else session_ttl
        self.leaderboard_ttl = settings.leaderboard_cache_ttl if leaderboard_ttl is None else leaderboard_ttl

    def get_session(self, code: str) -> Any | None:
        value = self.backend.get(session_key(code))
        logger.debug("Cache %s for session: %s", "HIT" if value is not None else "MISS", code)
        return value

    def put_session(self, code: str, value: Any) -> None:
        self.backend.set(session_key(code), value, self.session_ttl)

    def get_leaderboard(self, code: str) -> Any | None:
        value = self.backend.get(leaderboard_key(code))
        logger.debug("Cache %s for leaderboard: %s", "HIT" if value is not None else "MISS", code)
        return value

    def put_leaderboard(self, code: str, value: Any) -> None:
        self.backend.set(leaderboard_key(code), value, self.leaderboard_ttl)

    def invalidate_session(self, code: str) -> None:
        """Drop the state and leaderboard entries for *code*."""
        self.backend.delete(session_key(code))
        self.backend.delete(leaderboard_key(code))
        logger.debug("Invalidated cache for session: %s", code)

    def stats(self) -> dict[str, Any]:
        return self.backend.stats()


session_cache = SessionCache()
