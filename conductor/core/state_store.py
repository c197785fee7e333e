"""Session state persistence over a pluggable key-value backend."""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from .models import SessionState, utcnow

logger = logging.getLogger(__name__)

_KEY_PREFIX = "session:"


class KeyValueBackend(abc.ABC):
    """Minimal contract any persistence backend must satisfy."""

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""

    @abc.abstractmethod
    async def get(self, key: str) -> Tuple[Optional[str], bool]:
        """Return ``(value, found)``."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    async def sweep(self) -> int:
        """Drop expired entries. Backends with native expiry can keep the default."""
        return 0


class InMemoryKeyValueStore(KeyValueBackend):
    """Process-local backend with lazy expiry plus an explicit sweep."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def set(self, key: str, value: str, ttl: float) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> Tuple[Optional[str], bool]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None, False
            return value, True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class StateStore:
    """Save/Load/Delete for :class:`SessionState` with inactivity TTL."""

    def __init__(self, backend: KeyValueBackend, *, ttl: float = 3600.0) -> None:
        self._backend = backend
        self._ttl = ttl

    @property
    def ttl(self) -> float:
        return self._ttl

    async def save(self, state: SessionState) -> None:
        """Persist ``state``, stamping ``updated_at`` and refreshing the TTL."""
        state.updated_at = utcnow()
        payload = json.dumps(state.to_dict())
        await self._backend.set(_key(state.session_id), payload, self._ttl)

    async def load(self, session_id: str) -> Tuple[Optional[SessionState], bool]:
        payload, found = await self._backend.get(_key(session_id))
        if not found or payload is None:
            return None, False
        return SessionState.from_dict(json.loads(payload)), True

    async def delete(self, session_id: str) -> None:
        await self._backend.delete(_key(session_id))

    async def sweep_expired(self) -> int:
        removed = await self._backend.sweep()
        if removed:
            logger.info("Expired %d idle session(s)", removed)
        return removed

    async def run_sweeper(self, interval: float) -> None:
        """Sweep expired sessions every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            await self.sweep_expired()


def _key(session_id: str) -> str:
    return f"{_KEY_PREFIX}{session_id}"
