from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

Clock = Callable[[], float]


def make_cache_key(path: str, params: Mapping[str, Any] | None = None) -> str:
    if not params:
        return path
    return f"{path}?{json.dumps(dict(params), sort_keys=True, separators=(',', ':'), default=str)}"


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """Expiring key/value store with single-flight loading.

    Concurrent ``get_or_load`` callers that miss on the same key await one shared
    loader call instead of each issuing their own.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
            return
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl_seconds: float) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._in_flight.get(key)
        if pending is None:
            # the load belongs to the cache, so cancelling one caller leaves the others waiting on it
            pending = asyncio.ensure_future(self._load(key, loader, ttl_seconds))
            pending.add_done_callback(_retrieve_exception)
            self._in_flight[key] = pending
        return await asyncio.shield(pending)

    async def _load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl_seconds: float) -> Any:
        try:
            value = await loader()
            self.set(key, value, ttl_seconds)
            return value
        finally:
            self._in_flight.pop(key, None)


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # a failed load nobody awaits any more must not log "exception never retrieved"
    if not task.cancelled():
        task.exception()
