"""Client-side resource cache keyed by resource path.

Keys look like `machines/<app>` or `machine/<app>/<id>`. Reads go through
`get_or_fetch`; only the lifecycle orchestrator calls `invalidate` and
`discard_item`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from cachetools import TTLCache

from .results import Result

logger = logging.getLogger(__name__)

APPS_KEY = "apps"
ALL_MACHINES_KEY = "all-machines"
ALL_VOLUMES_KEY = "all-volumes"


def app_key(app_name: str) -> str:
    return f"app/{app_name}"


def machines_key(app_name: str) -> str:
    return f"machines/{app_name}"


def machine_key(app_name: str, machine_id: str) -> str:
    return f"machine/{app_name}/{machine_id}"


def machine_events_key(app_name: str, machine_id: str) -> str:
    return f"machine-events/{app_name}/{machine_id}"


def volumes_key(app_name: str) -> str:
    return f"volumes/{app_name}"


def volume_key(app_name: str, volume_id: str) -> str:
    return f"volume/{app_name}/{volume_id}"


def secrets_key(app_name: str) -> str:
    return f"secrets/{app_name}"


class ResourceCache:
    def __init__(self, ttl: float = 300.0, maxsize: int = 512):
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        # Fetch locks expire with the entries they guard.
        self._locks: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        # Keys being fetched; flipped to False when invalidated mid-flight.
        self._in_flight: dict[str, bool] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Result[Any]]],
        default: Any = None,
    ) -> Any:
        """Return the cached value, or fetch, cache on success and return it.

        A failed fetch is not cached; the caller gets `default`. A fetch
        that was invalidated while in flight is returned but not cached.
        """
        if key in self._entries:
            return self._entries[key]
        async with self._locks.setdefault(key, asyncio.Lock()):
            if key in self._entries:
                return self._entries[key]
            self._in_flight[key] = True
            try:
                result = await fetcher()
            finally:
                fresh = self._in_flight.pop(key, False)
            if not result.ok:
                logger.debug("Not caching failed fetch for %s: %s", key, result.message)
                return default
            if fresh:
                self._entries[key] = result.value
            else:
                logger.debug("Not caching %s: invalidated during fetch", key)
            return result.value

    def invalidate(self, *prefixes: str) -> int:
        """Drop every key equal to, or nested under, one of the prefixes."""
        def matches(key: str) -> bool:
            return any(key == p or key.startswith(f"{p}/") for p in prefixes)

        for key in self._in_flight:
            if matches(key):
                self._in_flight[key] = False
        stale = [key for key in list(self._entries.keys()) if matches(key)]
        for key in stale:
            self._entries.pop(key, None)
        if stale:
            logger.debug("Invalidated cache keys: %s", ", ".join(stale))
        return len(stale)

    def discard_item(self, key: str, item_id: str) -> bool:
        """Remove an item from a cached list, matching on `id`, `label` or `name`."""
        items = self._entries.get(key)
        if not isinstance(items, list):
            return False
        kept = [item for item in items if not _matches(item, item_id)]
        if len(kept) == len(items):
            return False
        self._entries[key] = kept
        return True

    def clear(self) -> None:
        for key in self._in_flight:
            self._in_flight[key] = False
        self._entries.clear()


def _matches(item: Any, item_id: str) -> bool:
    return any(getattr(item, attr, None) == item_id for attr in ("id", "label", "name"))
