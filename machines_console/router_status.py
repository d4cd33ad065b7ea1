"""Status feed routes.

Endpoints:
  GET /status         : classified incidents from the upstream Atom feed (cached 60s)
  GET /status/stream  : SSE push of visible incidents on connect and every refresh tick
"""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Iterable

import httpx
from cachetools import TTLCache
from fastapi import APIRouter, Query
from sse_starlette.sse import EventSourceResponse

from .config import STATUS_FEED, get_upstream_url, settings
from .http_utils import error_response
from .models import Incident
from .scheduler import PeriodicTask
from .status_feed import parse_feed, visible_incidents
from .upstream_client import client

router = APIRouter(prefix="/status", tags=["status"])
logger = logging.getLogger(__name__)

_FEED_KEY = "entries"
_feed_cache: TTLCache = TTLCache(maxsize=1, ttl=settings.status_cache_ttl_seconds)


def _get_config():
    from .main import get_upstreams_config
    return get_upstreams_config()


def clear_feed_cache() -> None:
    _feed_cache.clear()


async def load_feed_entries() -> list[Incident]:
    """Fetch and parse the upstream feed, serving from the TTL cache when fresh."""
    cached = _feed_cache.get(_FEED_KEY)
    if cached is not None:
        return cached

    url = get_upstream_url(_get_config(), STATUS_FEED)
    resp = await client.request(STATUS_FEED, "GET", url, timeout_type="feed")
    if not resp.is_success:
        raise ValueError(f"Failed to fetch status feed: {resp.reason_phrase}")
    entries = parse_feed(resp.text)
    _feed_cache[_FEED_KEY] = entries
    return entries


def _entries_payload(entries: Iterable[Incident]) -> dict:
    return {"entries": [entry.model_dump(by_alias=True) for entry in entries]}


@router.get("")
async def status():
    try:
        entries = await load_feed_entries()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Error fetching status feed: %s", e)
        return error_response(500, "Failed to fetch status feed")
    return _entries_payload(entries)


async def incident_events(
    dismissed: Iterable[str] = (),
    interval: float | None = None,
) -> AsyncGenerator[dict, None]:
    """Yield an `incidents` event now and after every refresh tick.

    Only the newest snapshot is kept if the consumer falls behind.
    """
    hidden = set(dismissed)
    updates: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def refresh() -> None:
        try:
            entries = await load_feed_entries()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Status stream refresh failed: %s", e)
            return
        if updates.full():
            updates.get_nowait()
        updates.put_nowait(_entries_payload(visible_incidents(entries, hidden)))

    task = PeriodicTask(
        refresh, interval or settings.status_refresh_seconds, name="status-stream"
    )
    await task.start()
    try:
        while True:
            payload = await updates.get()
            yield {"event": "incidents", "data": json.dumps(payload)}
    finally:
        await task.stop()


@router.get("/stream")
async def status_stream(dismissed: str = Query("")):
    hidden = [item.strip() for item in dismissed.split(",") if item.strip()]
    return EventSourceResponse(incident_events(hidden))
