"""Status feed ingestion: Atom parsing, incident classification and dismissal state."""

from __future__ import annotations

import logging
from collections.abc import Iterable

import httpx
from bs4 import BeautifulSoup
from pydantic import ValidationError

from .json_store import JsonFileStore
from .models import Incident
from .results import Err, ErrorKind, Ok, Result, error_kind_for_status
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

IN_PROGRESS_MARKERS = ("investigating", "identified", "monitoring")
CONTENT_RESOLVED_MARKER = "resolved</strong>"
DISMISSED_KEY = "dismissed_incidents"
MAX_DISMISSED = 20


def is_active_incident(title: str, content: str) -> bool:
    title = (title or "").lower()
    content = (content or "").lower()
    if "incident" in title and "resolved" not in title:
        return True
    return any(marker in content for marker in IN_PROGRESS_MARKERS) and (
        CONTENT_RESOLVED_MARKER not in content
    )


def _text(entry, name: str) -> str:
    node = entry.find(name)
    return node.get_text().strip() if node is not None else ""


def parse_feed(xml: str | bytes) -> list[Incident]:
    """Parse an Atom document into classified incidents.

    Raises ValueError when the document has no <feed> root.
    """
    soup = BeautifulSoup(xml, "html.parser")
    if soup.find("feed") is None:
        raise ValueError("Not an Atom feed")

    incidents = []
    for entry in soup.find_all("entry"):
        link = entry.find("link")
        title = _text(entry, "title")
        content = _text(entry, "content")
        incidents.append(
            Incident(
                id=_text(entry, "id"),
                title=title,
                updated=_text(entry, "updated"),
                content=content,
                link=(link.get("href") or "") if link is not None else "",
                is_incident=is_active_incident(title, content),
            )
        )
    return incidents


def has_active_incidents(entries: Iterable[Incident]) -> bool:
    return any(entry.is_incident for entry in entries)


def visible_incidents(entries: Iterable[Incident], dismissed: Iterable[str]) -> list[Incident]:
    hidden = set(dismissed)
    return [entry for entry in entries if entry.is_incident and entry.id not in hidden]


class DismissedIncidents:
    """Durable, order-preserving set of the most recently dismissed incident ids."""

    def __init__(self, path: str, limit: int = MAX_DISMISSED):
        self._store = JsonFileStore(path)
        self._limit = limit

    def ids(self) -> list[str]:
        stored = self._store.get(DISMISSED_KEY, [])
        if not isinstance(stored, list):
            return []
        return [item for item in stored if isinstance(item, str)]

    def is_dismissed(self, incident_id: str) -> bool:
        return incident_id in self.ids()

    def dismiss(self, incident_id: str) -> None:
        self.dismiss_all([incident_id])

    def dismiss_all(self, incident_ids: Iterable[str]) -> None:
        current = self.ids()
        for incident_id in incident_ids:
            if incident_id and incident_id not in current:
                current.append(incident_id)
        self._store.set(DISMISSED_KEY, current[-self._limit:])


class StatusFeedClient:
    """Reads classified incidents from the gateway's /status endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = f"{base_url.rstrip('/')}/status"
        self._timeout = timeout
        self._transport = transport

    async def fetch_result(self) -> Result[list[Incident]]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
                resp = await http.get(self._url)
        except httpx.HTTPError as e:
            logger.error("Error fetching status feed: %s", e)
            return Err(ErrorKind.TRANSPORT, str(e) or e.__class__.__name__)

        if not resp.is_success:
            logger.error("Failed to fetch status feed: %d", resp.status_code)
            return Err(
                error_kind_for_status(resp.status_code),
                f"Failed to fetch status feed: {resp.reason_phrase}",
                status=resp.status_code,
            )
        try:
            entries = resp.json().get("entries") or []
            return Ok([Incident.model_validate(entry) for entry in entries])
        except (ValueError, AttributeError, ValidationError) as e:
            logger.error("Malformed status feed payload: %s", e)
            return Err(ErrorKind.UPSTREAM, f"Malformed status feed payload: {e}")

    async def fetch(self) -> list[Incident]:
        return (await self.fetch_result()).unwrap_or([])


class StatusMonitor:
    """Keeps the latest feed snapshot fresh while something observes it."""

    def __init__(
        self,
        client: StatusFeedClient,
        dismissed: DismissedIncidents,
        interval: float = 300.0,
    ):
        self._client = client
        self._dismissed = dismissed
        self._entries: list[Incident] = []
        self._fetched_ok = False
        self._task = PeriodicTask(self.refresh, interval, name="status-refresh")

    async def refresh(self) -> list[Incident]:
        result = await self._client.fetch_result()
        self._fetched_ok = result.ok
        self._entries = result.unwrap_or([])
        return self.incidents

    @property
    def entries(self) -> list[Incident]:
        return list(self._entries)

    @property
    def incidents(self) -> list[Incident]:
        return visible_incidents(self._entries, self._dismissed.ids())

    @property
    def operational(self) -> bool:
        return self._fetched_ok and not has_active_incidents(self._entries)

    def dismiss_all(self) -> None:
        self._dismissed.dismiss_all(incident.id for incident in self.incidents)

    async def start(self) -> None:
        await self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def __aenter__(self) -> StatusMonitor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
