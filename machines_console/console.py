"""Client-side wiring: builds the credential store, SDK, cache, orchestrator and
status monitor from `settings`.

Logging in or out swaps the SDK client for one carrying the new credential and
empties the resource cache, so nothing fetched under the old identity is served.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from .cache import ResourceCache
from .config import Settings, settings as default_settings
from .credentials import Credential, CredentialStore
from .orchestrator import LifecycleOrchestrator, Notifier
from .queries import ResourceQueries
from .sdk import ClientConfig, MachinesClient
from .status_feed import DismissedIncidents, StatusFeedClient, StatusMonitor

logger = logging.getLogger(__name__)


class Console:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        notifier: Notifier | None = None,
        navigate: Callable[[str], None] | None = None,
    ):
        self.settings = settings or default_settings
        self._transport = transport

        self.credentials = CredentialStore(self.settings.credential_store_path)
        self.cache = ResourceCache(ttl=self.settings.resource_cache_ttl_seconds)
        self.client = self._build_client(self.credentials.load())
        self.queries = ResourceQueries(self.client, self.cache)
        self.orchestrator = LifecycleOrchestrator(self.client, self.cache, notifier, navigate)
        self.dismissed = DismissedIncidents(self.settings.dismissed_incidents_path)
        self.status = StatusMonitor(
            StatusFeedClient(
                self.settings.gateway_url,
                timeout=self.settings.sdk_timeout_seconds,
                transport=transport,
            ),
            self.dismissed,
            interval=self.settings.status_refresh_seconds,
        )

    def _build_client(self, credential: Credential | None) -> MachinesClient:
        config = ClientConfig(
            base_url=self.settings.gateway_url,
            credential=credential,
            timeout=self.settings.sdk_timeout_seconds,
        )
        return MachinesClient(config, transport=self._transport)

    async def _swap_client(self, credential: Credential | None) -> None:
        old = self.client
        self.client = self._build_client(credential)
        self.queries.client = self.client
        self.orchestrator.client = self.client
        self.cache.clear()
        await old.aclose()

    @property
    def is_authenticated(self) -> bool:
        return self.client.config.credential is not None

    async def login(self, token: str, org_slug: str | None = None) -> Credential:
        """Persist the credential, then route every later call through it.

        Raises InvalidCredentialError for malformed tokens; nothing changes then.
        """
        credential = self.credentials.login(token, org_slug)
        await self._swap_client(credential)
        return credential

    async def logout(self) -> None:
        self.credentials.logout()
        await self._swap_client(None)
        logger.info("Logged out; resource cache cleared")

    async def aclose(self) -> None:
        await self.status.stop()
        await self.client.aclose()

    async def __aenter__(self) -> Console:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
