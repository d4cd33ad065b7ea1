"""Cached reads for views. Failed reads degrade to `[]` / `None`."""

from __future__ import annotations

from .cache import (
    ALL_MACHINES_KEY,
    ALL_VOLUMES_KEY,
    APPS_KEY,
    ResourceCache,
    app_key,
    machine_events_key,
    machine_key,
    machines_key,
    secrets_key,
    volume_key,
    volumes_key,
)
from .models import App, Machine, MachineEvent, Secret, Volume
from .results import Ok
from .sdk import MachinesClient


class ResourceQueries:
    def __init__(self, client: MachinesClient, cache: ResourceCache):
        self.client = client
        self.cache = cache

    @property
    def org_slug(self) -> str:
        credential = self.client.config.credential
        return credential.org_slug if credential else "personal"

    async def apps(self) -> list[App]:
        return await self.cache.get_or_fetch(
            APPS_KEY, lambda: self.client.list_apps(self.org_slug), default=[]
        )

    async def app(self, app_name: str) -> App | None:
        return await self.cache.get_or_fetch(app_key(app_name), lambda: self.client.get_app(app_name))

    async def machines(self, app_name: str) -> list[Machine]:
        return await self.cache.get_or_fetch(
            machines_key(app_name), lambda: self.client.list_machines(app_name), default=[]
        )

    async def machine(self, app_name: str, machine_id: str) -> Machine | None:
        return await self.cache.get_or_fetch(
            machine_key(app_name, machine_id),
            lambda: self.client.get_machine(app_name, machine_id),
        )

    async def machine_events(self, app_name: str, machine_id: str) -> list[MachineEvent]:
        return await self.cache.get_or_fetch(
            machine_events_key(app_name, machine_id),
            lambda: self.client.get_machine_events(app_name, machine_id),
            default=[],
        )

    async def volumes(self, app_name: str) -> list[Volume]:
        return await self.cache.get_or_fetch(
            volumes_key(app_name), lambda: self.client.list_volumes(app_name), default=[]
        )

    async def volume(self, app_name: str, volume_id: str) -> Volume | None:
        return await self.cache.get_or_fetch(
            volume_key(app_name, volume_id),
            lambda: self.client.get_volume(app_name, volume_id),
        )

    async def secrets(self, app_name: str) -> list[Secret]:
        return await self.cache.get_or_fetch(
            secrets_key(app_name), lambda: self.client.list_secrets(app_name), default=[]
        )

    async def all_machines(self) -> list[Machine]:
        async def fetch():
            return Ok(await self.client.list_all_machines(await self.apps()))

        return await self.cache.get_or_fetch(ALL_MACHINES_KEY, fetch, default=[])

    async def all_volumes(self) -> list[Volume]:
        async def fetch():
            return Ok(await self.client.list_all_volumes(await self.apps()))

        return await self.cache.get_or_fetch(ALL_VOLUMES_KEY, fetch, default=[])
