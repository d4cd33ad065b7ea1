"""Resource client SDK: typed async calls against the gateway's /proxy surface.

Every operation returns a `Result`. Failures are logged with request context and
come back as `Err` values; nothing here raises to the caller. Use
`result.unwrap_or([])` / `unwrap_or(None)` / `result.ok` to get the display
sentinel the UI expects.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .credentials import Credential, CredentialStore
from .http_utils import decode_body
from .models import (
    SECRET_TYPES,
    App,
    CreateAppRequest,
    CreateMachineRequest,
    ExecResult,
    Machine,
    MachineConfig,
    MachineEvent,
    Secret,
    Volume,
)
from .results import Err, ErrorKind, Ok, Result, error_kind_for_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXEC_TIMEOUT_SECONDS = 30
SECRET_LABEL_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class ClientConfig:
    """Immutable call context: where the gateway lives and which credential to send."""

    base_url: str
    credential: Credential | None = None
    timeout: float = 10.0
    proxy_prefix: str = "/proxy"

    @classmethod
    def from_store(cls, store: CredentialStore, base_url: str, timeout: float = 10.0) -> ClientConfig:
        return cls(base_url=base_url, credential=store.load(), timeout=timeout)

    def with_credential(self, credential: Credential | None) -> ClientConfig:
        return dataclasses.replace(self, credential=credential)

    @property
    def proxy_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.proxy_prefix}"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _path(*segments: str) -> str:
    return "/".join(quote(str(segment), safe="") for segment in segments)


def _items(payload: Any, key: str) -> list:
    """Accept both bare lists and `{key: [...]}` envelopes."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get(key), list):
        return payload[key]
    return []


def _as_dict(raw: Any) -> dict:
    return raw if isinstance(raw, dict) else {}


def normalize_app(raw: Any, org_slug: str = "unknown", name: str | None = None) -> App:
    data = _as_dict(raw)
    return App.model_validate({
        **data,
        "id": data.get("id") or f"generated-{_now_ms()}",
        "name": data.get("name") or name or "Unnamed App",
        "organization": data.get("organization") or {"id": "unknown", "slug": org_slug},
        "status": data.get("status") or "unknown",
    })


def normalize_machine(raw: Any) -> Machine:
    data = _as_dict(raw)
    machine_id = data.get("id") or "unknown"
    return Machine.model_validate({
        **data,
        "id": machine_id,
        "name": data.get("name") or machine_id,
        "state": data.get("state") or "unknown",
    })


def normalize_volume(raw: Any) -> Volume:
    data = _as_dict(raw)
    volume_id = data.get("id") or "unknown"
    return Volume.model_validate({
        **data,
        "id": volume_id,
        "name": data.get("name") or volume_id,
        "state": data.get("state") or "unknown",
    })


def normalize_secret(raw: Any) -> Secret:
    data = _as_dict(raw)
    return Secret.model_validate({
        **data,
        "label": data.get("label") or "unknown",
        "type": data.get("type") or "unknown",
    })


class MachinesClient:
    """Async client for the gateway. One instance per ClientConfig."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> ClientConfig:
        return self._config

    async def __aenter__(self) -> MachinesClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.proxy_url,
                timeout=self._config.timeout,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        if self._config.credential is None:
            return {}
        return {"Authorization": self._config.credential.authorization}

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Result[Any]:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            resp = await self._http().request(
                method,
                path,
                params=query,
                json=json_body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.error("API request failed: %s %s: %s", method, path, e)
            return Err(ErrorKind.TRANSPORT, str(e) or e.__class__.__name__)

        payload = decode_body(resp)
        if not resp.is_success:
            envelope = _as_dict(payload)
            message = envelope.get("error") or f"Request failed with status code {resp.status_code}"
            details = envelope.get("details", payload if not envelope else None)
            logger.error(
                "API response error: %s %s -> %d %s",
                method, path, resp.status_code, message,
            )
            if resp.status_code == 401:
                logger.warning("Authentication failed. Check the API token and try again.")
            return Err(
                error_kind_for_status(resp.status_code),
                str(message),
                status=resp.status_code,
                details=details,
            )

        logger.debug("API response success: %s %s", method, path)
        return Ok(payload)

    @staticmethod
    def _parse(result: Result[Any], parser: Callable[[Any], T]) -> Result[T]:
        if not result.ok:
            return result
        try:
            return Ok(parser(result.value))
        except (ValidationError, TypeError, ValueError) as e:
            logger.error("Malformed API payload: %s", e)
            return Err(ErrorKind.UPSTREAM, f"Malformed response: {e}")

    async def _mutate(self, method: str, path: str, **kwargs) -> Result[bool]:
        return self._parse(await self._call(method, path, **kwargs), lambda _: True)

    # --- Apps ---

    async def list_apps(self, org_slug: str) -> Result[list[App]]:
        result = await self._call("GET", "apps", params={"org_slug": org_slug})
        return self._parse(
            result,
            lambda payload: [normalize_app(item, org_slug) for item in _items(payload, "apps")],
        )

    async def get_app(self, app_name: str) -> Result[App]:
        result = await self._call("GET", _path("apps", app_name))
        return self._parse(result, lambda payload: normalize_app(payload, name=app_name))

    async def create_app(self, request: CreateAppRequest) -> Result[App]:
        if not request.app_name:
            logger.error("app_name is required for app creation")
            return Err(ErrorKind.VALIDATION, "app_name is required")
        if not request.org_slug:
            logger.error("org_slug is required for app creation")
            return Err(ErrorKind.VALIDATION, "org_slug is required")
        result = await self._call("POST", "apps", json_body=request.model_dump(exclude_none=True))
        return self._parse(
            result,
            lambda payload: normalize_app(payload, request.org_slug, name=request.app_name),
        )

    async def delete_app(self, app_name: str) -> Result[bool]:
        return await self._mutate("DELETE", _path("apps", app_name))

    # --- Machines ---

    async def list_machines(
        self,
        app_name: str,
        *,
        include_deleted: bool | None = None,
        region: str | None = None,
        state: str | None = None,
    ) -> Result[list[Machine]]:
        result = await self._call(
            "GET",
            _path("apps", app_name, "machines"),
            params={"include_deleted": include_deleted, "region": region, "state": state},
        )
        return self._parse(
            result, lambda payload: [normalize_machine(item) for item in _items(payload, "machines")]
        )

    async def get_machine(self, app_name: str, machine_id: str) -> Result[Machine]:
        result = await self._call("GET", _path("apps", app_name, "machines", machine_id))
        return self._parse(result, normalize_machine)

    async def create_machine(self, app_name: str, request: CreateMachineRequest) -> Result[Machine]:
        if request.config is None:
            return Err(ErrorKind.VALIDATION, "config is required")
        if not request.config.image:
            return Err(ErrorKind.VALIDATION, "config.image is required")
        result = await self._call(
            "POST",
            _path("apps", app_name, "machines"),
            json_body=request.model_dump(exclude_none=True),
        )
        return self._parse(result, normalize_machine)

    async def update_machine(
        self,
        app_name: str,
        machine_id: str,
        config: MachineConfig,
        current_version: str | None = None,
    ) -> Result[Machine]:
        body: dict[str, Any] = {"config": config.model_dump(exclude_none=True)}
        if current_version:
            body["current_version"] = current_version
        result = await self._call(
            "POST", _path("apps", app_name, "machines", machine_id), json_body=body
        )
        return self._parse(result, normalize_machine)

    async def delete_machine(self, app_name: str, machine_id: str, force: bool = False) -> Result[bool]:
        return await self._mutate(
            "DELETE", _path("apps", app_name, "machines", machine_id), params={"force": force}
        )

    async def start_machine(self, app_name: str, machine_id: str) -> Result[bool]:
        return await self._mutate("POST", _path("apps", app_name, "machines", machine_id, "start"))

    async def stop_machine(self, app_name: str, machine_id: str) -> Result[bool]:
        return await self._mutate("POST", _path("apps", app_name, "machines", machine_id, "stop"))

    async def restart_machine(self, app_name: str, machine_id: str) -> Result[bool]:
        return await self._mutate("POST", _path("apps", app_name, "machines", machine_id, "restart"))

    async def suspend_machine(self, app_name: str, machine_id: str) -> Result[bool]:
        return await self._mutate("POST", _path("apps", app_name, "machines", machine_id, "suspend"))

    async def signal_machine(self, app_name: str, machine_id: str, signal: str) -> Result[bool]:
        return await self._mutate(
            "POST",
            _path("apps", app_name, "machines", machine_id, "signal"),
            json_body={"signal": signal},
        )

    async def exec_machine(
        self,
        app_name: str,
        machine_id: str,
        command: list[str],
        timeout: int = EXEC_TIMEOUT_SECONDS,
    ) -> Result[ExecResult]:
        if not command:
            return Err(ErrorKind.VALIDATION, "command is required")
        result = await self._call(
            "POST",
            _path("apps", app_name, "machines", machine_id, "exec"),
            json_body={"command": command, "timeout": timeout},
        )
        return self._parse(result, ExecResult.model_validate)

    async def exec_machine_direct(
        self,
        app_name: str,
        machine_id: str,
        command: list[str],
        timeout: int = EXEC_TIMEOUT_SECONDS,
    ) -> Result[ExecResult]:
        """Send exec through a one-shot connection with the raw stored token.

        Used when the pooled path fails; the gateway normalizes the header either way.
        """
        credential = self._config.credential
        if credential is None:
            logger.error("No API token configured for direct exec")
            return Err(ErrorKind.UNAUTHORIZED, "Authentication token not found")

        url = f"{self._config.proxy_url}/{_path('apps', app_name, 'machines', machine_id, 'exec')}"
        try:
            async with httpx.AsyncClient(
                timeout=self._config.timeout + timeout, transport=self._transport
            ) as session:
                resp = await session.post(
                    url,
                    json={"command": command, "timeout": timeout},
                    headers={"Authorization": credential.token, "Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error("Direct exec request failed: %s", e)
            return Err(ErrorKind.TRANSPORT, str(e) or e.__class__.__name__)

        if not resp.is_success:
            logger.error("Direct exec error response: %d %s", resp.status_code, resp.text[:500])
            return Err(
                error_kind_for_status(resp.status_code),
                f"API Error ({resp.status_code}): {resp.text[:500]}",
                status=resp.status_code,
            )
        return self._parse(Ok(decode_body(resp)), ExecResult.model_validate)

    async def get_machine_events(self, app_name: str, machine_id: str) -> Result[list[MachineEvent]]:
        result = await self._call("GET", _path("apps", app_name, "machines", machine_id, "events"))
        return self._parse(
            result,
            lambda payload: [MachineEvent.model_validate(_as_dict(item)) for item in _items(payload, "events")],
        )

    # --- Volumes ---

    async def list_volumes(self, app_name: str) -> Result[list[Volume]]:
        result = await self._call("GET", _path("apps", app_name, "volumes"))
        return self._parse(
            result, lambda payload: [normalize_volume(item) for item in _items(payload, "volumes")]
        )

    async def get_volume(self, app_name: str, volume_id: str) -> Result[Volume]:
        result = await self._call("GET", _path("apps", app_name, "volumes", volume_id))
        return self._parse(result, normalize_volume)

    async def delete_volume(self, app_name: str, volume_id: str) -> Result[bool]:
        return await self._mutate("DELETE", _path("apps", app_name, "volumes", volume_id))

    # --- Secrets ---

    async def list_secrets(self, app_name: str) -> Result[list[Secret]]:
        result = await self._call("GET", _path("apps", app_name, "secrets"))
        return self._parse(
            result, lambda payload: [normalize_secret(item) for item in _items(payload, "secrets")]
        )

    async def generate_secret(self, app_name: str, label: str, secret_type: str) -> Result[bool]:
        if not SECRET_LABEL_RE.match(label or ""):
            return Err(
                ErrorKind.VALIDATION,
                "Secret label can only contain letters, numbers, underscores, and hyphens",
            )
        if secret_type not in SECRET_TYPES:
            return Err(ErrorKind.VALIDATION, f"Unknown secret type: {secret_type}")
        return await self._mutate(
            "POST", _path("apps", app_name, "secrets", label, "type", secret_type, "generate")
        )

    async def delete_secret(self, app_name: str, label: str) -> Result[bool]:
        return await self._mutate("DELETE", _path("apps", app_name, "secrets", label))

    # --- Cross-app aggregation ---

    async def list_all_machines(self, apps: Iterable[App | str]) -> list[Machine]:
        """Machines of every app; an app whose listing fails contributes nothing."""
        names = [app.name if isinstance(app, App) else app for app in apps]
        results = await asyncio.gather(
            *(self.list_machines(name) for name in names), return_exceptions=True
        )
        machines: list[Machine] = []
        for name, result in zip(names, results):
            if isinstance(result, Exception) or not result.ok:
                logger.error("Error fetching machines for app %s: %s", name, result)
                continue
            machines.extend(m.model_copy(update={"app_name": name}) for m in result.value)
        return machines

    async def list_all_volumes(self, apps: Iterable[App | str]) -> list[Volume]:
        """Volumes of every app; an app whose listing fails contributes nothing."""
        names = [app.name if isinstance(app, App) else app for app in apps]
        results = await asyncio.gather(
            *(self.list_volumes(name) for name in names), return_exceptions=True
        )
        volumes: list[Volume] = []
        for name, result in zip(names, results):
            if isinstance(result, Exception) or not result.ok:
                logger.error("Error fetching volumes for app %s: %s", name, result)
                continue
            volumes.extend(v.model_copy(update={"app_name": name}) for v in result.value)
        return volumes
