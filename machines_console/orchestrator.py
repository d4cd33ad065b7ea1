"""Lifecycle orchestration for user-initiated actions on remote resources.

Each target has at most one action instance, which moves through
Idle -> AwaitingConfirmation -> Executing -> Succeeded | Failed -> Idle.
While an instance is Executing, further requests for the same target are
ignored. Successful actions invalidate the affected cache keys; failures
only produce an error notification. Nothing is retried automatically.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

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
from .models import CreateAppRequest, CreateMachineRequest, ExecResult, GuestConfig, MachineConfig
from .regions import is_known_region
from .results import Err, ErrorKind, Result
from .sdk import EXEC_TIMEOUT_SECONDS, MachinesClient

logger = logging.getLogger(__name__)

SIGNALS = frozenset({
    "SIGABRT", "SIGALRM", "SIGFPE", "SIGHUP", "SIGILL", "SIGINT", "SIGKILL",
    "SIGPIPE", "SIGQUIT", "SIGSEGV", "SIGTERM", "SIGTRAP", "SIGUSR1",
})

DEFAULT_MACHINE_REGION = "sjc"
DEFAULT_MACHINE_IMAGE = "flyio/ubuntu:22.04"
COMMAND_HISTORY_SIZE = 10

_TOKEN_RE = re.compile(r'(?:[^\s"]+|"[^"]*")+')


class InvalidActionError(ValueError):
    """Raised for actions that can never be confirmed: wrong kind, unknown signal or region."""


class ResourceKind(str, Enum):
    APP = "app"
    MACHINE = "machine"
    VOLUME = "volume"
    SECRET = "secret"


class ActionKind(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    SUSPEND = "suspend"
    SIGNAL = "signal"
    DELETE = "delete"
    CLONE = "clone"
    EXEC = "exec"
    GENERATE = "generate"
    CREATE = "create"


class ActionState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_ACTIONS = {
    ResourceKind.MACHINE: frozenset({
        ActionKind.START, ActionKind.STOP, ActionKind.RESTART, ActionKind.SUSPEND,
        ActionKind.SIGNAL, ActionKind.DELETE, ActionKind.CLONE, ActionKind.EXEC,
        ActionKind.CREATE,
    }),
    ResourceKind.APP: frozenset({ActionKind.DELETE, ActionKind.CREATE}),
    ResourceKind.VOLUME: frozenset({ActionKind.DELETE}),
    ResourceKind.SECRET: frozenset({ActionKind.DELETE, ActionKind.GENERATE}),
}

# Verb forms used in notifications: (present participle, past participle).
_MACHINE_VERBS = {
    ActionKind.START: ("Starting", "started"),
    ActionKind.STOP: ("Stopping", "stopped"),
    ActionKind.RESTART: ("Restarting", "restarted"),
    ActionKind.SUSPEND: ("Suspending", "suspended"),
    ActionKind.DELETE: ("Deleting", "deleted"),
}


@dataclass(frozen=True)
class Target:
    kind: ResourceKind
    app_name: str
    resource_id: str = ""
    # The name shown to the user; typed back to confirm a delete.
    label: str = ""

    @property
    def key(self) -> str:
        return f"{self.kind.value}/{self.app_name}/{self.resource_id}"

    @property
    def confirmation_text(self) -> str:
        return self.label or self.resource_id or self.app_name

    @classmethod
    def app(cls, app_name: str) -> Target:
        return cls(ResourceKind.APP, app_name, app_name, app_name)

    @classmethod
    def machine(cls, app_name: str, machine_id: str, label: str = "") -> Target:
        return cls(ResourceKind.MACHINE, app_name, machine_id, label or machine_id)

    @classmethod
    def volume(cls, app_name: str, volume_id: str, label: str = "") -> Target:
        return cls(ResourceKind.VOLUME, app_name, volume_id, label or volume_id)

    @classmethod
    def secret(cls, app_name: str, label: str) -> Target:
        return cls(ResourceKind.SECRET, app_name, label, label)


@dataclass(frozen=True)
class ActionRequest:
    kind: ActionKind
    target: Target
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionInstance:
    request: ActionRequest
    state: ActionState = ActionState.AWAITING_CONFIRMATION
    result: Result[Any] | None = None

    @property
    def requires_typed_confirmation(self) -> bool:
        return self.request.kind is ActionKind.DELETE

    def can_confirm(self, typed: str | None = None) -> bool:
        if self.state is not ActionState.AWAITING_CONFIRMATION:
            return False
        if self.requires_typed_confirmation:
            return typed == self.request.target.confirmation_text
        return True


@dataclass(frozen=True)
class Notification:
    level: str
    message: str
    key: str | None = None


class Notifier:
    """Non-blocking user feedback. A notification with a key replaces the previous one."""

    def __init__(self, on_notify: Callable[[Notification], None] | None = None):
        self.history: list[Notification] = []
        self.active: dict[str, Notification] = {}
        self._on_notify = on_notify

    def notify(self, level: str, message: str, key: str | None = None) -> Notification:
        notification = Notification(level, message, key)
        self.history.append(notification)
        if key is not None:
            self.active[key] = notification
        log = logger.warning if level == "error" else logger.info
        log("[%s] %s", level, message)
        if self._on_notify is not None:
            self._on_notify(notification)
        return notification

    def loading(self, message: str, key: str | None = None) -> Notification:
        return self.notify("loading", message, key)

    def success(self, message: str, key: str | None = None) -> Notification:
        return self.notify("success", message, key)

    def error(self, message: str, key: str | None = None) -> Notification:
        return self.notify("error", message, key)

    def dismiss(self, key: str) -> None:
        self.active.pop(key, None)


class CommandHistory:
    def __init__(self, size: int = COMMAND_HISTORY_SIZE):
        self._size = size
        self._entries: list[str] = []

    def add(self, command_line: str) -> None:
        self._entries = [command_line, *self._entries][: self._size]

    def entries(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def tokenize_command(command_line: str) -> list[str]:
    """Split a command line on whitespace, keeping double-quoted segments whole."""
    tokens = []
    for token in _TOKEN_RE.findall(command_line or ""):
        if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
            token = token[1:-1]
        tokens.append(token)
    return tokens


def _now_ms() -> int:
    return int(time.time() * 1000)


def _messages(request: ActionRequest) -> tuple[str, str, str]:
    """Loading, success and failure messages for an action."""
    target = request.target
    kind = request.kind
    if target.kind is ResourceKind.MACHINE:
        if kind in _MACHINE_VERBS:
            doing, done = _MACHINE_VERBS[kind]
            return (
                f"{doing} machine...",
                f"Machine {done} successfully",
                f"Failed to {kind.value} machine",
            )
        if kind is ActionKind.SIGNAL:
            signal = request.params.get("signal")
            return (
                f"Sending {signal} to machine...",
                f"Signal {signal} sent successfully",
                f"Failed to send {signal} to machine",
            )
        if kind is ActionKind.CLONE:
            return ("Cloning machine...", "Machine cloned successfully", "Failed to clone machine")
        if kind is ActionKind.CREATE:
            return ("Creating a new machine...", "Machine created successfully!", "Failed to create machine")
        if kind is ActionKind.EXEC:
            return ("Executing command...", "Command executed", "Failed to execute command")
    if target.kind is ResourceKind.APP:
        name = target.app_name
        if kind is ActionKind.CREATE:
            return (f"Creating app {name}...", f"App {name} created successfully", f"Failed to create app {name}")
        return (f"Deleting app {name}...", f"App {name} deleted successfully", f"Failed to delete app {name}")
    if target.kind is ResourceKind.VOLUME:
        return ("Deleting volume...", "Volume deleted successfully", "Failed to delete volume")
    label = target.resource_id
    if kind is ActionKind.GENERATE:
        return (
            f"Generating secret {label}...",
            f"Secret {label} generated successfully",
            f"Failed to generate secret {label}",
        )
    return (f"Deleting secret {label}...", f"Secret {label} deleted successfully", f"Failed to delete secret {label}")


class LifecycleOrchestrator:
    """Sequences confirmation, execution, cache invalidation and feedback per target."""

    def __init__(
        self,
        client: MachinesClient,
        cache: ResourceCache,
        notifier: Notifier | None = None,
        navigate: Callable[[str], None] | None = None,
    ):
        self.client = client
        self.cache = cache
        self.notifier = notifier or Notifier()
        self._navigate = navigate
        self._actions: dict[str, ActionInstance] = {}
        self._histories: dict[str, CommandHistory] = {}

    def state(self, target: Target) -> ActionState:
        instance = self._actions.get(target.key)
        return instance.state if instance else ActionState.IDLE

    def pending(self, target: Target) -> ActionInstance | None:
        return self._actions.get(target.key)

    def request(self, kind: ActionKind, target: Target, **params) -> ActionInstance | None:
        """Open a confirmation for `kind` on `target`.

        Returns None while another action on the same target is executing.
        A request for a target that is already awaiting confirmation replaces it.
        """
        self._validate(kind, target, params)
        current = self._actions.get(target.key)
        if current is not None and current.state is ActionState.EXECUTING:
            logger.info("Ignoring %s on %s: an action is already executing", kind.value, target.key)
            return None
        instance = ActionInstance(ActionRequest(kind, target, params))
        self._actions[target.key] = instance
        return instance

    def cancel(self, target: Target) -> bool:
        instance = self._actions.get(target.key)
        if instance is None or instance.state is not ActionState.AWAITING_CONFIRMATION:
            return False
        del self._actions[target.key]
        return True

    def can_confirm(self, target: Target, typed: str | None = None) -> bool:
        instance = self._actions.get(target.key)
        return instance is not None and instance.can_confirm(typed)

    async def confirm(self, target: Target, typed: str | None = None) -> ActionInstance | None:
        """Execute the pending action for `target` if its confirmation is satisfied."""
        instance = self._actions.get(target.key)
        if instance is None or not instance.can_confirm(typed):
            return None

        request = instance.request
        loading, succeeded, failed = _messages(request)
        instance.state = ActionState.EXECUTING
        self.notifier.loading(loading, key=target.key)
        try:
            result = await self._perform(request)
        except Exception as e:
            logger.error("Unexpected error during %s on %s: %s", request.kind.value, target.key, e)
            result = Err(ErrorKind.TRANSPORT, str(e) or e.__class__.__name__)
        finally:
            self._actions.pop(target.key, None)

        instance.result = result
        if result.ok:
            instance.state = ActionState.SUCCEEDED
            self._after_success(request)
            self.notifier.success(succeeded, key=target.key)
        else:
            instance.state = ActionState.FAILED
            logger.warning("%s on %s failed: %s", request.kind.value, target.key, result.message)
            if request.kind is ActionKind.EXEC:
                failed = f"{failed}: {result.message}"
            self.notifier.error(failed, key=target.key)
        return instance

    async def run(
        self,
        kind: ActionKind,
        target: Target,
        typed: str | None = None,
        **params,
    ) -> ActionInstance | None:
        """Request and immediately confirm an action."""
        if self.request(kind, target, **params) is None:
            return None
        instance = await self.confirm(target, typed)
        if instance is None:
            self.cancel(target)
        return instance

    # --- Specialized actions ---

    async def clone_machine(
        self,
        target: Target,
        name: str | None = None,
        region: str | None = None,
    ) -> ActionInstance | None:
        return await self.run(ActionKind.CLONE, target, name=name, region=region)

    async def signal_machine(self, target: Target, signal: str) -> ActionInstance | None:
        return await self.run(ActionKind.SIGNAL, target, signal=signal)

    async def create_app(self, request: CreateAppRequest) -> ActionInstance | None:
        return await self.run(ActionKind.CREATE, Target.app(request.app_name), request=request)

    async def create_default_machine(self, app_name: str) -> ActionInstance | None:
        request = CreateMachineRequest(
            name=f"{app_name}-{_now_ms()}",
            region=DEFAULT_MACHINE_REGION,
            config=MachineConfig(
                image=DEFAULT_MACHINE_IMAGE,
                guest=GuestConfig(cpu_kind="shared", cpus=1, memory_mb=256),
                restart={"policy": "always"},
            ),
        )
        target = Target(ResourceKind.MACHINE, app_name, "", request.name or "")
        return await self.run(ActionKind.CREATE, target, request=request)

    def command_history(self, target: Target) -> CommandHistory:
        return self._histories.setdefault(target.key, CommandHistory())

    async def execute_command(self, target: Target, command_line: str) -> ExecResult | None:
        """Run a command line on a machine and return its output.

        Blank lines, and lines rejected because another action on the machine
        is executing, return None and are not recorded in the history. A
        failure on both exec paths is returned as a failed ExecResult rather
        than raised.
        """
        tokens = tokenize_command(command_line)
        if not tokens:
            return None

        instance = await self.run(ActionKind.EXEC, target, command=tokens)
        if instance is None:
            return None
        self.command_history(target).add(command_line.strip())
        if instance.state is ActionState.SUCCEEDED:
            return instance.result.value
        message = instance.result.message if instance.result else "Unknown error"
        return ExecResult(stdout="", stderr=f"Error executing command: {message}", exit_code=1)

    # --- Internals ---

    def _validate(self, kind: ActionKind, target: Target, params: dict[str, Any]) -> None:
        if kind not in ALLOWED_ACTIONS[target.kind]:
            raise InvalidActionError(f"{kind.value} is not allowed for {target.kind.value}")
        if kind is ActionKind.SIGNAL and params.get("signal") not in SIGNALS:
            raise InvalidActionError(f"Unknown signal: {params.get('signal')}")
        if kind is ActionKind.CLONE:
            region = params.get("region")
            if region and not is_known_region(region):
                raise InvalidActionError(f"Unknown region: {region}")
        if kind is ActionKind.GENERATE and not params.get("secret_type"):
            raise InvalidActionError("secret_type is required")
        if kind is ActionKind.CREATE and params.get("request") is None:
            raise InvalidActionError("request is required")

    async def _perform(self, request: ActionRequest) -> Result[Any]:
        """Issue the single SDK call behind an action."""
        target = request.target
        app, resource_id = target.app_name, target.resource_id
        kind = request.kind
        client = self.client

        if target.kind is ResourceKind.MACHINE:
            if kind is ActionKind.START:
                return await client.start_machine(app, resource_id)
            if kind is ActionKind.STOP:
                return await client.stop_machine(app, resource_id)
            if kind is ActionKind.RESTART:
                return await client.restart_machine(app, resource_id)
            if kind is ActionKind.SUSPEND:
                return await client.suspend_machine(app, resource_id)
            if kind is ActionKind.SIGNAL:
                return await client.signal_machine(app, resource_id, request.params["signal"])
            if kind is ActionKind.DELETE:
                return await client.delete_machine(app, resource_id, force=request.params.get("force", False))
            if kind is ActionKind.CLONE:
                return await self._clone(target, request.params.get("name"), request.params.get("region"))
            if kind is ActionKind.CREATE:
                return await client.create_machine(app, request.params["request"])
            if kind is ActionKind.EXEC:
                return await self._exec(target, request.params["command"])
        elif target.kind is ResourceKind.APP:
            if kind is ActionKind.DELETE:
                return await client.delete_app(app)
            if kind is ActionKind.CREATE:
                return await client.create_app(request.params["request"])
        elif target.kind is ResourceKind.VOLUME:
            return await client.delete_volume(app, resource_id)
        elif target.kind is ResourceKind.SECRET:
            if kind is ActionKind.GENERATE:
                return await client.generate_secret(app, resource_id, request.params["secret_type"])
            return await client.delete_secret(app, resource_id)
        raise InvalidActionError(f"{kind.value} is not allowed for {target.kind.value}")

    async def _clone(self, target: Target, name: str | None, region: str | None) -> Result[Any]:
        source = await self.client.get_machine(target.app_name, target.resource_id)
        if not source.ok:
            return source
        machine = source.value
        if machine.config is None:
            return Err(ErrorKind.VALIDATION, "Source machine has no configuration")
        request = CreateMachineRequest(
            name=name or f"{machine.name}-clone-{_now_ms()}",
            region=region or machine.region,
            config=machine.config,
        )
        return await self.client.create_machine(target.app_name, request)

    async def _exec(self, target: Target, command: list[str]) -> Result[ExecResult]:
        result = await self.client.exec_machine(
            target.app_name, target.resource_id, command, timeout=EXEC_TIMEOUT_SECONDS
        )
        if result.ok:
            return result
        logger.info("Exec failed (%s), falling back to direct call", result.message)
        return await self.client.exec_machine_direct(
            target.app_name, target.resource_id, command, timeout=EXEC_TIMEOUT_SECONDS
        )

    def _invalidation_keys(self, target: Target) -> list[str]:
        app, resource_id = target.app_name, target.resource_id
        if target.kind is ResourceKind.MACHINE:
            keys = [machines_key(app), ALL_MACHINES_KEY]
            if resource_id:
                keys += [machine_key(app, resource_id), machine_events_key(app, resource_id)]
            return keys
        if target.kind is ResourceKind.APP:
            return [APPS_KEY, app_key(app)]
        if target.kind is ResourceKind.VOLUME:
            return [volumes_key(app), volume_key(app, resource_id), ALL_VOLUMES_KEY]
        return [secrets_key(app)]

    def _after_success(self, request: ActionRequest) -> None:
        target = request.target
        if request.kind is ActionKind.EXEC:
            return

        if request.kind is ActionKind.DELETE:
            list_key, parent = {
                ResourceKind.APP: (APPS_KEY, "/dashboard/apps"),
                ResourceKind.MACHINE: (machines_key(target.app_name), f"/dashboard/apps/{target.app_name}/machines"),
                ResourceKind.VOLUME: (volumes_key(target.app_name), f"/dashboard/apps/{target.app_name}/volumes"),
                ResourceKind.SECRET: (secrets_key(target.app_name), None),
            }[target.kind]
            self.cache.discard_item(list_key, target.resource_id)
            self.cache.invalidate(*self._invalidation_keys(target))
            if parent and self._navigate is not None:
                self._navigate(parent)
            return

        self.cache.invalidate(*self._invalidation_keys(target))
