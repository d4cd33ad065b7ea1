import asyncio
import json

import httpx
import pytest

from machines_console.cache import ALL_MACHINES_KEY, ResourceCache, machine_events_key, machine_key, machines_key
from machines_console.models import CreateAppRequest, Machine
from machines_console.orchestrator import (
    ActionKind,
    ActionState,
    InvalidActionError,
    LifecycleOrchestrator,
    Target,
    tokenize_command,
)
from machines_console.results import Ok
from tests.fakes import FakeUpstream, make_sdk

MACHINE = "/proxy/apps/demo/machines/m1"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def fake_gateway():
    return FakeUpstream()


@pytest.fixture
def navigations():
    return []


@pytest.fixture
def orchestrator(fake_gateway, navigations):
    return LifecycleOrchestrator(
        make_sdk(fake_gateway.transport), ResourceCache(), navigate=navigations.append
    )


def seed(cache: ResourceCache, key: str, value):
    async def fetch():
        return Ok(value)
    return run(cache.get_or_fetch(key, fetch))


def test_tokenize_command_keeps_quoted_segments():
    assert tokenize_command('ls -la "my dir"') == ["ls", "-la", "my dir"]
    assert tokenize_command('sh -c "echo hi | wc -c"') == ["sh", "-c", "echo hi | wc -c"]
    assert tokenize_command("   ") == []


def test_start_succeeds_and_invalidates_machine_keys(orchestrator, fake_gateway):
    fake_gateway.add("POST", f"{MACHINE}/start", json={"ok": True})
    cache = orchestrator.cache
    for key in (machines_key("demo"), machine_key("demo", "m1"), machine_events_key("demo", "m1"), ALL_MACHINES_KEY, "apps"):
        seed(cache, key, [])
    target = Target.machine("demo", "m1")

    pending = orchestrator.request(ActionKind.START, target)
    assert pending.state is ActionState.AWAITING_CONFIRMATION
    assert orchestrator.can_confirm(target)

    done = run(orchestrator.confirm(target))

    assert done.state is ActionState.SUCCEEDED
    assert orchestrator.state(target) is ActionState.IDLE
    assert cache.keys() == ["apps"]
    levels = [(n.level, n.message) for n in orchestrator.notifier.history]
    assert levels == [("loading", "Starting machine..."), ("success", "Machine started successfully")]


def test_failed_action_notifies_and_returns_to_idle(orchestrator, fake_gateway):
    fake_gateway.add("POST", f"{MACHINE}/stop", status=500, json={"error": "boom"})
    seed(orchestrator.cache, machines_key("demo"), [])
    target = Target.machine("demo", "m1")

    done = run(orchestrator.run(ActionKind.STOP, target))

    assert done.state is ActionState.FAILED
    assert orchestrator.state(target) is ActionState.IDLE
    assert machines_key("demo") in orchestrator.cache
    assert orchestrator.notifier.history[-1].level == "error"
    assert orchestrator.notifier.history[-1].message == "Failed to stop machine"
    assert len(fake_gateway.calls("POST")) == 1


def test_duplicate_start_while_executing_is_ignored(orchestrator, fake_gateway):
    async def scenario():
        release = asyncio.Event()

        async def slow_start(request):
            await release.wait()
            return httpx.Response(200, json={"ok": True})

        fake_gateway.add("POST", f"{MACHINE}/start", handler=slow_start)
        target = Target.machine("demo", "m1")

        first = asyncio.create_task(orchestrator.run(ActionKind.START, target))
        for _ in range(100):
            if orchestrator.state(target) is ActionState.EXECUTING:
                break
            await asyncio.sleep(0)
        assert orchestrator.state(target) is ActionState.EXECUTING

        assert orchestrator.request(ActionKind.START, target) is None
        assert await orchestrator.run(ActionKind.START, target) is None
        assert await orchestrator.confirm(target) is None

        release.set()
        return await first

    done = run(scenario())

    assert done.state is ActionState.SUCCEEDED
    assert len(fake_gateway.calls("POST", f"{MACHINE}/start")) == 1


def test_delete_requires_exact_typed_name(orchestrator, fake_gateway, navigations):
    fake_gateway.add("DELETE", MACHINE, json={"ok": True})
    seed(orchestrator.cache, machines_key("demo"), [Machine(id="m1", name="web"), Machine(id="m2", name="db")])
    target = Target.machine("demo", "m1", label="web")

    orchestrator.request(ActionKind.DELETE, target)
    for typed in (None, "", "we", "Web", "web ", "m1"):
        assert not orchestrator.can_confirm(target, typed)
        assert run(orchestrator.confirm(target, typed)) is None
    assert orchestrator.state(target) is ActionState.AWAITING_CONFIRMATION
    assert fake_gateway.requests == []

    assert orchestrator.can_confirm(target, "web")
    done = run(orchestrator.confirm(target, "web"))

    assert done.state is ActionState.SUCCEEDED
    assert machines_key("demo") not in orchestrator.cache
    assert navigations == ["/dashboard/apps/demo/machines"]


def test_app_delete_navigates_to_app_list(orchestrator, fake_gateway, navigations):
    fake_gateway.add("DELETE", "/proxy/apps/web", json={})

    done = run(orchestrator.run(ActionKind.DELETE, Target.app("web"), typed="web"))

    assert done.state is ActionState.SUCCEEDED
    assert navigations == ["/dashboard/apps"]
    assert orchestrator.notifier.history[-1].message == "App web deleted successfully"


def test_secret_delete_has_no_navigation(orchestrator, fake_gateway, navigations):
    fake_gateway.add("DELETE", "/proxy/apps/web/secrets/signing_key", json={})

    done = run(orchestrator.run(ActionKind.DELETE, Target.secret("web", "signing_key"), typed="signing_key"))

    assert done.state is ActionState.SUCCEEDED
    assert navigations == []


def test_cancel_only_before_execution(orchestrator):
    target = Target.volume("demo", "vol_1")
    orchestrator.request(ActionKind.DELETE, target)

    assert orchestrator.cancel(target)
    assert orchestrator.state(target) is ActionState.IDLE
    assert not orchestrator.cancel(target)


def test_invalid_requests_are_rejected_before_confirmation(orchestrator):
    machine = Target.machine("demo", "m1")

    with pytest.raises(InvalidActionError):
        orchestrator.request(ActionKind.SIGNAL, machine, signal="SIGWINCH")
    with pytest.raises(InvalidActionError):
        orchestrator.request(ActionKind.CLONE, machine, region="xyz")
    with pytest.raises(InvalidActionError):
        orchestrator.request(ActionKind.START, Target.volume("demo", "vol_1"))
    assert orchestrator.state(machine) is ActionState.IDLE


def test_signal_sends_chosen_signal(orchestrator, fake_gateway):
    fake_gateway.add("POST", f"{MACHINE}/signal", json={})

    done = run(orchestrator.signal_machine(Target.machine("demo", "m1"), "SIGHUP"))

    assert done.state is ActionState.SUCCEEDED
    assert json.loads(fake_gateway.requests[0].content) == {"signal": "SIGHUP"}


def test_clone_reads_source_config_then_creates(orchestrator, fake_gateway):
    fake_gateway.add("GET", MACHINE, json={
        "id": "m1", "name": "web", "region": "iad", "state": "started",
        "config": {"image": "registry.fly.io/web:v3", "env": {"PORT": "8080"}},
    })
    fake_gateway.add("POST", "/proxy/apps/demo/machines", json={"id": "m2", "state": "created"})

    default = run(orchestrator.clone_machine(Target.machine("demo", "m1")))
    moved = run(orchestrator.clone_machine(Target.machine("demo", "m1"), name="web-eu", region="ams"))

    assert default.state is ActionState.SUCCEEDED
    assert default.result.value.id == "m2"
    first, second = [json.loads(r.content) for r in fake_gateway.calls("POST")]
    assert first["name"].startswith("web-clone-")
    assert first["region"] == "iad"
    assert first["config"]["image"] == "registry.fly.io/web:v3"
    assert first["config"]["env"] == {"PORT": "8080"}
    assert moved.state is ActionState.SUCCEEDED
    assert (second["name"], second["region"]) == ("web-eu", "ams")


def test_exec_falls_back_to_direct_path(orchestrator, fake_gateway):
    def exec_handler(request):
        if request.headers["Authorization"].startswith("Bearer "):
            return httpx.Response(500, json={"error": "pooled path failed"})
        return httpx.Response(200, json={"stdout": "total 0\n", "stderr": "", "exit_code": 0})

    fake_gateway.add("POST", f"{MACHINE}/exec", handler=exec_handler)
    target = Target.machine("demo", "m1")

    result = run(orchestrator.execute_command(target, 'ls -la "my dir"'))

    assert result.stdout == "total 0\n"
    assert result.exit_code == 0
    calls = fake_gateway.calls("POST", f"{MACHINE}/exec")
    assert len(calls) == 2
    assert json.loads(calls[1].content) == {"command": ["ls", "-la", "my dir"], "timeout": 30}


def test_exec_failure_on_both_paths_is_rendered(orchestrator, fake_gateway):
    fake_gateway.add("POST", f"{MACHINE}/exec", status=503, text="unavailable")

    result = run(orchestrator.execute_command(Target.machine("demo", "m1"), "uptime"))

    assert result.stdout == ""
    assert result.stderr.startswith("Error executing command: ")
    assert result.exit_code == 1
    assert orchestrator.notifier.history[-1].message.startswith("Failed to execute command: ")


def test_exec_ignores_blank_lines_and_keeps_ten_history_entries(orchestrator, fake_gateway):
    fake_gateway.add("POST", f"{MACHINE}/exec", json={"stdout": "", "stderr": "", "exit_code": 0})
    target = Target.machine("demo", "m1")

    assert run(orchestrator.execute_command(target, "   ")) is None
    assert fake_gateway.requests == []

    for i in range(12):
        run(orchestrator.execute_command(target, f"echo {i}"))

    history = orchestrator.command_history(target).entries()
    assert len(history) == 10
    assert history[0] == "echo 11"
    assert history[-1] == "echo 2"


def test_create_default_machine(orchestrator, fake_gateway):
    fake_gateway.add("POST", "/proxy/apps/demo/machines", json={"id": "m3"})
    seed(orchestrator.cache, machines_key("demo"), [])

    done = run(orchestrator.create_default_machine("demo"))

    assert done.state is ActionState.SUCCEEDED
    body = json.loads(fake_gateway.requests[0].content)
    assert body["name"].startswith("demo-")
    assert body["region"] == "sjc"
    assert body["config"]["image"] == "flyio/ubuntu:22.04"
    assert body["config"]["guest"] == {"cpu_kind": "shared", "cpus": 1, "memory_mb": 256}
    assert body["config"]["restart"] == {"policy": "always"}
    assert machines_key("demo") not in orchestrator.cache


def test_create_app_validation_failure_is_reported(orchestrator, fake_gateway):
    done = run(orchestrator.create_app(CreateAppRequest(app_name="web")))

    assert done.state is ActionState.FAILED
    assert fake_gateway.requests == []
    assert orchestrator.notifier.history[-1].message == "Failed to create app web"


def test_exec_failure_is_reported_once(orchestrator, fake_gateway):
    fake_gateway.add("POST", f"{MACHINE}/exec", status=503, text="unavailable")
    target = Target.machine("demo", "m1")

    run(orchestrator.execute_command(target, "uptime"))

    errors = [n for n in orchestrator.notifier.history if n.level == "error"]
    assert len(errors) == 1
    assert errors[0].message.startswith("Failed to execute command: ")
    assert orchestrator.notifier.active[target.key] == errors[0]
    assert orchestrator.command_history(target).entries() == ["uptime"]


def test_exec_rejected_while_busy_is_not_recorded(orchestrator, fake_gateway):
    async def scenario():
        release = asyncio.Event()

        async def slow_restart(request):
            await release.wait()
            return httpx.Response(200, json={"ok": True})

        fake_gateway.add("POST", f"{MACHINE}/restart", handler=slow_restart)
        target = Target.machine("demo", "m1")

        restart = asyncio.create_task(orchestrator.run(ActionKind.RESTART, target))
        for _ in range(100):
            if orchestrator.state(target) is ActionState.EXECUTING:
                break
            await asyncio.sleep(0)

        rejected = await orchestrator.execute_command(target, "uptime")
        release.set()
        await restart
        return rejected, orchestrator.command_history(target).entries()

    rejected, history = run(scenario())

    assert rejected is None
    assert history == []
    assert fake_gateway.calls("POST", f"{MACHINE}/exec") == []
