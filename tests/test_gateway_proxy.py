import json

import httpx
import pytest
from fastapi.testclient import TestClient

from machines_console import main, router_proxy
from machines_console.router_proxy import validate_path
from tests.fakes import API_PREFIX

APPS_PATH = f"{API_PREFIX}/apps"
MACHINES_PATH = f"{API_PREFIX}/apps/demo/machines"


def test_missing_authorization_never_reaches_upstream(gateway, upstream):
    upstream.add("GET", APPS_PATH, json={"apps": []})

    for method in ("GET", "POST", "DELETE"):
        resp = gateway.request(method, "/proxy/apps")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Missing Authorization header"}

    assert upstream.requests == []


def test_get_normalizes_credential_and_forwards_query(gateway, upstream):
    upstream.add("GET", APPS_PATH, json={"apps": [{"id": "a1", "name": "demo"}]})

    resp = gateway.get(
        "/proxy/apps",
        params={"org_slug": "personal"},
        headers={"Authorization": "bearer  Bearer FlyV1 abc"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"apps": [{"id": "a1", "name": "demo"}]}
    [sent] = upstream.calls("GET", APPS_PATH)
    assert sent.headers["Authorization"] == "Bearer FlyV1 abc"
    assert sent.url.params["org_slug"] == "personal"


def test_post_forwards_json_body(gateway, upstream):
    upstream.add("POST", MACHINES_PATH, json={"id": "m1", "state": "created"})

    resp = gateway.post(
        "/proxy/apps/demo/machines",
        json={"config": {"image": "nginx"}},
        headers={"Authorization": "FlyV1 abc"},
    )

    assert resp.status_code == 200
    [sent] = upstream.calls("POST", MACHINES_PATH)
    assert json.loads(sent.content) == {"config": {"image": "nginx"}}


def test_post_with_invalid_body_forwards_empty_object(gateway, upstream):
    upstream.add("POST", f"{MACHINES_PATH}/m1/start", json={"ok": True})

    resp = gateway.post(
        "/proxy/apps/demo/machines/m1/start",
        content=b"not json",
        headers={"Authorization": "FlyV1 abc"},
    )

    assert resp.status_code == 200
    [sent] = upstream.calls("POST", f"{MACHINES_PATH}/m1/start")
    assert json.loads(sent.content) == {}


def test_delete_forwards_query(gateway, upstream):
    upstream.add("DELETE", f"{MACHINES_PATH}/m1", status=200, json={"ok": True})

    resp = gateway.delete("/proxy/apps/demo/machines/m1?force=true", headers={"Authorization": "FlyV1 abc"})

    assert resp.status_code == 200
    [sent] = upstream.calls("DELETE", f"{MACHINES_PATH}/m1")
    assert sent.url.params["force"] == "true"


def test_upstream_error_keeps_status_and_details(gateway, upstream):
    upstream.add("GET", f"{MACHINES_PATH}/missing", status=404, json={"error": "machine not found"})

    resp = gateway.get("/proxy/apps/demo/machines/missing", headers={"Authorization": "FlyV1 abc"})

    assert resp.status_code == 404
    assert resp.json() == {
        "error": "Request failed with status code 404",
        "details": {"error": "machine not found"},
    }


def test_non_json_bodies(gateway, upstream):
    upstream.add("POST", f"{MACHINES_PATH}/m1/stop", status=200, text="")
    upstream.add("GET", f"{API_PREFIX}/apps/demo", status=502, text="<html>bad gateway</html>")

    stop = gateway.post("/proxy/apps/demo/machines/m1/stop", headers={"Authorization": "FlyV1 abc"})
    assert stop.status_code == 200
    assert stop.json() == {}

    app = gateway.get("/proxy/apps/demo", headers={"Authorization": "FlyV1 abc"})
    assert app.status_code == 502
    assert app.json()["details"] == "<html>bad gateway</html>"


def test_transport_failure_is_generic_500_and_mutations_are_sent_once(gateway, upstream):
    upstream.fail("POST", f"{MACHINES_PATH}/m1/restart")

    resp = gateway.post("/proxy/apps/demo/machines/m1/restart", headers={"Authorization": "FlyV1 abc"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "connection refused"}
    assert len(upstream.calls("POST")) == 1


def test_reads_are_retried_on_connect_failure(gateway, upstream):
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"apps": []})

    upstream.add("GET", APPS_PATH, handler=flaky)

    resp = gateway.get("/proxy/apps", headers={"Authorization": "FlyV1 abc"})

    assert resp.status_code == 200
    assert len(attempts) == 2


@pytest.mark.parametrize(
    "path",
    ["", "apps//machines", "apps/./machines", "apps/../secrets", "apps/a\\b", "apps/a\x00b", "apps/"],
)
def test_validate_path_rejects_malformed_segments(path):
    assert validate_path(path) is None


def test_validate_path_accepts_resource_paths():
    assert validate_path("apps/demo/machines/m1") == ["apps", "demo", "machines", "m1"]


def test_malformed_path_is_rejected_before_upstream(gateway, upstream):
    resp = gateway.get("/proxy/apps/a%5Cb", headers={"Authorization": "FlyV1 abc"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid path parameter"}
    assert upstream.requests == []


def test_check_site_requires_url(gateway):
    resp = gateway.get("/check-site")
    assert resp.status_code == 400
    assert resp.json() == {"error": "URL parameter is required"}


def test_check_site_reports_status(gateway, upstream):
    upstream.add("GET", "/up", status=200, text="ok")
    upstream.add("GET", "/down", status=503, text="nope")

    up = gateway.get("/check-site", params={"url": "https://demo.fly.dev/up"}).json()
    down = gateway.get("/check-site", params={"url": "https://demo.fly.dev/down"}).json()

    assert up == {"isAccessible": True, "status": 200, "url": "https://demo.fly.dev/up"}
    assert down == {"isAccessible": False, "status": 503, "url": "https://demo.fly.dev/down"}


def test_check_site_connection_failure(gateway, upstream):
    upstream.fail("GET", "/")

    resp = gateway.get("/check-site", params={"url": "https://unreachable.fly.dev/"})

    assert resp.status_code == 200
    assert resp.json() == {
        "isAccessible": False,
        "error": "Failed to connect",
        "url": "https://unreachable.fly.dev/",
    }


def test_health_reports_each_upstream(gateway, upstream):
    upstream.add("GET", f"{API_PREFIX}", status=404, json={"error": "not_found"})
    upstream.add("GET", "/history.atom", status=200, text="<feed/>")

    body = gateway.get("/health").json()

    assert body["status"] == "healthy"
    assert set(body["upstreams"]) == {"machines-api", "status-feed"}
    assert body["upstreams"]["machines-api"] == {"status": "healthy", "code": 404}


def test_unexpected_error_becomes_generic_500(upstream, monkeypatch):
    def broken(path):
        raise RuntimeError("bug in path handling")

    monkeypatch.setattr(router_proxy, "validate_path", broken)
    main.app.state.upstream_transport = upstream.transport
    try:
        with TestClient(main.app, raise_server_exceptions=False) as test_client:
            resp = test_client.get("/proxy/apps", headers={"Authorization": "FlyV1 abc"})
    finally:
        main.app.state.upstream_transport = None

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}
    assert upstream.requests == []
