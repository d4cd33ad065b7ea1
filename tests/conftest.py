import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from machines_console import main, upstream_client
from machines_console.config import load_upstreams_config, settings
from machines_console.router_status import clear_feed_cache
from tests.fakes import FakeUpstream


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "upstreams_config_path", str(tmp_path / "upstreams.yaml"))
    monkeypatch.setattr(settings, "credential_store_path", str(tmp_path / "credentials.json"))
    monkeypatch.setattr(settings, "dismissed_incidents_path", str(tmp_path / "dismissed.json"))
    monkeypatch.setattr(upstream_client, "RETRY_DELAYS", [0.0, 0.0, 0.0])
    clear_feed_cache()
    yield
    clear_feed_cache()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def gateway(upstream):
    """TestClient for the gateway with the fake upstream behind it."""
    main.app.state.upstream_transport = upstream.transport
    try:
        with TestClient(main.app) as test_client:
            yield test_client
    finally:
        main.app.state.upstream_transport = None


@pytest.fixture
def gateway_transport(upstream, monkeypatch):
    """ASGI transport into the gateway, for driving it from async httpx clients."""
    monkeypatch.setattr(main, "_upstreams_config", load_upstreams_config())
    asyncio.run(upstream_client.client.start(transport=upstream.transport))
    yield httpx.ASGITransport(app=main.app)
    asyncio.run(upstream_client.client.stop())
