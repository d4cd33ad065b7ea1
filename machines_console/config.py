from pathlib import Path

import yaml
from pydantic_settings import BaseSettings

MACHINES_API = "machines-api"
STATUS_FEED = "status-feed"


class Settings(BaseSettings):
    upstreams_config_path: str = "/config/upstreams.yaml"
    api_base_url: str = "https://api.machines.dev/v1"
    status_feed_url: str = "https://status.flyio.net/history.atom"
    gateway_url: str = "http://127.0.0.1:8000"
    log_level: str = "INFO"
    log_redact_extra_patterns: str = ""
    status_cache_ttl_seconds: float = 60.0
    status_refresh_seconds: float = 300.0
    site_check_timeout_seconds: float = 5.0
    sdk_timeout_seconds: float = 10.0
    resource_cache_ttl_seconds: float = 300.0
    credential_store_path: str = "~/.machines-console/credentials.json"
    dismissed_incidents_path: str = "~/.machines-console/dismissed-incidents.json"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"env_prefix": "MACHINES_CONSOLE_"}


settings = Settings()


def default_upstreams_config() -> dict:
    return {
        "upstreams": {
            MACHINES_API: {"url": settings.api_base_url, "health": ""},
            STATUS_FEED: {"url": settings.status_feed_url, "health": ""},
        }
    }


def load_upstreams_config() -> dict:
    """Load the upstream registry from YAML, layered over the built-in defaults."""
    config = default_upstreams_config()
    config_path = Path(settings.upstreams_config_path)
    if not config_path.exists():
        return config
    with open(config_path) as f:
        loaded = yaml.safe_load(f) or {}
    upstreams = loaded.get("upstreams") or {}
    if not isinstance(upstreams, dict):
        raise ValueError(f"Invalid upstreams section in {config_path}")
    for name, entry in upstreams.items():
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ValueError(f"Upstream '{name}' in {config_path} has no url")
        config["upstreams"][name] = {"health": "", **entry}
    return config


def get_upstream_url(config: dict, name: str) -> str:
    """Get the base URL for a named upstream."""
    upstream = config.get("upstreams", {}).get(name)
    if not upstream:
        raise KeyError(f"Upstream not found in config: {name}")
    return upstream["url"]
