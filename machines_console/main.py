"""Machines Console Gateway: same-origin proxy for the Machines API and status feed."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .config import load_upstreams_config, settings
from .http_utils import error_response
from .log_redaction import configure_logging
from .upstream_client import client

logger = logging.getLogger(__name__)

# Shared state populated at startup
_upstreams_config: dict = {}


def get_upstreams_config() -> dict:
    return _upstreams_config


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: configure logging, load the upstream registry, init httpx pool."""
    global _upstreams_config

    configure_logging(settings.log_level, settings.log_redact_extra_patterns)

    _upstreams_config = load_upstreams_config()
    logger.info(
        "Loaded %d upstreams from %s",
        len(_upstreams_config.get("upstreams", {})),
        settings.upstreams_config_path,
    )

    # Tests install an httpx transport here to stand in for the upstreams.
    await client.start(transport=getattr(app.state, "upstream_transport", None))
    logger.info("Machines Console Gateway started")

    yield

    await client.stop()
    logger.info("Machines Console Gateway stopped")


app = FastAPI(title="Machines Console Gateway", version="1.0.0", lifespan=lifespan)


# --- Error handling ---


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    """Routes turn upstream failures into envelopes themselves; anything left is a gateway bug."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# --- Health endpoint ---


@app.get("/health")
async def health():
    """Gateway liveness plus reachability of every registered upstream."""
    upstreams = get_upstreams_config().get("upstreams", {})
    results = {}

    for name, upstream in upstreams.items():
        url = f"{upstream['url'].rstrip('/')}{upstream.get('health', '')}"
        results[name] = await client.health_check(name, url)

    all_healthy = all(r["status"] == "healthy" for r in results.values())
    return {
        "status": "healthy" if all_healthy else "degraded",
        "upstreams": results,
    }


# --- Mount routers ---

from .router_proxy import router as proxy_router  # noqa: E402
from .router_status import router as status_router  # noqa: E402

app.include_router(proxy_router)
app.include_router(status_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
