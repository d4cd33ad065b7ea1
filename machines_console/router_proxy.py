"""Proxy routes: /proxy/* forwarded to the Machines API, plus /check-site.

Endpoints:
  GET    /proxy/{path}  : forward a read with query params
  POST   /proxy/{path}  : forward a JSON body (invalid or missing body -> {})
  DELETE /proxy/{path}  : forward a delete with query params
  GET    /check-site    : reachability probe for an arbitrary URL
"""

import logging
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from .config import MACHINES_API, get_upstream_url, settings
from .http_utils import error_response, normalize_authorization, proxy_response
from .upstream_client import client

router = APIRouter(tags=["proxy"])
logger = logging.getLogger(__name__)

INVALID_SEGMENTS = {"", ".", ".."}


def _get_config():
    from .main import get_upstreams_config
    return get_upstreams_config()


def validate_path(path: str) -> list[str] | None:
    """Split a proxy path into segments, or None when any segment is malformed."""
    segments = (path or "").split("/")
    for segment in segments:
        if segment in INVALID_SEGMENTS or "\\" in segment or "\x00" in segment:
            return None
    return segments


async def _read_json_body(request: Request):
    try:
        body = await request.json()
    except ValueError:
        logger.info("No JSON body found")
        return {}
    return body if body is not None else {}


async def _forward(request: Request, method: str, path: str) -> JSONResponse:
    segments = validate_path(path)
    if segments is None:
        return error_response(400, "Invalid path parameter")

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.strip():
        logger.error("Missing Authorization header")
        return error_response(401, "Missing Authorization header")

    upstream_path = "/".join(quote(segment, safe="") for segment in segments)
    query = list(request.query_params.multi_items())
    logger.info("Proxying %s request to: %s", method, upstream_path)
    logger.debug("Query params: %s", query)

    kwargs = {
        "params": query,
        "headers": {
            "Authorization": normalize_authorization(auth_header),
            "Content-Type": "application/json",
        },
    }
    if method == "POST":
        kwargs["json"] = await _read_json_body(request)

    base_url = get_upstream_url(_get_config(), MACHINES_API).rstrip("/")
    try:
        resp = await client.request(
            MACHINES_API, method, f"{base_url}/{upstream_path}",
            timeout_type="api",
            **kwargs,
        )
    except httpx.HTTPError as e:
        logger.error("API proxy error: %s", e)
        return error_response(500, str(e) or "Unknown error")

    if resp.is_success:
        logger.info("Proxy success with status: %d", resp.status_code)
    else:
        logger.error("Proxy error response: %s %s -> %d", method, upstream_path, resp.status_code)
    return proxy_response(resp)


@router.get("/proxy/{path:path}")
async def proxy_get(path: str, request: Request):
    return await _forward(request, "GET", path)


@router.post("/proxy/{path:path}")
async def proxy_post(path: str, request: Request):
    return await _forward(request, "POST", path)


@router.delete("/proxy/{path:path}")
async def proxy_delete(path: str, request: Request):
    return await _forward(request, "DELETE", path)


@router.get("/check-site")
async def check_site(url: str | None = Query(None)):
    """Probe a URL; any HTTP status is an answer, only connection failures are errors."""
    if not url:
        return error_response(400, "URL parameter is required")

    try:
        resp = await client.probe(url, timeout=settings.site_check_timeout_seconds)
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        logger.warning("Error checking site accessibility for %s: %s", url, e)
        return {"isAccessible": False, "error": "Failed to connect", "url": url}

    return {
        "isAccessible": 200 <= resp.status_code < 300,
        "status": resp.status_code,
        "url": url,
    }
