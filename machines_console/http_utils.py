"""HTTP helpers for gateway route handlers."""

import re
from typing import Any

import httpx
from fastapi.responses import JSONResponse

_BEARER_PREFIX_RE = re.compile(r"^bearer(?:\s+|$)", re.IGNORECASE)


def strip_bearer(value: str) -> str:
    """Remove any number of leading `Bearer ` prefixes (any casing) and surrounding whitespace."""
    token = (value or "").strip()
    while True:
        match = _BEARER_PREFIX_RE.match(token)
        if not match:
            return token
        token = token[match.end():].strip()


def normalize_authorization(value: str) -> str:
    """Return the credential with exactly one `Bearer ` prefix."""
    return f"Bearer {strip_bearer(value)}"


def decode_body(resp: httpx.Response) -> Any:
    """Return the parsed JSON body, the raw text when it is not JSON, or None when empty."""
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text[:1000]


def upstream_error_message(resp: httpx.Response) -> str:
    return f"Request failed with status code {resp.status_code}"


def proxy_response(resp: httpx.Response) -> JSONResponse:
    """Return the upstream body on success or a stable error envelope with the upstream status."""
    payload = decode_body(resp)
    if resp.is_success:
        if payload is None:
            payload = {}
        elif isinstance(payload, str):
            payload = {"detail": payload}
        return JSONResponse(status_code=200, content=payload)

    content: dict[str, Any] = {"error": upstream_error_message(resp)}
    if payload is not None:
        content["details"] = payload
    return JSONResponse(status_code=resp.status_code, content=content)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})
