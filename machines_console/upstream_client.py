import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

# Seconds per request type
TIMEOUTS = {
    "api": 60.0,
    "feed": 15.0,
    "probe": 5.0,
    "health": 5.0,
    "default": 30.0,
}

# Only reads are retried; mutating commands go out once.
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})
RETRY_DELAYS = [0.5, 1.0, 2.0]
CONNECT_FAILURES = (httpx.ConnectError, httpx.ConnectTimeout)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreaker:
    """Per-upstream breaker: trips after `threshold` straight connect failures.

    Once `cooldown` has passed an open breaker lets a single trial request
    through; its outcome closes or re-opens the breaker.
    """

    name: str
    threshold: int = 5
    cooldown: float = 30.0
    failures: int = field(default=0, init=False)
    opened_at: float = field(default=0.0, init=False)
    state: BreakerState = field(default=BreakerState.CLOSED, init=False)

    def allow_request(self) -> bool:
        if self.state is BreakerState.CLOSED:
            return True
        if self.state is BreakerState.OPEN and time.monotonic() - self.opened_at >= self.cooldown:
            self.state = BreakerState.HALF_OPEN
            logger.info("Circuit breaker for %s half-open, sending trial request", self.name)
            return True
        return False

    def on_success(self) -> None:
        if self.state is not BreakerState.CLOSED:
            logger.info("Circuit breaker for %s closed", self.name)
        self.failures = 0
        self.state = BreakerState.CLOSED

    def on_failure(self) -> None:
        self.failures += 1
        if self.state is BreakerState.HALF_OPEN or self.failures >= self.threshold:
            self.state = BreakerState.OPEN
            self.opened_at = time.monotonic()
            logger.warning("Circuit breaker for %s open after %d failures", self.name, self.failures)


class UpstreamClient:
    """Shared async HTTP pool for the Machines API, the status feed and site probes."""

    def __init__(self) -> None:
        self._http: httpx.AsyncClient | None = None
        self._breakers: dict[str, CircuitBreaker] = {}

    async def start(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._breakers = {}
        self._http = httpx.AsyncClient(
            follow_redirects=True,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
            transport=transport,
        )

    async def stop(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def breaker(self, upstream: str) -> CircuitBreaker:
        return self._breakers.setdefault(upstream, CircuitBreaker(upstream))

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("Upstream client is not started")
        return self._http

    async def request(
        self,
        upstream: str,
        method: str,
        url: str,
        *,
        timeout_type: str = "default",
        **kwargs,
    ) -> httpx.Response:
        """Send one request to `upstream`.

        Reads are retried with back-off on connect failures. Every transport
        error counts against the breaker, and a half-open trial that ends
        without a response (cancelled included) re-opens it. Raises
        httpx.ConnectError without sending anything while the breaker is open.
        """
        breaker = self.breaker(upstream)
        if not breaker.allow_request():
            raise httpx.ConnectError(f"Circuit breaker open for {upstream}")

        timeout = TIMEOUTS.get(timeout_type, TIMEOUTS["default"])
        attempts = len(RETRY_DELAYS) if method.upper() in IDEMPOTENT_METHODS else 1

        attempt = 1
        while True:
            try:
                resp = await self.http.request(method, url, timeout=timeout, **kwargs)
            except CONNECT_FAILURES as e:
                breaker.on_failure()
                if attempt >= attempts or breaker.state is BreakerState.OPEN:
                    raise
                delay = RETRY_DELAYS[attempt - 1]
                logger.warning(
                    "%s %s attempt %d failed: %s (retry in %.1fs)",
                    upstream, method, attempt, e, delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue
            except httpx.TransportError:
                breaker.on_failure()
                raise
            except BaseException:
                if breaker.state is BreakerState.HALF_OPEN:
                    breaker.on_failure()
                raise
            breaker.on_success()
            return resp

    async def probe(self, url: str, timeout: float = TIMEOUTS["probe"]) -> httpx.Response:
        """GET an arbitrary URL; any HTTP status counts as an answer."""
        return await self.http.get(url, timeout=timeout)

    async def health_check(self, upstream: str, url: str) -> dict:
        try:
            resp = await self.http.get(url, timeout=TIMEOUTS["health"])
        except httpx.HTTPError as e:
            return {"status": "unreachable", "error": str(e) or e.__class__.__name__}
        status = "healthy" if resp.status_code < 500 else "unhealthy"
        return {"status": status, "code": resp.status_code}


client = UpstreamClient()
