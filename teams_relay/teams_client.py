"""
teams_relay/teams_client.py — Async HTTP wrapper for Teams' internal APIs.

Responsibilities
----------------
- One pooled HTTP/2 connection set for every backend (Substrate, chatsvc,
  CSA, presence); credentials travel as per-request headers.
- Handle HTTP 429 (rate limit) and transient network errors with exponential
  back-off, honouring Retry-After.
- Raise AuthExpired on 401 so the dispatcher can invalidate and re-auth.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from teams_relay import config
from teams_relay.errors import AuthExpired

log = logging.getLogger("teams_relay.http")


def _retry_after(resp: httpx.Response, default: float) -> float:
    try:
        return float(resp.headers.get("Retry-After", default))
    except ValueError:
        return default


class TeamsClient:
    """Thin async wrapper around httpx.AsyncClient with Teams' retry rules."""

    def __init__(
        self,
        *,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        max_retries: int = config.MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout     = timeout
        self._max_retries = max(1, max_retries)
        self._transport   = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ─── Context manager ──────────────────────────────────────────────────────

    async def __aenter__(self) -> "TeamsClient":
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            http2=self._transport is None,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *_) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ─── Request helper ───────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        audience: str,
        headers: dict,
        json: Any = None,
    ) -> Any:
        """
        Send one request with automatic retry on 429 and connection errors.

        Returns the decoded JSON body, or None for an empty body.

        Raises:
            AuthExpired            — on 401 (credential for `audience` rejected)
            httpx.HTTPStatusError  — any other 4xx/5xx, or 429 after the last retry
            httpx.TransportError   — network failure after the last retry
        """
        assert self._client, "TeamsClient must be used as an async context manager."
        delay = config.RETRY_BASE_DELAY

        for attempt in range(1, self._max_retries + 1):
            last_attempt = attempt == self._max_retries
            try:
                resp = await self._client.request(method, url, headers=headers, json=json)
            except (httpx.ConnectError, httpx.ReadTimeout) as exc:
                if last_attempt:
                    raise
                log.warning("Network error (attempt %d/%d): %s", attempt, self._max_retries, exc)
                await asyncio.sleep(delay)
                delay = min(delay * 2, config.RETRY_MAX_DELAY)
                continue

            if resp.status_code == 429 and not last_attempt:
                wait = min(_retry_after(resp, delay), config.RETRY_MAX_DELAY)
                log.warning("Rate-limited — waiting %.1fs (attempt %d/%d)", wait, attempt, self._max_retries)
                await asyncio.sleep(wait)
                delay = min(max(delay * 2, wait), config.RETRY_MAX_DELAY)
                continue

            if resp.status_code == 401:
                raise AuthExpired(audience)

            if resp.is_error:
                log.debug("%s %s → HTTP %d: %s", method, resp.url.host, resp.status_code, resp.text[:300])
            resp.raise_for_status()

            if not resp.content:
                return None
            return resp.json()

        raise RuntimeError(f"Request to {url!r} failed after {self._max_retries} attempts.")
