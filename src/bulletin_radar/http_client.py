"""Async HTTP client with a hard per-request deadline."""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from .config import PipelineConfig
from .errors import FetchError, FetchTimeoutError, HttpError
from .logging_config import get_logger

logger = get_logger("http_client")


class HTTPClient:
    """Thin wrapper over ``httpx.AsyncClient``.

    Every request is bounded by ``asyncio.wait_for`` so a stalled upstream is
    cancelled at the deadline. Failures are translated into the pipeline's
    error types; retries belong to the caller.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "application/rss+xml, application/xml, text/html, application/json;q=0.9, */*;q=0.8",
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                follow_redirects=True,
                timeout=None,
                transport=self._transport,
            )
        return self._client

    async def get(self, url: str, *, timeout_seconds: Optional[float] = None) -> httpx.Response:
        """GET ``url`` and return the response, raising on timeout or non-2xx."""
        deadline = timeout_seconds if timeout_seconds is not None else self.config.fetch_timeout_seconds
        client = self._get_client()

        try:
            response = await asyncio.wait_for(client.get(url), timeout=deadline)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("Request GET %s timed out after %.2fs", url, deadline)
            raise FetchTimeoutError(url, deadline) from exc
        except httpx.RequestError as exc:
            logger.warning("Request GET %s failed: %s", url, exc)
            raise FetchError(f"Request to {url} failed: {exc}", url=url) from exc

        if not response.is_success:
            logger.warning("Request GET %s failed with status %s", url, response.status_code)
            raise HttpError(url, response.status_code, response.reason_phrase)
        return response

    async def get_text(self, url: str, *, timeout_seconds: Optional[float] = None) -> str:
        response = await self.get(url, timeout_seconds=timeout_seconds)
        return response.text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HTTPClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
