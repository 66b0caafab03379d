"""
Upstream API client contract and aiohttp implementation.

The collector performs one request per page through an ``ApiClient``. Retry,
backoff and per-request timeouts belong to the client: by the time a failure
reaches the collector, retries are exhausted.
"""

import asyncio
import logging
from typing import Dict, Mapping, Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)


class ApiResponse:
    """Response of one upstream request."""

    def __init__(self, status: int, body: bytes, headers: Optional[Mapping[str, str]] = None, url: str = ""):
        self.status = status
        self.body = body
        self.headers = dict(headers or {})
        self.url = url

    def __repr__(self) -> str:
        return f"<ApiResponse {self.status} {self.url} ({len(self.body)} bytes)>"


class ApiClientError(Exception):
    """Raised when a request failed and the client's retries are exhausted."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ApiClient(Protocol):
    """Interface for performing one upstream request."""

    async def fetch(self, url_template: str, query: Mapping[str, str]) -> ApiResponse:
        """
        Perform one GET request.

        Args:
            url_template: Path relative to the client's base URL
            query: Query parameters

        Returns:
            The response

        Raises:
            ApiClientError: If the request failed after all retries
        """
        ...


class AiohttpApiClient:
    """
    ApiClient backed by an aiohttp session.

    Retries connection errors, timeouts, 429 and 5xx responses with
    exponential backoff. Other 4xx responses fail immediately.

    Attributes:
        base_url: Prefix joined with each url template
        retries: Number of retries after the first attempt
        timeout_seconds: Per-request timeout
        backoff_base: First backoff delay in seconds, doubled per retry
    """

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        retries: int = 3,
        timeout_seconds: float = 30.0,
        backoff_base: float = 1.0,
        max_backoff: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.auth = auth
        self.retries = retries
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                auth=self.auth,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    def _url(self, url_template: str) -> str:
        return f"{self.base_url}/{url_template.lstrip('/')}"

    async def fetch(self, url_template: str, query: Mapping[str, str]) -> ApiResponse:
        url = self._url(url_template)
        session = await self._get_session()
        last_error = None
        last_status = None

        for attempt in range(self.retries + 1):
            if attempt:
                delay = min(self.backoff_base * 2 ** (attempt - 1), self.max_backoff)
                logger.debug(f"Retrying {url} in {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)

            try:
                async with session.get(url, params=dict(query)) as resp:
                    body = await resp.read()
                    if resp.status < 400:
                        return ApiResponse(resp.status, body, resp.headers, str(resp.url))

                    last_status = resp.status
                    last_error = f"HTTP {resp.status}: {body[:200]!r}"
                    if resp.status not in self.RETRYABLE_STATUS:
                        break

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None

            logger.warning(f"Request to {url} failed: {last_error}")

        raise ApiClientError(f"GET {url} failed: {last_error}", status=last_status)

    async def close(self):
        """Close the underlying session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
