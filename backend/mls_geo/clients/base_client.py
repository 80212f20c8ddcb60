"""Base async HTTP client that maps provider failures to typed errors."""

from typing import Any

import httpx
import structlog

from mls_geo.config import settings
from mls_geo.errors import ProviderError, RateLimitError

logger = structlog.get_logger()


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header (delta-seconds form only)."""
    if not value:
        return None
    try:
        return max(float(value.strip()), 0.0)
    except ValueError:
        return None


class BaseAPIClient:
    """
    Async HTTP client base using httpx.AsyncClient.

    Retries are not done here; callers wrap requests in a RetryPolicy. A 429
    raises RateLimitError carrying the server's Retry-After, any other failure
    raises ProviderError.
    """

    provider_name = "provider"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self._headers = headers or {}
        self._timeout = timeout or settings.provider_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        client = await self._get_client()

        logger.debug("API request", provider=self.provider_name, method=method, path=path[:120])

        try:
            response = await client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise ProviderError(f"request timed out: {e}", provider=self.provider_name) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"request failed: {e}", provider=self.provider_name) from e

        logger.debug(
            "API response",
            provider=self.provider_name,
            method=method,
            status=response.status_code,
        )

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            raise RateLimitError(
                f"rate limited{f', retry after {retry_after:g}s' if retry_after is not None else ''}",
                provider=self.provider_name,
                retry_after=retry_after,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                provider=self.provider_name,
                status=response.status_code,
            )
        return response

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("GET", path, params=params)
        return self._json(response)

    async def post(self, path: str, json: dict[str, Any] | None = None, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("POST", path, params=params, json=json)
        return self._json(response)

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("invalid JSON response", provider=self.provider_name) from e

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
