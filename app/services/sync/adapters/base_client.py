"""
Base HTTP client for external sync sources.

Provides:
- Lazily created, reused httpx.AsyncClient with pooled connections
- Bearer token injection from an async token provider
- Retry with exponential backoff on transient errors (network, 429, 5xx)
- Request outcome metrics per source

Token acquisition is not handled here; callers supply a provider. The
default provider returns a static token from settings.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from app.core import metrics

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


def static_token(token: str) -> TokenProvider:
    """Token provider that always returns the same token."""
    async def provide() -> str:
        return token
    return provide


def is_transient_error(error: BaseException) -> bool:
    """Network failures, throttling and server errors are worth retrying."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return isinstance(error, httpx.RequestError)


class SourceClient:
    """
    Shared plumbing for the directory and management clients.

    Attributes:
        source: Label used in logs and metrics
        base_url: API root, without trailing slash
    """

    source = "external"

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root
            token_provider: Async callable returning a bearer token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_transient_error),
        reraise=True
    )
    async def _get_json(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a JSON document with retry logic.

        Args:
            path_or_url: Path relative to base_url, or an absolute next-page link
            params: Query parameters

        Returns:
            Parsed JSON response

        Raises:
            httpx.HTTPStatusError: On HTTP errors (after retries for 429/5xx)
            httpx.RequestError: On network errors (after retries)
        """
        client = await self._get_client()
        token = await self.token_provider()
        try:
            response = await client.get(
                self._url(path_or_url),
                params=params,
                headers={"Authorization": f"Bearer {token}"}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            metrics.record_external_request(self.source, success=False)
            logger.warning(f"{self.source} request failed for {path_or_url}: {e}")
            raise
        metrics.record_external_request(self.source, success=True)
        return response.json()
