"""Resource Fetcher: plain HTTP and browser-rendered retrievals.

Every retrieval takes the chunk's ScanDeadline; its effective timeout is the
smaller of the per-call timeout and whatever the deadline has left, and a
retrieval whose deadline already elapsed never starts.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Sequence
from urllib.parse import urlparse

import httpx
import structlog
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from marketintel.core.exceptions import FetchTimeoutError, HttpStatusError, NetworkError, ParseError
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.utils.browser_manager import BrowserManager
from marketintel.scrapers.utils.rate_limiter import DomainRateLimiter
from marketintel.scrapers.utils.user_agents import get_random_user_agent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceRef:
    """Where to fetch from and how."""

    url: str
    mode: Literal["plain", "rendered"] = "plain"
    method: str = "GET"
    data: Optional[Dict[str, str]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    # Rendered mode only
    wait_selectors: Sequence[str] = ()
    max_scrolls: int = 0
    scroll_wait: float = 1.5
    timeout: Optional[float] = None


def build_http_client() -> httpx.AsyncClient:
    """Shared client for all plain retrievals of one invocation."""
    return httpx.AsyncClient(
        follow_redirects=True,
        headers={
            "Accept-Language": "es-PA,es;q=0.9,en;q=0.8",
            "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
        },
    )


class ResourceFetcher:
    """Retrieves text content, mapping transport failures to FetchError subclasses."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        browser: Optional[BrowserManager] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        request_timeout: float = 15.0,
        page_timeout: float = 60.0,
    ):
        self.http_client = http_client
        self.browser = browser
        self.rate_limiter = rate_limiter
        self.request_timeout = request_timeout
        self.page_timeout = page_timeout

    async def retrieve(self, ref: ResourceRef, deadline: ScanDeadline) -> str:
        """Fetch a resource and return its text.

        Raises:
            ChunkTimeoutGuardError: The deadline elapsed before the call started
            FetchTimeoutError: The effective timeout elapsed
            NetworkError: Connection or browser failure
            HttpStatusError: Non-success HTTP status
        """
        default = self.page_timeout if ref.mode == "rendered" else self.request_timeout
        timeout = deadline.bound(ref.timeout or default)

        try:
            return await asyncio.wait_for(self._retrieve(ref, timeout), timeout)
        except asyncio.TimeoutError:
            raise FetchTimeoutError(ref.url, timeout) from None

    async def retrieve_json(self, ref: ResourceRef, deadline: ScanDeadline) -> Any:
        """Fetch and decode a JSON document."""
        text = await self.retrieve(ref, deadline)
        try:
            return json.loads(text)
        except ValueError as e:
            raise ParseError(ref.url, f"invalid JSON: {e}") from e

    async def _retrieve(self, ref: ResourceRef, timeout: float) -> str:
        if self.rate_limiter:
            await self.rate_limiter.acquire(urlparse(ref.url).netloc)

        logger.debug("retrieving", url=ref.url, mode=ref.mode, timeout=round(timeout, 1))
        if ref.mode == "rendered":
            return await self._render(ref, timeout)
        return await self._request(ref, timeout)

    async def _request(self, ref: ResourceRef, timeout: float) -> str:
        headers = {"User-Agent": get_random_user_agent(), **ref.headers}
        try:
            response = await self.http_client.request(
                ref.method,
                ref.url,
                data=ref.data,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            raise FetchTimeoutError(ref.url, timeout) from None
        except httpx.TransportError as e:
            raise NetworkError(ref.url, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise HttpStatusError(ref.url, response.status_code)
        return response.text

    async def _render(self, ref: ResourceRef, timeout: float) -> str:
        if self.browser is None:
            raise NetworkError(ref.url, "rendered retrieval requested without a browser")
        try:
            return await self.browser.render(
                ref.url,
                timeout=timeout,
                wait_selectors=ref.wait_selectors,
                max_scrolls=ref.max_scrolls,
                scroll_wait=ref.scroll_wait,
            )
        except PlaywrightTimeoutError:
            raise FetchTimeoutError(ref.url, timeout) from None
        except PlaywrightError as e:
            raise NetworkError(ref.url, str(e)) from e
