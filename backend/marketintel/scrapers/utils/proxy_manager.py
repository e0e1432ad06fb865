"""Round-robin proxy pool for rendered retrievals."""

from dataclasses import dataclass
from typing import List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ProxyEntry:
    url: str
    fail_count: int = 0

    @property
    def healthy(self) -> bool:
        # Unhealthy after 3 consecutive failures
        return self.fail_count < 3


class ProxyManager:
    """Rotates through configured proxies, skipping ones that keep failing."""

    def __init__(self, proxy_urls: List[str]):
        self.proxies = [ProxyEntry(url=url) for url in proxy_urls]
        self._index = 0

    def get_proxy(self) -> Optional[str]:
        """Next healthy proxy, or None when no proxies are configured.

        When every proxy is unhealthy the pool is reset rather than
        leaving the scanner with no route at all.
        """
        if not self.proxies:
            return None

        available = [p for p in self.proxies if p.healthy]
        if not available:
            logger.warning("proxy_pool_exhausted", count=len(self.proxies))
            for p in self.proxies:
                p.fail_count = 0
            available = self.proxies

        proxy = available[self._index % len(available)]
        self._index = (self._index + 1) % len(available)
        return proxy.url

    def mark_failed(self, proxy_url: str) -> None:
        for p in self.proxies:
            if p.url == proxy_url:
                p.fail_count += 1
                break

    def mark_success(self, proxy_url: str) -> None:
        for p in self.proxies:
            if p.url == proxy_url:
                p.fail_count = 0
                break
