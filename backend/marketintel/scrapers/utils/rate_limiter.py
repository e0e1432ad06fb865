"""Per-domain token bucket rate limiting for deal-site retrievals."""

import asyncio
import time
from typing import Dict


class TokenBucket:
    """Token bucket: starts full, refills at a constant rate, one token per request."""

    def __init__(self, rate: float, capacity: float):
        """
        Args:
            rate: Tokens per second
            capacity: Burst capacity
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Take tokens from the bucket, sleeping until enough have refilled."""
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                await asyncio.sleep((tokens - self.tokens) / self.rate)


class DomainRateLimiter:
    """One token bucket per upstream host.

    Detail fetches for a batch run concurrently, so the bucket is what keeps
    a single merchant site from seeing a burst of K simultaneous hits.
    """

    # Requests per minute for the scanned hosts
    DOMAIN_LIMITS_RPM = {
        "www.rantanofertas.com": 120,
        "www.degustapanama.com": 60,
        "www.oferta24.com": 30,
        "www.bgeneral.com": 60,
    }

    DEFAULT_RPM = 30

    def __init__(self):
        self._buckets: Dict[str, TokenBucket] = {}

    @staticmethod
    def _bucket_for_rpm(rpm: int) -> TokenBucket:
        # Capacity allows small bursts (10% of RPM, min 2)
        return TokenBucket(rate=rpm / 60.0, capacity=max(2.0, rpm / 10.0))

    def _get_bucket(self, domain: str) -> TokenBucket:
        if domain not in self._buckets:
            rpm = self.DOMAIN_LIMITS_RPM.get(domain, self.DEFAULT_RPM)
            self._buckets[domain] = self._bucket_for_rpm(rpm)
        return self._buckets[domain]

    async def acquire(self, domain: str, tokens: float = 1.0) -> None:
        """Block until the domain's bucket allows another request."""
        await self._get_bucket(domain).acquire(tokens)

    def set_custom_limit(self, domain: str, rpm: int) -> None:
        """Replace the bucket for a domain with a new requests-per-minute limit."""
        self._buckets[domain] = self._bucket_for_rpm(rpm)

    def get_current_rate(self, domain: str) -> float:
        """Current limit for a domain in requests per minute."""
        return self._get_bucket(domain).rate * 60.0
