"""Wall-clock deadline propagated into every blocking retrieval."""

import time
from typing import Optional

from marketintel.core.exceptions import ChunkTimeoutGuardError


class ScanDeadline:
    """Absolute monotonic deadline shared by all work of one chunk.

    Retrievals ask for their effective timeout via ``bound()`` so that a
    slow upstream can never outlive the chunk budget.
    """

    def __init__(self, site: str, budget_seconds: Optional[float]):
        self.site = site
        self.budget_seconds = budget_seconds
        self._expires_at = None if budget_seconds is None else time.monotonic() + budget_seconds

    @classmethod
    def unbounded(cls, site: str = "") -> "ScanDeadline":
        return cls(site, None)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise if the deadline already elapsed."""
        if self.expired:
            raise ChunkTimeoutGuardError(self.site, self.budget_seconds or 0)

    def bound(self, timeout: float) -> float:
        """Clamp a per-call timeout to what is left of the deadline."""
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
