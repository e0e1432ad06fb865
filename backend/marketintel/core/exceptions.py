"""Custom exception classes for the scanner."""


class MarketIntelException(Exception):
    """Base exception for all scanner errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class FetchError(MarketIntelException):
    """Raised when a single retrieval fails. Always soft at the batch level."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"{message} ({url})")


class FetchTimeoutError(FetchError):
    """Raised when a retrieval exceeds its own deadline."""

    def __init__(self, url: str, timeout: float):
        self.timeout = timeout
        super().__init__(url, f"Timed out after {timeout:.1f}s")


class NetworkError(FetchError):
    """Raised on connection-level failures (DNS, reset, browser crash)."""


class HttpStatusError(FetchError):
    """Raised when the upstream answers with a non-success status."""

    def __init__(self, url: str, status_code: int):
        self.status_code = status_code
        super().__init__(url, f"HTTP {status_code}")


class ParseError(MarketIntelException):
    """Raised when fetched content cannot be decoded or interpreted."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Parse error for {source}: {message}")


class AdapterExhaustionError(MarketIntelException):
    """An otherwise successful listing produced zero candidates.

    Reported as a warning in the scan's error list; it also suppresses the
    expiry sweep for the source.
    """

    def __init__(self, site: str):
        self.site = site
        super().__init__(f"{site} returned zero candidates (adapter may be broken)")


class ChunkTimeoutGuardError(MarketIntelException):
    """Synthetic error recorded when the wall-clock guard pre-empts a chunk."""

    def __init__(self, site: str, budget_seconds: float):
        self.site = site
        self.budget_seconds = budget_seconds
        super().__init__(
            f"Chunk for {site} pre-empted by the {budget_seconds:.0f}s wall-clock guard"
        )


class UnknownSourceError(MarketIntelException):
    """Raised when no adapter is registered for a source slug."""

    def __init__(self, site: str):
        self.site = site
        super().__init__(f"Unknown source: {site}")


class ScanInProgressError(MarketIntelException):
    """Raised when a second chunk is dispatched for a source already in flight."""

    def __init__(self, site: str):
        self.site = site
        super().__init__(f"A scan chunk for {site} is already in flight")
