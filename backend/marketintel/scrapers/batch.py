"""Bounded-concurrency batch fetching for detail pages."""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Optional, Sequence, Tuple

import structlog

from marketintel.core.exceptions import ChunkTimeoutGuardError
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.fetcher import ResourceFetcher, ResourceRef

logger = structlog.get_logger(__name__)


@dataclass
class BatchOutcome:
    """Per-item results in input order; failed items are None."""

    results: List[Optional[Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r is not None)


class BoundedBatchFetcher:
    """Fetches references in groups of at most ``concurrency`` at a time.

    Groups are separated by ``batch_delay`` seconds. A failed, timed-out or
    unparseable item becomes None plus a soft error; nothing is retried.
    """

    def __init__(
        self,
        fetcher: ResourceFetcher,
        concurrency: int = 5,
        batch_delay: float = 0.2,
        item_timeout: Optional[float] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.fetcher = fetcher
        self.concurrency = concurrency
        self.batch_delay = batch_delay
        self.item_timeout = item_timeout

    async def fetch_all(
        self,
        refs: Sequence[ResourceRef],
        deadline: ScanDeadline,
        parse: Optional[Callable[[str], Any]] = None,
        on_batch: Optional[Callable[[int, int], None]] = None,
    ) -> BatchOutcome:
        """Resolve every reference.

        Args:
            refs: References to fetch
            deadline: Chunk deadline shared by every item
            parse: Optional parser applied to each fetched text under the same guard
            on_batch: Called with (done, total) after each group completes

        Returns:
            BatchOutcome with one result slot per reference
        """
        outcome = BatchOutcome(results=[None] * len(refs))
        total = len(refs)

        for start in range(0, total, self.concurrency):
            group = refs[start:start + self.concurrency]
            resolved = await asyncio.gather(
                *(self._fetch_one(ref, deadline, parse) for ref in group)
            )
            for offset, (value, error) in enumerate(resolved):
                outcome.results[start + offset] = value
                if error:
                    outcome.errors.append(error)

            done = min(start + self.concurrency, total)
            if on_batch:
                on_batch(done, total)

            if done < total:
                await asyncio.sleep(self.batch_delay)

        logger.info(
            "batch_fetch_complete",
            total=total,
            succeeded=outcome.succeeded,
            errors=len(outcome.errors),
        )
        return outcome

    async def _fetch_one(
        self,
        ref: ResourceRef,
        deadline: ScanDeadline,
        parse: Optional[Callable[[str], Any]],
    ) -> Tuple[Optional[Any], Optional[str]]:
        if self.item_timeout and ref.timeout is None:
            ref = replace(ref, timeout=self.item_timeout)
        try:
            text = await self.fetcher.retrieve(ref, deadline)
            return (parse(text) if parse else text), None
        except ChunkTimeoutGuardError:
            raise
        except Exception as e:
            logger.warning("batch_item_failed", url=ref.url, error=str(e))
            return None, f"{ref.url}: {e}"
