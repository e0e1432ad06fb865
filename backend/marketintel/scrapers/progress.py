"""Progress Channel: structured, fire-and-forget scan events."""

import asyncio
from typing import Callable, Optional

import structlog

from marketintel.schemas.scan import ScanEvent, ScanPhase

logger = structlog.get_logger(__name__)

Subscriber = Callable[[ScanEvent], None]


class ProgressChannel:
    """Emits ScanEvents for one site to the log and to an optional subscriber.

    A subscriber that raises is detached; the scan itself never sees the
    failure.
    """

    def __init__(self, site: str, subscriber: Optional[Subscriber] = None):
        self.site = site
        self._subscriber = subscriber
        self.logger = logger.bind(site=site)

    @property
    def attached(self) -> bool:
        return self._subscriber is not None

    def emit(
        self,
        phase: ScanPhase,
        message: str,
        current: Optional[int] = None,
        total: Optional[int] = None,
    ) -> ScanEvent:
        event = ScanEvent(site=self.site, phase=phase, message=message, current=current, total=total)
        log = self.logger.warning if phase == ScanPhase.ERROR else self.logger.info
        log("scan_progress", phase=phase.value, message=message, current=current, total=total)

        if self._subscriber is not None:
            try:
                self._subscriber(event)
            except Exception as e:
                self.logger.error("progress_subscriber_failed", error=str(e), exc_info=True)
                self._subscriber = None
        return event

    def for_site(self, site: str) -> "ProgressChannel":
        """Channel for another site sharing this channel's subscriber."""
        return ProgressChannel(site, self._subscriber)


class QueueSubscriber:
    """Buffers events in an asyncio.Queue for a streaming consumer.

    Events are dropped when the queue is full so a slow consumer can't
    stall the scan.
    """

    def __init__(self, maxsize: int = 1000):
        self.queue: "asyncio.Queue[ScanEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: ScanEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    def drain(self) -> list:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events
