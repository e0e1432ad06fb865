"""Scan continuation and progress schemas.

A source scan is split into chunks. Each chunk takes a ScanCursor (or
nothing, meaning "start of source") and returns a ScanChunkResult whose
next_cursor, when present, is handed to the following chunk.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanPhase(str, Enum):
    """Lifecycle phases reported on the progress channel."""

    CONNECTING = "connecting"
    LISTING = "listing"
    FETCHING_DETAIL = "fetching_detail"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    ERROR = "error"


class ScanCursor(BaseModel):
    """Serializable marker of how far a source scan has progressed."""

    source: str
    offset: int = Field(default=0, ge=0)
    # Ordered listing entries, kept only for sources whose listing is
    # expensive to regenerate.
    listing: Optional[List[Dict[str, Any]]] = None
    # Identities enumerated by earlier chunks of this sequence
    observed: List[str] = Field(default_factory=list)
    truncated: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    run_id: Optional[UUID] = None

    @classmethod
    def start(cls, source: str, run_id: Optional[UUID] = None) -> "ScanCursor":
        return cls(source=source, run_id=run_id)

    def advance(self, processed: int, observed: List[str]) -> "ScanCursor":
        """Return a copy moved forward by `processed` entries."""
        seen = list(dict.fromkeys([*self.observed, *observed]))
        return self.model_copy(update={"offset": self.offset + processed, "observed": seen})

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "ScanCursor":
        return cls.model_validate_json(raw)


class ScanChunkResult(BaseModel):
    """Outcome of one chunk invocation for one source."""

    site: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    snapshotted: int = 0
    with_units_sold: int = 0
    expired: int = 0
    yielded_candidates: bool = False
    total_available: Optional[int] = None
    errors: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    is_complete: bool = False
    next_cursor: Optional[ScanCursor] = None
    timed_out: bool = False
    adapter_failed: bool = False

    @property
    def needs_retry(self) -> bool:
        """True when the chunk should be re-invoked with the same cursor."""
        return self.timed_out or self.adapter_failed


class AggregateResult(BaseModel):
    """Outcome of a full in-process scan across one or more sources."""

    chunks: Dict[str, List[ScanChunkResult]] = Field(default_factory=dict)
    processed: int = 0
    created: int = 0
    updated: int = 0
    snapshotted: int = 0
    expired: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    success: bool = True

    def add_chunk(self, result: ScanChunkResult) -> None:
        self.chunks.setdefault(result.site, []).append(result)
        self.processed += result.processed
        self.created += result.created
        self.updated += result.updated
        self.snapshotted += result.snapshotted
        self.expired += result.expired
        self.errors.extend(f"[{result.site}] {e}" for e in result.errors)


class ScanEvent(BaseModel):
    """One progress notification."""

    site: str
    phase: ScanPhase
    message: str
    current: Optional[int] = None
    total: Optional[int] = None
    at: datetime = Field(default_factory=_utcnow)
