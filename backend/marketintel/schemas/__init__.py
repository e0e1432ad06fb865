"""Pydantic schemas for the scan protocol."""

from marketintel.schemas.scan import (
    AggregateResult,
    ScanChunkResult,
    ScanCursor,
    ScanEvent,
    ScanPhase,
)

__all__ = [
    "AggregateResult",
    "ScanChunkResult",
    "ScanCursor",
    "ScanEvent",
    "ScanPhase",
]
