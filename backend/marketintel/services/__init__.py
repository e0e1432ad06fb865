"""Service layer for the deal ledger and scan bookkeeping."""

from marketintel.services.deal_ledger import DealLedger, ReconcileStats
from marketintel.services.deal_stats import DealStatsService
from marketintel.services.scan_run_service import ScanRunService

__all__ = ["DealLedger", "DealStatsService", "ReconcileStats", "ScanRunService"]
