"""Competitor deal scanner: scrapes merchant deal sites into a deal ledger."""

__version__ = "0.1.0"
