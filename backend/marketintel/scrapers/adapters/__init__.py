"""Source adapters for the scanned deal sites."""

from marketintel.scrapers.adapters.bgeneral import BGeneralAdapter
from marketintel.scrapers.adapters.degusta import DegustaAdapter
from marketintel.scrapers.adapters.oferta24 import Oferta24Adapter
from marketintel.scrapers.adapters.rantanofertas import RantanOfertasAdapter

__all__ = [
    "BGeneralAdapter",
    "DegustaAdapter",
    "Oferta24Adapter",
    "RantanOfertasAdapter",
]
