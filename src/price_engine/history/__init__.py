"""Historical layer -- daily closes from Kraken OHLC."""

from price_engine.history.fetcher import HistoricalRateFetcher
from price_engine.history.kraken_client import KrakenClient

__all__ = ["HistoricalRateFetcher", "KrakenClient"]
