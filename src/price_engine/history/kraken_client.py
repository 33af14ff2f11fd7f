"""Kraken public market data via ccxt async.

Only two public endpoints are needed: the tradable pair list (load_markets)
and daily OHLC bars. Both are scheduled through the historical gateway;
ccxt's own throttle stays on as a second line of defence.
"""

import ccxt.async_support as ccxt_async

from price_engine.exceptions import HistoricalDataError
from price_engine.gateway.rate_limiter import RateLimitedGateway
from price_engine.logging import get_logger

logger = get_logger(__name__)

DAILY_TIMEFRAME = "1d"


class KrakenClient:
    """Thin async wrapper over ccxt.async_support.kraken (no API key needed)."""

    def __init__(
        self,
        gateway: RateLimitedGateway,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._gateway = gateway
        self._exchange = exchange or ccxt_async.kraken({"enableRateLimit": True})

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def close(self) -> None:
        """Clean up ccxt async resources. Must be called to avoid session leaks."""
        await self._exchange.close()
        logger.info("kraken_connection_closed")

    async def supported_pairs(self) -> dict[str, str]:
        """Map every tradable pair name to its ccxt unified symbol.

        Kraken names a pair several ways (e.g. XXLMZUSD and XLMUSD for
        XLM/USD); both the market id and the altname are included.
        """
        try:
            markets = await self._gateway.schedule(lambda: self._exchange.load_markets(True))
        except ccxt_async.BaseError as e:
            raise HistoricalDataError(f"Kraken pair list unavailable: {e}") from e

        pairs: dict[str, str] = {}
        for symbol, market in markets.items():
            market_id = market.get("id")
            if market_id:
                pairs[market_id] = symbol
            altname = (market.get("info") or {}).get("altname")
            if altname:
                pairs[altname] = symbol
        logger.debug("kraken_pairs_loaded", markets=len(markets), names=len(pairs))
        return pairs

    async def fetch_daily_ohlcv(self, symbol: str, since_ms: int) -> list[list]:
        """Daily bars since since_ms as [timestamp_ms, open, high, low, close, volume]."""
        try:
            return await self._gateway.schedule(
                lambda: self._exchange.fetch_ohlcv(
                    symbol, timeframe=DAILY_TIMEFRAME, since=since_ms
                )
            )
        except ccxt_async.BaseError as e:
            raise HistoricalDataError(f"Kraken OHLC for {symbol} failed: {e}") from e
