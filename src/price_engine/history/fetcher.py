"""Daily USD and fiat exchange rates from Kraken OHLC history.

Keeps one DailyRateMap (yyyy-mm-dd -> close) per asset or fiat pair in the
TieredCache, covering the trailing year:
  - a map is refetched when it is older than the refresh TTL or when today's
    close is missing; a still-missing today forces exactly one more fetch
  - the Kraken pair list is cached for 24h and candidates are tried in order
  - concurrent refreshes of the same series share one in-flight fetch
  - cache_only lookups never touch the network

Fetch failures propagate as HistoricalDataError so the caller decides what a
missing rate means; an unsupported pair is not an error and yields None.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from price_engine.cache.tiered_cache import TieredCache
from price_engine.config import HistoricalSettings
from price_engine.exceptions import HistoricalDataError
from price_engine.history.kraken_client import KrakenClient
from price_engine.logging import get_logger
from price_engine.models import NATIVE_CODE, DailyRateMap

logger = get_logger(__name__)

_PAIRS_KEY = "kraken_pairs"

MS_PER_DAY = 86_400_000


def day_key(day: date) -> str:
    return day.strftime("%Y-%m-%d")


def bar_day_key(timestamp_ms: int) -> str:
    """UTC calendar day of an OHLC bar opening at timestamp_ms."""
    return day_key(datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date())


def asset_pair_candidates(code: str) -> list[str]:
    """Kraken pair names that may quote code in USD, most common first."""
    code = code.upper()
    return [
        f"{code}USD",
        f"{code}ZUSD",
        f"X{code}ZUSD",
        f"{code}XUSD",
        f"XX{code}ZUSD",
    ]


def fiat_pair_candidates(from_ccy: str, to_ccy: str) -> list[str]:
    """Kraken pair names for a fiat cross (Z-prefixed legacy names included)."""
    f, t = from_ccy.upper(), to_ccy.upper()
    return [f"{f}{t}", f"Z{f}Z{t}", f"{f}Z{t}", f"Z{f}{t}"]


@dataclass(frozen=True)
class _Series:
    """One daily rate series and where it lives in the cache."""

    label: str
    candidates: tuple[str, ...]

    @property
    def map_key(self) -> str:
        return f"kraken_rates:{self.label}"

    @property
    def fetched_key(self) -> str:
        return f"kraken_fetched:{self.label}"


class HistoricalRateFetcher:
    """Serves daily closes for assets (in USD) and fiat pairs.

    Args:
        client: Kraken client (calls go through the historical gateway).
        cache: Shared tiered cache for pair lists and rate maps.
        settings: Lookback and TTL configuration.
        clock: Wall-clock time source in seconds.
    """

    def __init__(
        self,
        client: KrakenClient,
        cache: TieredCache,
        settings: HistoricalSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._cache = cache
        self._settings = settings
        self._clock = clock

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def daily_close(
        self, code: str, day: date, cache_only: bool = False
    ) -> Decimal | None:
        """USD close of asset code on day, or None when unknown."""
        return await self._close_on(self._asset_series(code), day, cache_only)

    async def fx_daily_close(
        self, from_ccy: str, to_ccy: str, day: date, cache_only: bool = False
    ) -> Decimal | None:
        """from_ccy -> to_ccy close on day (1 for identical currencies)."""
        if from_ccy.upper() == to_ccy.upper():
            return Decimal("1")
        return await self._close_on(self._fx_series(from_ccy, to_ccy), day, cache_only)

    async def latest_close(
        self, code: str, on_or_before: date, max_age_days: int
    ) -> Decimal | None:
        """Most recent USD close no older than max_age_days before on_or_before."""
        series = self._asset_series(code)
        rates = await self._rates(series, cache_only=False, wanted=day_key(on_or_before))
        for offset in range(max_age_days + 1):
            close = rates.get(day_key(on_or_before - timedelta(days=offset)))
            if close is not None and close > 0:
                return close
        return None

    async def supported_pairs(self) -> dict[str, str]:
        """Kraken pair name -> ccxt symbol, cached for the pair-list TTL."""
        return await self._cache.get_or_compute(
            _PAIRS_KEY,
            self._settings.pairs_ttl_seconds,
            self._client.supported_pairs,
        )

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    @staticmethod
    def _asset_series(code: str) -> _Series:
        code = code.upper()
        if code == "NATIVE":
            code = NATIVE_CODE
        return _Series(label=f"{code}/USD", candidates=tuple(asset_pair_candidates(code)))

    @staticmethod
    def _fx_series(from_ccy: str, to_ccy: str) -> _Series:
        return _Series(
            label=f"{from_ccy.upper()}/{to_ccy.upper()}",
            candidates=tuple(fiat_pair_candidates(from_ccy, to_ccy)),
        )

    async def _close_on(self, series: _Series, day: date, cache_only: bool) -> Decimal | None:
        key = day_key(day)
        rates = await self._rates(series, cache_only=cache_only, wanted=key)
        close = rates.get(key)
        return close if close is not None and close > 0 else None

    async def _rates(self, series: _Series, cache_only: bool, wanted: str) -> DailyRateMap:
        if cache_only:
            return await self._cache.get(series.map_key) or {}

        await self._ensure_fresh(series)
        rates: DailyRateMap = await self._cache.get(series.map_key) or {}
        if wanted not in rates and wanted == self._today_key():
            # today still missing after a refresh: one forced refetch
            await self._ensure_fresh(series, force=True)
            rates = await self._cache.get(series.map_key) or {}
        return rates

    async def _ensure_fresh(self, series: _Series, force: bool = False) -> None:
        dedupe_key = f"kraken_refresh:{series.label}:{'force' if force else 'auto'}"
        await self._cache.dedupe(dedupe_key, lambda: self._refresh(series, force))

    async def _refresh(self, series: _Series, force: bool) -> None:
        if not force and await self._is_fresh(series):
            return

        pairs = await self.supported_pairs()
        valid = [name for name in series.candidates if name in pairs]
        if not valid:
            logger.debug("historical_pair_unsupported", series=series.label)
            return

        since_ms = int(self._clock() * 1000) - self._settings.lookback_days * MS_PER_DAY
        last_error: HistoricalDataError | None = None
        for name in valid:
            symbol = pairs[name]
            try:
                bars = await self._client.fetch_daily_ohlcv(symbol, since_ms)
            except HistoricalDataError as e:
                last_error = e
                logger.warning(
                    "historical_fetch_failed", series=series.label, pair=name, error=str(e)
                )
                continue
            await self._store_bars(series, bars)
            logger.info(
                "historical_rates_refreshed",
                series=series.label,
                pair=name,
                bars=len(bars),
                forced=force,
            )
            return

        assert last_error is not None
        raise last_error

    async def _is_fresh(self, series: _Series) -> bool:
        fetched_at = await self._cache.get(series.fetched_key)
        if fetched_at is None:
            return False
        if self._clock() - fetched_at >= self._settings.refresh_ttl_seconds:
            return False
        rates = await self._cache.get(series.map_key) or {}
        return self._today_key() in rates

    async def _store_bars(self, series: _Series, bars: list[list]) -> None:
        rates: DailyRateMap = dict(await self._cache.get(series.map_key) or {})
        for bar in bars:
            if len(bar) < 5 or bar[4] is None:
                continue
            try:
                close = Decimal(str(bar[4]))
            except InvalidOperation:
                continue
            if close > 0:
                rates[bar_day_key(int(bar[0]))] = close

        ttl = self._settings.map_ttl_seconds
        await self._cache.set(series.map_key, rates, ttl)
        await self._cache.set(series.fetched_key, self._clock(), ttl)

    def _today_key(self) -> str:
        return day_key(datetime.fromtimestamp(self._clock(), tz=timezone.utc).date())
