"""USD price resolution with a multi-source fallback chain.

For one asset the resolver walks, stopping at the first success:
  1. fresh cached price
  2. on-chain oracles, in priority order, each with a small retry budget
  3. DEX order book (issued assets only), converted with XLM/USD
  4. most recent historical daily close
  5. last known price, however old (within the retention TTL)
  6. Decimal("0"), meaning unavailable

Steps 2-4 return either a Decimal or a StepFailure; exceptions from provider
clients are converted to StepFailure at the step boundary, and a step that
overruns its deadline is just another failure. Concurrent callers for the
same asset share one resolution. Public methods never raise.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from decimal import Decimal

from price_engine.cache.tiered_cache import TieredCache
from price_engine.config import PricingSettings
from price_engine.diagnostics import PricingEventLog, PricingEventType
from price_engine.exceptions import PriceEngineError, ProviderConfigError, ProviderError
from price_engine.history.fetcher import HistoricalRateFetcher
from price_engine.logging import bind_asset, get_logger, unbind_asset
from price_engine.market_data.orderbook import OrderbookEstimator
from price_engine.models import (
    AssetRef,
    OracleAssetId,
    OracleDescriptor,
    PriceQuote,
    PriceSource,
    StepFailure,
)
from price_engine.oracle.query_client import OracleQueryClient, scale_price
from price_engine.oracle.registry import OracleAssetRegistry

logger = get_logger(__name__)

ZERO = Decimal("0")
USD = "USD"

StepOutcome = Decimal | StepFailure
StepRunner = Callable[[AssetRef], Awaitable[StepOutcome]]

_FAILURE_EVENTS = {
    PriceSource.ORACLE: PricingEventType.ORACLE_ERROR,
    PriceSource.ORDERBOOK: PricingEventType.ORDERBOOK_ERROR,
    PriceSource.HISTORICAL: PricingEventType.HISTORICAL_ERROR,
}


class PriceResolver:
    """Resolves USD prices for Stellar assets.

    Args:
        registry: Asset -> oracle mapping.
        query_client: Oracle lastprice queries.
        estimator: Order book / recent trades estimator.
        cache: Shared tiered cache (prices, in-flight resolutions).
        settings: TTLs, spread threshold and deadlines.
        historical: Daily-close source; None disables the historical step.
        events: Diagnostics event log.
        max_attempts: Immediate attempts per oracle before moving on.
    """

    def __init__(
        self,
        registry: OracleAssetRegistry,
        query_client: OracleQueryClient,
        estimator: OrderbookEstimator,
        cache: TieredCache,
        settings: PricingSettings,
        historical: HistoricalRateFetcher | None = None,
        events: PricingEventLog | None = None,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._query = query_client
        self._estimator = estimator
        self._cache = cache
        self._settings = settings
        self._historical = historical
        self._events = events or PricingEventLog(clock=clock)
        self._max_attempts = max_attempts
        self._clock = clock

    @property
    def events(self) -> PricingEventLog:
        return self._events

    # ──────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────

    async def get_price(self, asset_code: str, asset_issuer: str | None = None) -> Decimal:
        """USD price of an asset, or Decimal("0") when no source can price it."""
        quote = await self.get_price_quote(asset_code, asset_issuer)
        return quote.price

    async def get_price_quote(
        self, asset_code: str, asset_issuer: str | None = None
    ) -> PriceQuote:
        """Like get_price, but also reports which step produced the price."""
        asset = AssetRef(asset_code, asset_issuer or None)
        try:
            return await self._cache.dedupe(
                f"resolve:{asset.key}", lambda: self._resolve(asset)
            )
        except PriceEngineError as e:
            logger.error("price_resolution_failed", asset=asset.key, error=str(e))
            return PriceQuote(asset, ZERO, PriceSource.UNAVAILABLE, self._clock())

    async def get_orderbook_price(
        self, asset_code: str, asset_issuer: str | None = None
    ) -> Decimal:
        """USD price from the DEX order book alone (0 for XLM or when unavailable)."""
        asset = AssetRef(asset_code, asset_issuer or None)
        if asset.is_native:
            return ZERO

        key = self._orderbook_key(asset)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        outcome = await self._cache.dedupe(key, lambda: self._orderbook_only(asset))
        if isinstance(outcome, StepFailure):
            return ZERO
        return outcome

    async def get_historical_rate(self, asset_code: str, day: date) -> Decimal:
        """USD daily close of an asset on day, or 0 when unknown."""
        if self._historical is None:
            return ZERO
        try:
            close = await self._historical.daily_close(asset_code, day)
        except PriceEngineError as e:
            self._events.record(
                PricingEventType.HISTORICAL_ERROR, asset_code, reason=str(e), day=str(day)
            )
            return ZERO
        return close if close is not None else ZERO

    async def get_historical_fx_rate(
        self, from_currency: str, to_currency: str, day: date
    ) -> Decimal:
        """Fiat exchange rate from_currency -> to_currency on day, or 0 when unknown."""
        if self._historical is None:
            return ZERO
        try:
            rate = await self._historical.fx_daily_close(from_currency, to_currency, day)
        except PriceEngineError as e:
            self._events.record(
                PricingEventType.HISTORICAL_ERROR,
                f"{from_currency}/{to_currency}",
                reason=str(e),
                day=str(day),
            )
            return ZERO
        return rate if rate is not None else ZERO

    async def clear_price_cache(self) -> None:
        """Drop cached prices, oracle asset lists and memoized resolutions."""
        await self._cache.clear()
        await self._registry.reset()
        logger.info("price_cache_cleared")

    # ──────────────────────────────────────────────
    # Fallback chain
    # ──────────────────────────────────────────────

    async def _resolve(self, asset: AssetRef) -> PriceQuote:
        bind_asset(asset.key)
        try:
            fresh = await self._cache.get(self._price_key(asset))
            if fresh is not None:
                self._events.record(PricingEventType.CACHE_HIT, asset.key)
                return PriceQuote(asset, fresh, PriceSource.CACHE, self._clock())
            self._events.record(PricingEventType.CACHE_MISS, asset.key)

            price = await self._run_network_steps(asset)
            if price is not None:
                return price

            last_known = await self._cache.get(self._last_known_key(asset))
            if last_known is not None:
                self._events.record(
                    PricingEventType.FALLBACK_USED, asset.key, source="last_known"
                )
                return PriceQuote(asset, last_known, PriceSource.CACHE, self._clock())

            logger.warning("price_unavailable", asset=asset.key)
            return PriceQuote(asset, ZERO, PriceSource.UNAVAILABLE, self._clock())
        finally:
            unbind_asset()

    async def _run_network_steps(self, asset: AssetRef) -> PriceQuote | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.resolve_timeout_seconds

        for source, runner, step_timeout in self._steps():
            remaining = deadline - loop.time()
            if remaining <= 0:
                self._note_failure(asset, StepFailure(source, "resolution deadline exceeded"))
                break

            outcome = await self._run_step(source, runner, asset, min(step_timeout, remaining))
            if isinstance(outcome, StepFailure):
                self._note_failure(asset, outcome)
                continue

            await self._remember(asset, outcome)
            self._events.record(
                PricingEventType.PRICE_FETCH, asset.key, source=source.value, price=str(outcome)
            )
            if source != PriceSource.ORACLE:
                self._events.record(
                    PricingEventType.FALLBACK_USED, asset.key, source=source.value
                )
            return PriceQuote(asset, outcome, source, self._clock())
        return None

    def _steps(self) -> list[tuple[PriceSource, StepRunner, float]]:
        s = self._settings
        steps: list[tuple[PriceSource, StepRunner, float]] = [
            (PriceSource.ORACLE, self._oracle_step, s.oracle_timeout_seconds),
            (PriceSource.ORDERBOOK, self._orderbook_step, s.orderbook_timeout_seconds),
        ]
        if self._historical is not None:
            steps.append(
                (PriceSource.HISTORICAL, self._historical_step, s.historical_timeout_seconds)
            )
        return steps

    async def _run_step(
        self, source: PriceSource, runner: StepRunner, asset: AssetRef, timeout: float
    ) -> StepOutcome:
        try:
            return await asyncio.wait_for(runner(asset), timeout)
        except asyncio.TimeoutError:
            return StepFailure(source, f"timed out after {timeout:g}s")
        except ProviderConfigError as e:
            return StepFailure(source, str(e), transient=False)
        except PriceEngineError as e:
            return StepFailure(source, str(e))

    def _note_failure(self, asset: AssetRef, failure: StepFailure) -> None:
        self._events.record(
            _FAILURE_EVENTS.get(failure.step, PricingEventType.ORACLE_ERROR),
            asset.key,
            reason=failure.reason,
            transient=failure.transient,
        )

    async def _remember(self, asset: AssetRef, price: Decimal) -> None:
        await self._cache.set(self._price_key(asset), price, self._settings.price_ttl_seconds)
        await self._cache.set(
            self._last_known_key(asset), price, self._settings.stale_retention_seconds
        )

    # ──────────────────────────────────────────────
    # Oracle step
    # ──────────────────────────────────────────────

    async def _oracle_step(self, asset: AssetRef) -> StepOutcome:
        return await self._oracle_usd_price(asset, convert_quote=True)

    async def _oracle_usd_price(self, asset: AssetRef, convert_quote: bool) -> StepOutcome:
        """Try every oracle listing asset, in priority order.

        With convert_quote, a price quoted in another currency is multiplied by
        that currency's own oracle price, looked up without further conversion.
        """
        candidates = await self._registry.candidates(asset)
        if not candidates:
            return StepFailure(PriceSource.ORACLE, "not listed by any oracle", transient=False)

        reasons: list[str] = []
        for oracle, asset_id in candidates:
            outcome = await self._query_with_retry(oracle, asset_id)
            if isinstance(outcome, StepFailure):
                reasons.append(f"{oracle.name}: {outcome.reason}")
                continue

            if oracle.quote_currency.upper() == USD or not convert_quote:
                return outcome

            rate = await self._oracle_usd_price(
                AssetRef(oracle.quote_currency), convert_quote=False
            )
            if isinstance(rate, StepFailure):
                reasons.append(f"{oracle.name}: no USD rate for {oracle.quote_currency}")
                continue
            logger.debug(
                "oracle_quote_converted",
                oracle=oracle.name,
                quote_currency=oracle.quote_currency,
                rate=str(rate),
            )
            return outcome * rate

        return StepFailure(PriceSource.ORACLE, "; ".join(reasons))

    async def _query_with_retry(
        self, oracle: OracleDescriptor, asset_id: OracleAssetId
    ) -> StepOutcome:
        """Up to max_attempts immediate lastprice queries; zero counts as a failure."""
        reason = "no attempts"
        for attempt in range(1, self._max_attempts + 1):
            try:
                raw = await self._query.get_last_price(oracle, asset_id)
            except ProviderConfigError as e:
                return StepFailure(PriceSource.ORACLE, str(e), transient=False)
            except ProviderError as e:
                reason = str(e)
            else:
                if raw > 0:
                    price = scale_price(raw, oracle)
                    logger.info(
                        "oracle_price_fetched",
                        oracle=oracle.name,
                        identifier=str(asset_id),
                        price=str(price),
                        attempt=attempt,
                    )
                    return price
                reason = "zero price"
            logger.debug(
                "oracle_attempt_failed",
                oracle=oracle.name,
                attempt=attempt,
                max_attempts=self._max_attempts,
                reason=reason,
            )
        return StepFailure(PriceSource.ORACLE, reason)

    # ──────────────────────────────────────────────
    # Order book step
    # ──────────────────────────────────────────────

    async def _orderbook_step(self, asset: AssetRef) -> StepOutcome:
        if asset.is_native:
            return StepFailure(PriceSource.ORDERBOOK, "native asset has no XLM book", False)

        xlm_price = await self._orderbook_xlm_price(asset)
        if isinstance(xlm_price, StepFailure):
            return xlm_price

        xlm_usd = await self._xlm_usd()
        if isinstance(xlm_usd, StepFailure):
            return StepFailure(PriceSource.ORDERBOOK, f"XLM/USD unavailable: {xlm_usd.reason}")
        return xlm_price * xlm_usd

    async def _orderbook_xlm_price(self, asset: AssetRef) -> StepOutcome:
        """ASSET/XLM from the book mid, or recent trades when the spread is too wide."""
        estimate = await self._estimator.estimate(asset)
        if estimate is None:
            return StepFailure(PriceSource.ORDERBOOK, "no usable order book")

        if estimate.spread_percent <= self._settings.spread_threshold_percent:
            return estimate.mid_price

        last_trade = await self._estimator.last_trade_price(asset)
        if last_trade is None:
            return StepFailure(
                PriceSource.ORDERBOOK,
                f"spread {estimate.spread_percent:.2f}% and no recent trades",
            )
        logger.info(
            "orderbook_spread_too_wide",
            spread_percent=str(round(estimate.spread_percent, 4)),
            last_trade_price=str(last_trade),
        )
        return last_trade

    async def _xlm_usd(self) -> StepOutcome:
        native = AssetRef.native()
        cached = await self._cache.get(self._price_key(native))
        if cached is not None:
            return cached
        outcome = await self._oracle_usd_price(native, convert_quote=True)
        if not isinstance(outcome, StepFailure):
            await self._remember(native, outcome)
        return outcome

    async def _orderbook_only(self, asset: AssetRef) -> StepOutcome:
        timeout = self._settings.orderbook_timeout_seconds
        outcome = await self._run_step(
            PriceSource.ORDERBOOK, self._orderbook_step, asset, timeout
        )
        if isinstance(outcome, StepFailure):
            self._note_failure(asset, outcome)
            return outcome
        await self._cache.set(
            self._orderbook_key(asset), outcome, self._settings.price_ttl_seconds
        )
        return outcome

    # ──────────────────────────────────────────────
    # Historical step
    # ──────────────────────────────────────────────

    async def _historical_step(self, asset: AssetRef) -> StepOutcome:
        assert self._historical is not None
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        close = await self._historical.latest_close(
            asset.symbol, today, self._settings.historical_lookback_days
        )
        if close is None:
            return StepFailure(PriceSource.HISTORICAL, "no recent daily close")
        return close

    # ──────────────────────────────────────────────
    # Cache keys
    # ──────────────────────────────────────────────

    @staticmethod
    def _price_key(asset: AssetRef) -> str:
        return f"price:{asset.key}"

    @staticmethod
    def _last_known_key(asset: AssetRef) -> str:
        return f"price_last:{asset.key}"

    @staticmethod
    def _orderbook_key(asset: AssetRef) -> str:
        return f"price_orderbook:{asset.key}"
