"""Tests for PriceResolver: fallback chain, caching, de-duplication, deadlines.

Providers are AsyncMock doubles; the cache runs on a fake clock.
"""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from price_engine.cache.tiered_cache import TieredCache
from price_engine.chain.stellar_client import StellarClient
from price_engine.config import NetworkSettings, PricingSettings
from price_engine.diagnostics import PricingEventType
from price_engine.exceptions import HistoricalDataError, HorizonError, SimulationError
from price_engine.gateway.rate_limiter import RateLimitedGateway
from price_engine.market_data.orderbook import OrderbookEstimator
from price_engine.models import (
    AssetRef,
    OracleDescriptor,
    OrderbookEstimate,
    OtherAsset,
    PriceSource,
)
from price_engine.oracle.query_client import OracleQueryClient
from price_engine.oracle.registry import OracleAssetRegistry
from price_engine.resolver import PriceResolver

from conftest import CEX_DEX, STELLAR, USDC_ISSUER, FakeClock, raw_price

AQUA_ISSUER = "GBNZILSTVQZ4R7IKQDGHYGY2QXL5QOFJYQMXPKWRRM5PAV7Y4M67AQUA"
BACKUP = OracleDescriptor(name="BACKUP", contract_id="CBACKUP", quote_currency="USD")

XLM = AssetRef.native()
AQUA = AssetRef("AQUA", AQUA_ISSUER)
USDC = AssetRef("USDC", USDC_ISSUER)


class Providers:
    """Mock providers with per-asset oracle listings and per-oracle prices."""

    def __init__(self) -> None:
        self.listings: dict[AssetRef, list] = {}
        self.prices: dict[tuple[str, str], object] = {}

        self.registry = MagicMock()
        self.registry.candidates = AsyncMock(side_effect=self._candidates)
        self.registry.reset = AsyncMock()

        self.query = MagicMock()
        self.query.get_last_price = AsyncMock(side_effect=self._last_price)

        self.estimator = MagicMock()
        self.estimator.estimate = AsyncMock(return_value=None)
        self.estimator.last_trade_price = AsyncMock(return_value=None)

        self.historical = MagicMock()
        self.historical.latest_close = AsyncMock(return_value=None)
        self.historical.daily_close = AsyncMock(return_value=None)
        self.historical.fx_daily_close = AsyncMock(return_value=None)

    def list_asset(self, asset: AssetRef, oracle: OracleDescriptor, symbol: str) -> None:
        self.listings.setdefault(asset, []).append((oracle, OtherAsset(symbol)))

    def set_price(self, oracle: OracleDescriptor, symbol: str, value) -> None:
        """value: a plain price string, an exception, or a list of either."""
        self.prices[(oracle.name, symbol)] = value

    async def _candidates(self, asset: AssetRef) -> list:
        return list(self.listings.get(asset, []))

    async def _last_price(self, oracle: OracleDescriptor, asset_id: OtherAsset) -> Decimal:
        value = self.prices.get((oracle.name, asset_id.symbol), "0")
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        return raw_price(value, oracle.decimals)


@pytest.fixture
def providers() -> Providers:
    return Providers()


@pytest.fixture
def settings() -> PricingSettings:
    return PricingSettings()


@pytest.fixture
def resolver(
    providers: Providers, cache: TieredCache, settings: PricingSettings, clock: FakeClock
) -> PriceResolver:
    return PriceResolver(
        registry=providers.registry,
        query_client=providers.query,
        estimator=providers.estimator,
        cache=cache,
        settings=settings,
        historical=providers.historical,
        clock=clock,
    )


def book(bid: str, ask: str) -> OrderbookEstimate:
    b, a = Decimal(bid), Decimal(ask)
    mid = (b + a) / 2
    return OrderbookEstimate(
        mid_price=mid, spread_percent=(a - b) / mid * 100, best_bid=b, best_ask=a
    )


class TestOracleStep:
    @pytest.mark.asyncio
    async def test_scaled_oracle_price(self, resolver: PriceResolver, providers: Providers) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.36")

        quote = await resolver.get_price_quote("XLM")

        assert quote.price == Decimal("0.36")
        assert quote.source == PriceSource.ORACLE

    @pytest.mark.asyncio
    async def test_fresh_cache_within_ttl(
        self, resolver: PriceResolver, providers: Providers, clock: FakeClock
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.36")

        await resolver.get_price("XLM")
        clock.advance(299)
        quote = await resolver.get_price_quote("XLM")

        assert quote.source == PriceSource.CACHE
        assert quote.price == Decimal("0.36")
        assert providers.query.get_last_price.await_count == 1

    @pytest.mark.asyncio
    async def test_refetched_after_ttl(
        self, resolver: PriceResolver, providers: Providers, clock: FakeClock
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.36")

        await resolver.get_price("XLM")
        clock.advance(300)
        providers.set_price(CEX_DEX, "XLM", "0.40")

        assert await resolver.get_price("XLM") == Decimal("0.40")
        assert providers.query.get_last_price.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_oracle_call(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        gate = asyncio.Event()

        async def slow_price(oracle, asset_id) -> Decimal:
            await gate.wait()
            return raw_price("0.36")

        providers.query.get_last_price.side_effect = slow_price

        waiters = [asyncio.create_task(resolver.get_price("XLM")) for _ in range(10)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*waiters)

        assert results == [Decimal("0.36")] * 10
        assert providers.query.get_last_price.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_errors_and_zero_prices(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", [SimulationError("HostError"), "0", "0.36"])

        assert await resolver.get_price("XLM") == Decimal("0.36")
        assert providers.query.get_last_price.await_count == 3

    @pytest.mark.asyncio
    async def test_next_oracle_after_three_failed_attempts(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.list_asset(XLM, BACKUP, "XLM")
        providers.set_price(CEX_DEX, "XLM", SimulationError("HostError"))
        providers.set_price(BACKUP, "XLM", "0.35")

        assert await resolver.get_price("XLM") == Decimal("0.35")
        oracles = [c.args[0].name for c in providers.query.get_last_price.await_args_list]
        assert oracles == ["CEX_DEX", "CEX_DEX", "CEX_DEX", "BACKUP"]

    @pytest.mark.asyncio
    async def test_non_usd_quote_converted_one_hop(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(AQUA, STELLAR, "AQUA")
        providers.set_price(STELLAR, "AQUA", "0.002")
        providers.list_asset(AssetRef("USDC"), CEX_DEX, "USDC")
        providers.set_price(CEX_DEX, "USDC", "0.999")

        assert await resolver.get_price("AQUA", AQUA_ISSUER) == Decimal("0.001998")

    @pytest.mark.asyncio
    async def test_quote_rate_lookup_is_not_converted_again(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(AQUA, STELLAR, "AQUA")
        providers.set_price(STELLAR, "AQUA", "0.002")
        # USDC itself only listed by a USDC-quoted oracle
        providers.list_asset(AssetRef("USDC"), STELLAR, "USDC")
        providers.set_price(STELLAR, "USDC", "1")

        assert await resolver.get_price("AQUA", AQUA_ISSUER) == Decimal("0.002")
        assert providers.registry.candidates.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_quote_rate_fails_that_oracle(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(AQUA, STELLAR, "AQUA")
        providers.set_price(STELLAR, "AQUA", "0.002")

        assert await resolver.get_price("AQUA", AQUA_ISSUER) == Decimal("0")


class TestOrderbookStep:
    @pytest.mark.asyncio
    async def test_mid_price_times_xlm_usd(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.10")
        providers.estimator.estimate.return_value = book("0.40", "0.42")

        quote = await resolver.get_price_quote("AQUA", AQUA_ISSUER)

        assert quote.source == PriceSource.ORDERBOOK
        assert quote.price == Decimal("0.041")
        providers.estimator.last_trade_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wide_spread_uses_last_trades(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.10")
        providers.estimator.estimate.return_value = book("0.30", "0.50")
        providers.estimator.last_trade_price.return_value = Decimal("0.45")

        assert await resolver.get_price("AQUA", AQUA_ISSUER) == Decimal("0.045")

    @pytest.mark.asyncio
    async def test_discarded_without_xlm_usd(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.estimator.estimate.return_value = book("0.40", "0.42")
        providers.historical.latest_close.return_value = Decimal("0.05")

        quote = await resolver.get_price_quote("AQUA", AQUA_ISSUER)

        assert quote.source == PriceSource.HISTORICAL
        assert quote.price == Decimal("0.05")

    @pytest.mark.asyncio
    async def test_native_skips_orderbook(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        await resolver.get_price("XLM")
        providers.estimator.estimate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_orderbook_price(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.10")
        providers.estimator.estimate.return_value = book("0.40", "0.42")

        assert await resolver.get_orderbook_price("AQUA", AQUA_ISSUER) == Decimal("0.041")
        assert await resolver.get_orderbook_price("AQUA", AQUA_ISSUER) == Decimal("0.041")
        assert providers.estimator.estimate.await_count == 1

    @pytest.mark.asyncio
    async def test_get_orderbook_price_native_is_zero(self, resolver: PriceResolver) -> None:
        assert await resolver.get_orderbook_price("XLM") == Decimal("0")

    @pytest.mark.asyncio
    async def test_get_orderbook_price_horizon_failure_is_zero(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.estimator.estimate.side_effect = HorizonError("502")
        assert await resolver.get_orderbook_price("AQUA", AQUA_ISSUER) == Decimal("0")


class TestFallbackCompleteness:
    @pytest.mark.asyncio
    async def test_historical_close_when_live_sources_fail(
        self, resolver: PriceResolver, providers: Providers, clock: FakeClock
    ) -> None:
        providers.historical.latest_close.return_value = Decimal("0.12")

        quote = await resolver.get_price_quote("XLM")

        assert quote.source == PriceSource.HISTORICAL
        assert quote.price == Decimal("0.12")
        code, on_or_before, max_age = providers.historical.latest_close.await_args.args
        assert (code, on_or_before, max_age) == ("XLM", date(2023, 11, 14), 3)

    @pytest.mark.asyncio
    async def test_stale_value_when_everything_fails(
        self, resolver: PriceResolver, providers: Providers, clock: FakeClock
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.36")
        await resolver.get_price("XLM")

        clock.advance(3600)
        providers.set_price(CEX_DEX, "XLM", SimulationError("rpc down"))
        providers.historical.latest_close.side_effect = HistoricalDataError("kraken down")

        quote = await resolver.get_price_quote("XLM")

        assert quote.price == Decimal("0.36")
        assert quote.source == PriceSource.CACHE

    @pytest.mark.asyncio
    async def test_zero_when_nothing_known(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        quote = await resolver.get_price_quote("AQUA", AQUA_ISSUER)

        assert quote.price == Decimal("0")
        assert quote.source == PriceSource.UNAVAILABLE
        assert not quote.is_available

    @pytest.mark.asyncio
    async def test_never_raises_on_provider_errors(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.registry.candidates.side_effect = SimulationError("rpc down")
        providers.estimator.estimate.side_effect = HorizonError("horizon down")
        providers.historical.latest_close.side_effect = HistoricalDataError("kraken down")

        assert await resolver.get_price("AQUA", AQUA_ISSUER) == Decimal("0")

    @pytest.mark.asyncio
    async def test_slow_step_times_out(
        self, providers: Providers, cache: TieredCache, clock: FakeClock
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")

        async def hang(oracle, asset_id) -> Decimal:
            await asyncio.Event().wait()
            return Decimal("0")

        providers.query.get_last_price.side_effect = hang
        providers.historical.latest_close.return_value = Decimal("0.12")
        resolver = PriceResolver(
            registry=providers.registry,
            query_client=providers.query,
            estimator=providers.estimator,
            cache=cache,
            settings=PricingSettings(oracle_timeout_seconds=0.05),
            historical=providers.historical,
            clock=clock,
        )

        quote = await resolver.get_price_quote("XLM")

        assert quote.source == PriceSource.HISTORICAL
        errors = [
            e for e in resolver.events.events() if e.event_type == PricingEventType.ORACLE_ERROR
        ]
        assert "timed out" in errors[0].details["reason"]

    @pytest.mark.asyncio
    async def test_one_asset_failure_does_not_affect_another(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.36")
        providers.list_asset(USDC, CEX_DEX, "USDC")
        providers.set_price(CEX_DEX, "USDC", SimulationError("HostError"))

        xlm, usdc = await asyncio.gather(
            resolver.get_price("XLM"), resolver.get_price("USDC", USDC_ISSUER)
        )

        assert xlm == Decimal("0.36")
        assert usdc == Decimal("0")

    @pytest.mark.asyncio
    async def test_without_historical_source(
        self, providers: Providers, cache: TieredCache, clock: FakeClock
    ) -> None:
        resolver = PriceResolver(
            registry=providers.registry,
            query_client=providers.query,
            estimator=providers.estimator,
            cache=cache,
            settings=PricingSettings(),
            historical=None,
            clock=clock,
        )
        assert await resolver.get_price("XLM") == Decimal("0")
        assert await resolver.get_historical_rate("XLM", date(2023, 11, 1)) == Decimal("0")


class TestHistoricalRates:
    @pytest.mark.asyncio
    async def test_daily_close(self, resolver: PriceResolver, providers: Providers) -> None:
        providers.historical.daily_close.return_value = Decimal("0.11")
        assert await resolver.get_historical_rate("XLM", date(2023, 11, 1)) == Decimal("0.11")

    @pytest.mark.asyncio
    async def test_unknown_close_is_zero(self, resolver: PriceResolver) -> None:
        assert await resolver.get_historical_rate("XLM", date(2023, 11, 1)) == Decimal("0")

    @pytest.mark.asyncio
    async def test_fetch_error_is_zero(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.historical.daily_close.side_effect = HistoricalDataError("down")
        assert await resolver.get_historical_rate("XLM", date(2023, 11, 1)) == Decimal("0")
        assert resolver.events.recent_errors()

    @pytest.mark.asyncio
    async def test_fx_rate(self, resolver: PriceResolver, providers: Providers) -> None:
        providers.historical.fx_daily_close.return_value = Decimal("1.08")
        rate = await resolver.get_historical_fx_rate("EUR", "USD", date(2023, 11, 1))
        assert rate == Decimal("1.08")


class TestClearPriceCache:
    @pytest.mark.asyncio
    async def test_clear_forces_refetch(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.list_asset(XLM, CEX_DEX, "XLM")
        providers.set_price(CEX_DEX, "XLM", "0.36")
        await resolver.get_price("XLM")

        await resolver.clear_price_cache()
        await resolver.get_price("XLM")

        providers.registry.reset.assert_awaited_once()
        assert providers.query.get_last_price.await_count == 2


class TestDiagnosticsEvents:
    @pytest.mark.asyncio
    async def test_hits_misses_and_fallbacks_recorded(
        self, resolver: PriceResolver, providers: Providers
    ) -> None:
        providers.historical.latest_close.return_value = Decimal("0.12")

        await resolver.get_price("XLM")
        await resolver.get_price("XLM")

        kinds = [e.event_type for e in resolver.events.events()]
        assert PricingEventType.CACHE_MISS in kinds
        assert PricingEventType.ORACLE_ERROR in kinds
        assert PricingEventType.FALLBACK_USED in kinds
        assert kinds[-1] == PricingEventType.CACHE_HIT
        assert resolver.events.diagnostics()["cache_hit_rate"] == 50.0


class TestMisconfiguredOracle:
    """A malformed contract id fails the oracle step only."""

    @pytest.fixture
    def wired(self, cache: TieredCache, clock: FakeClock):
        soroban = MagicMock()
        soroban.load_account = AsyncMock()
        soroban.simulate_transaction = AsyncMock()
        soroban.close = AsyncMock()
        horizon = MagicMock()
        horizon.close = AsyncMock()
        with (
            patch("price_engine.chain.stellar_client.SorobanServerAsync", return_value=soroban),
            patch("price_engine.chain.stellar_client.ServerAsync", return_value=horizon),
            patch("price_engine.chain.stellar_client.AiohttpClient"),
        ):
            ledger = StellarClient(
                NetworkSettings(), RateLimitedGateway("test", window_seconds=10, burst_limit=100)
            )
            query = OracleQueryClient(ledger)
            typo = OracleDescriptor(name="TYPO", contract_id="CTYPO_NOT_A_CONTRACT")
            registry = OracleAssetRegistry(
                [typo], query, cache, network_passphrase=ledger.network_passphrase, clock=clock
            )
            resolver = PriceResolver(
                registry=registry,
                query_client=query,
                estimator=OrderbookEstimator(ledger),
                cache=cache,
                settings=PricingSettings(),
                clock=clock,
            )
            yield ledger, soroban, resolver

    @pytest.mark.asyncio
    async def test_stale_value_returned(self, wired, cache: TieredCache) -> None:
        ledger, soroban, resolver = wired
        await ledger.connect()
        await cache.set("price_last:XLM", Decimal("0.1"), 86_400)

        quote = await resolver.get_price_quote("XLM")

        assert quote.price == Decimal("0.1")
        assert quote.source == PriceSource.CACHE
        soroban.simulate_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_without_stale_value(self, wired) -> None:
        ledger, _, resolver = wired
        await ledger.connect()

        assert await resolver.get_price("XLM") == Decimal("0")
