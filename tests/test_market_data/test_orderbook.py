"""Tests for OrderbookEstimator and its pure helpers.

All amounts use exact Decimal values.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from price_engine.market_data.orderbook import (
    OrderbookEstimator,
    compute_mid_price,
    trade_price,
    volume_weighted_price,
)
from price_engine.models import AssetRef

from conftest import USDC_ISSUER

USDC = AssetRef("USDC", USDC_ISSUER)


class TestComputeMidPrice:
    def test_mid_and_spread(self) -> None:
        estimate = compute_mid_price(Decimal("0.40"), Decimal("0.42"))
        assert estimate is not None
        assert estimate.mid_price == Decimal("0.41")
        # (0.42 - 0.40) / 0.41 * 100 = 4.878...
        assert round(estimate.spread_percent, 3) == Decimal("4.878")

    def test_wide_spread(self) -> None:
        estimate = compute_mid_price(Decimal("0.30"), Decimal("0.50"))
        assert estimate is not None
        assert estimate.mid_price == Decimal("0.40")
        assert estimate.spread_percent == Decimal("50")

    @pytest.mark.parametrize(
        "bid, ask",
        [
            (Decimal("0"), Decimal("0.42")),
            (Decimal("0.40"), Decimal("0")),
            (Decimal("0.42"), Decimal("0.40")),
            (Decimal("0.40"), Decimal("0.40")),
        ],
    )
    def test_unusable_books(self, bid: Decimal, ask: Decimal) -> None:
        assert compute_mid_price(bid, ask) is None


class TestTrades:
    def test_trade_price_from_fraction(self) -> None:
        assert trade_price({"price": {"n": "2", "d": "5"}}) == Decimal("0.4")

    def test_trade_price_from_amounts(self) -> None:
        assert trade_price({"base_amount": "10", "counter_amount": "4"}) == Decimal("0.4")

    def test_zero_denominator(self) -> None:
        assert trade_price({"price": {"n": "2", "d": "0"}}) == 0

    def test_volume_weighted(self) -> None:
        trades = [
            {"price": {"n": "4", "d": "10"}, "base_amount": "100"},
            {"price": {"n": "5", "d": "10"}, "base_amount": "300"},
        ]
        # (0.4 * 100 + 0.5 * 300) / 400 = 0.475
        assert volume_weighted_price(trades) == Decimal("0.475")

    def test_non_positive_entries_skipped(self) -> None:
        trades = [
            {"price": {"n": "4", "d": "10"}, "base_amount": "0"},
            {"price": {"n": "0", "d": "10"}, "base_amount": "50"},
            {"price": {"n": "3", "d": "10"}, "base_amount": "20"},
        ]
        assert volume_weighted_price(trades) == Decimal("0.3")

    def test_no_volume_is_none(self) -> None:
        assert volume_weighted_price([]) is None


class TestOrderbookEstimator:
    @pytest.mark.asyncio
    async def test_estimate_from_best_levels(self, mock_ledger: MagicMock) -> None:
        mock_ledger.fetch_orderbook.return_value = {
            "bids": [{"price": "0.40", "amount": "100"}],
            "asks": [{"price": "0.42", "amount": "50"}],
        }
        estimator = OrderbookEstimator(mock_ledger)

        estimate = await estimator.estimate(USDC)

        assert estimate is not None
        assert estimate.mid_price == Decimal("0.41")
        selling, buying = mock_ledger.fetch_orderbook.await_args.args
        assert selling == USDC
        assert buying.is_native

    @pytest.mark.asyncio
    async def test_one_sided_book(self, mock_ledger: MagicMock) -> None:
        mock_ledger.fetch_orderbook.return_value = {"bids": [], "asks": [{"price": "0.42"}]}
        assert await OrderbookEstimator(mock_ledger).estimate(USDC) is None

    @pytest.mark.asyncio
    async def test_native_asset_not_priced(self, mock_ledger: MagicMock) -> None:
        estimator = OrderbookEstimator(mock_ledger)
        assert await estimator.estimate(AssetRef.native()) is None
        assert await estimator.last_trade_price(AssetRef.native()) is None
        mock_ledger.fetch_orderbook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_last_trade_price_uses_recent_trades(self, mock_ledger: MagicMock) -> None:
        mock_ledger.fetch_trades.return_value = [
            {"price": {"n": "1", "d": "2"}, "base_amount": "10"},
        ] * 5
        estimator = OrderbookEstimator(mock_ledger, recent_trades=5)

        assert await estimator.last_trade_price(USDC) == Decimal("0.5")
        assert mock_ledger.fetch_trades.await_args.kwargs["limit"] == 5
