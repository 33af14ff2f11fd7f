"""Order-book price estimation on the Stellar DEX.

Prices an issued asset against native XLM from Horizon:
  - mid-market price and spread from the best bid/ask
  - volume-weighted average of the most recent trades, used when the
    spread is too wide for the mid to be meaningful

Both figures are XLM per unit of the asset; converting to USD is the
resolver's job since it needs the XLM/USD oracle price.
"""

from decimal import Decimal, InvalidOperation

from price_engine.chain.client import LedgerClient
from price_engine.logging import get_logger
from price_engine.models import AssetRef, OrderbookEstimate

logger = get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _to_decimal(value: object) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO


def compute_mid_price(bid: Decimal, ask: Decimal) -> OrderbookEstimate | None:
    """Mid price and spread percent for a two-sided book.

    Requires 0 < bid < ask; anything else is not a usable book.
    """
    if bid <= 0 or ask <= 0 or bid >= ask:
        return None
    mid = (bid + ask) / 2
    spread_percent = (ask - bid) / mid * HUNDRED
    return OrderbookEstimate(
        mid_price=mid,
        spread_percent=spread_percent,
        best_bid=bid,
        best_ask=ask,
    )


def trade_price(trade: dict) -> Decimal:
    """Price of one Horizon trade record in counter units per base unit."""
    price = trade.get("price")
    if isinstance(price, dict):
        n = _to_decimal(price.get("n"))
        d = _to_decimal(price.get("d"))
        return n / d if d > 0 else ZERO
    if price is not None:
        return _to_decimal(price)
    base_amount = _to_decimal(trade.get("base_amount"))
    counter_amount = _to_decimal(trade.get("counter_amount"))
    return counter_amount / base_amount if base_amount > 0 else ZERO


def volume_weighted_price(trades: list[dict]) -> Decimal | None:
    """sum(price * volume) / sum(volume), skipping non-positive price or volume.

    Returns None when no trade carries volume.
    """
    weighted = ZERO
    total_volume = ZERO
    for trade in trades:
        price = trade_price(trade)
        volume = _to_decimal(trade.get("base_amount"))
        if price <= 0 or volume <= 0:
            continue
        weighted += price * volume
        total_volume += volume
    if total_volume <= 0:
        return None
    return weighted / total_volume


class OrderbookEstimator:
    """Estimates ASSET/XLM from Horizon order books and recent trades.

    Args:
        ledger: Ledger client (its calls go through the RPC gateway).
        recent_trades: Number of most recent trades in the weighted average.
    """

    def __init__(self, ledger: LedgerClient, recent_trades: int = 5) -> None:
        self._ledger = ledger
        self._recent_trades = recent_trades

    async def estimate(self, asset: AssetRef) -> OrderbookEstimate | None:
        """Mid-market estimate for asset/XLM, or None if the book is empty or crossed."""
        if asset.is_native:
            return None
        book = await self._ledger.fetch_orderbook(asset, AssetRef.native(), limit=1)
        bids = book.get("bids") or []
        asks = book.get("asks") or []
        if not bids or not asks:
            logger.debug("orderbook_one_sided", asset=asset.key, bids=len(bids), asks=len(asks))
            return None

        estimate = compute_mid_price(
            _to_decimal(bids[0].get("price")), _to_decimal(asks[0].get("price"))
        )
        if estimate is None:
            logger.debug("orderbook_invalid", asset=asset.key)
            return None

        logger.debug(
            "orderbook_estimate",
            asset=asset.key,
            mid_price=str(estimate.mid_price),
            spread_percent=str(round(estimate.spread_percent, 4)),
        )
        return estimate

    async def last_trade_price(self, asset: AssetRef) -> Decimal | None:
        """Volume-weighted price of the most recent trades, or None if unavailable."""
        if asset.is_native:
            return None
        trades = await self._ledger.fetch_trades(
            asset, AssetRef.native(), limit=self._recent_trades
        )
        price = volume_weighted_price(trades[: self._recent_trades])
        logger.debug(
            "last_trade_price",
            asset=asset.key,
            trades=len(trades),
            price=str(price) if price is not None else None,
        )
        return price
