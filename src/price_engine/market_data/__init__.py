"""Market data layer -- DEX order-book and trade based price estimation."""

from price_engine.market_data.orderbook import OrderbookEstimator, compute_mid_price

__all__ = ["OrderbookEstimator", "compute_mid_price"]
