"""Oracle layer -- asset discovery, identifier matching and last-price queries."""

from price_engine.oracle.query_client import OracleQueryClient, scale_price
from price_engine.oracle.registry import OracleAssetRegistry

__all__ = ["OracleAssetRegistry", "OracleQueryClient", "scale_price"]
