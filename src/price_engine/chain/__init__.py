"""Ledger access layer -- Soroban RPC simulations and Horizon queries via stellar-sdk."""

from price_engine.chain.client import LedgerClient
from price_engine.chain.stellar_client import StellarClient, scval_to_native

__all__ = ["LedgerClient", "StellarClient", "scval_to_native"]
