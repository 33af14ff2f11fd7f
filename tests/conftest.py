"""Shared test fixtures for the price engine."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from price_engine.cache.storage import MemoryKeyValueStore
from price_engine.cache.tiered_cache import TieredCache
from price_engine.chain.client import LedgerClient
from price_engine.config import AppSettings, CacheSettings, HistoricalSettings, PricingSettings
from price_engine.models import OracleDescriptor

USDC_ISSUER = "GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN"

CEX_DEX = OracleDescriptor(name="CEX_DEX", contract_id="CCEXDEX", quote_currency="USD")
STELLAR = OracleDescriptor(name="STELLAR", contract_id="CSTELLAR", quote_currency="USDC")
FX = OracleDescriptor(name="FX", contract_id="CFX", quote_currency="USD")


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (memory-only cache)."""
    return AppSettings(
        log_level="DEBUG",
        cache=CacheSettings(persist=False),
        pricing=PricingSettings(),
        historical=HistoricalSettings(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def cache(store: MemoryKeyValueStore, clock: FakeClock) -> TieredCache:
    return TieredCache(store=store, max_entries=500, clock=clock)


@pytest.fixture
def mock_ledger() -> MagicMock:
    """LedgerClient double with async methods and the mainnet passphrase."""
    ledger = MagicMock(spec=LedgerClient)
    ledger.network_passphrase = "Public Global Stellar Network ; September 2015"
    ledger.simulate_contract_call = AsyncMock(return_value=None)
    ledger.fetch_orderbook = AsyncMock(return_value={"bids": [], "asks": []})
    ledger.fetch_trades = AsyncMock(return_value=[])
    return ledger


def raw_price(value: str, decimals: int = 14) -> Decimal:
    """Fixed-point raw oracle value for a plain decimal price."""
    return Decimal(value).scaleb(decimals)
