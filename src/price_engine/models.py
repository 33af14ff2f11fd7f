"""Shared data models for the price engine.

CRITICAL: All monetary values use Decimal. Never use float for prices or volumes.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")

NATIVE_CODE = "XLM"
_NATIVE_ALIASES = frozenset({"XLM", "native", ""})

# yyyy-mm-dd (UTC) -> close price
DailyRateMap = dict[str, Decimal]


@dataclass(frozen=True)
class AssetRef:
    """A priceable asset: native XLM, an issued token, or a bare ticker.

    Equality is exact: case-sensitive code and exact issuer string.
    """

    code: str
    issuer: str | None = None

    @classmethod
    def native(cls) -> "AssetRef":
        return cls(NATIVE_CODE)

    @classmethod
    def parse(cls, text: str) -> "AssetRef":
        """Parse "XLM", "USDC" or "USDC:GA5Z..." into an AssetRef."""
        code, _, issuer = text.partition(":")
        return cls(code, issuer or None)

    @property
    def is_native(self) -> bool:
        return self.issuer is None and self.code in _NATIVE_ALIASES

    @property
    def symbol(self) -> str:
        """Canonical ticker: XLM for the native currency, the code otherwise."""
        return NATIVE_CODE if self.is_native else self.code

    @property
    def key(self) -> str:
        """Stable cache key for this asset."""
        return f"{self.code}:{self.issuer}" if self.issuer else self.symbol


@dataclass(frozen=True)
class OracleDescriptor:
    """Static description of one oracle contract.

    decimals is the fixed-point scale of raw prices (typically 14).
    """

    name: str
    contract_id: str
    quote_currency: str = "USD"
    decimals: int = 14


@dataclass(frozen=True)
class OtherAsset:
    """Oracle asset known by a bare ticker (Reflector Asset::Other)."""

    symbol: str


@dataclass(frozen=True)
class StellarAsset:
    """Oracle asset known by an address or contract id (Reflector Asset::Stellar)."""

    identifier: str


OracleAssetId = Union[OtherAsset, StellarAsset]


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with its storage and expiry timestamps (unix seconds)."""

    value: T
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age(self, now: float) -> float:
        return now - self.stored_at


class PriceSource(str, Enum):
    """Which step of the fallback chain produced a price."""

    ORACLE = "oracle"
    ORDERBOOK = "orderbook"
    HISTORICAL = "historical"
    CACHE = "cache"
    UNAVAILABLE = "unavailable"


@dataclass
class PriceQuote:
    """A resolved USD price and where it came from. Not persisted."""

    asset: AssetRef
    price: Decimal
    source: PriceSource
    resolved_at: float = field(default_factory=time.time)

    @property
    def is_available(self) -> bool:
        return self.price > 0


@dataclass
class OrderbookEstimate:
    """Mid-market price and spread for ASSET/XLM."""

    mid_price: Decimal
    spread_percent: Decimal
    best_bid: Decimal
    best_ask: Decimal


@dataclass
class StepFailure:
    """Typed failure of one resolver step; feeds the next fallback step."""

    step: PriceSource
    reason: str
    transient: bool = True
