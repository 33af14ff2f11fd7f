"""Fiat display currencies backed by the FX oracle.

The FX oracle lists fiat currencies as bare tickers and prices them in USD
per unit, so converting a USD amount into currency X divides by that price.
"""

from decimal import Decimal

from price_engine.cache.tiered_cache import TieredCache
from price_engine.exceptions import PriceEngineError
from price_engine.logging import get_logger
from price_engine.models import OracleDescriptor, OtherAsset
from price_engine.oracle.query_client import OracleQueryClient, scale_price
from price_engine.oracle.registry import OracleAssetRegistry

logger = get_logger(__name__)

USD = "USD"
ZERO = Decimal("0")

# code -> (name, symbol)
CURRENCY_INFO: dict[str, tuple[str, str]] = {
    "USD": ("US Dollar", "$"),
    "EUR": ("Euro", "€"),
    "GBP": ("British Pound", "£"),
    "JPY": ("Japanese Yen", "¥"),
    "CAD": ("Canadian Dollar", "C$"),
    "AUD": ("Australian Dollar", "A$"),
    "CHF": ("Swiss Franc", "CHF"),
    "CNY": ("Chinese Yuan", "¥"),
    "INR": ("Indian Rupee", "₹"),
    "BRL": ("Brazilian Real", "R$"),
    "MXN": ("Mexican Peso", "MX$"),
    "KRW": ("South Korean Won", "₩"),
    "SGD": ("Singapore Dollar", "S$"),
    "HKD": ("Hong Kong Dollar", "HK$"),
    "NZD": ("New Zealand Dollar", "NZ$"),
    "SEK": ("Swedish Krona", "kr"),
    "NOK": ("Norwegian Krone", "kr"),
    "DKK": ("Danish Krone", "kr"),
    "PLN": ("Polish Zloty", "zł"),
    "TRY": ("Turkish Lira", "₺"),
    "ZAR": ("South African Rand", "R"),
    "ARS": ("Argentine Peso", "AR$"),
    "NGN": ("Nigerian Naira", "₦"),
    "UAH": ("Ukrainian Hryvnia", "₴"),
    "THB": ("Thai Baht", "฿"),
    "IDR": ("Indonesian Rupiah", "Rp"),
    "PHP": ("Philippine Peso", "₱"),
    "VND": ("Vietnamese Dong", "₫"),
}


class FiatConverter:
    """Spot fiat rates from the FX oracle, cached briefly.

    Args:
        registry: Used to find the FX oracle's asset list.
        query_client: Oracle lastprice queries.
        cache: Shared tiered cache.
        fx_oracle: Descriptor of the FX oracle, or None when not configured.
        ttl_seconds: Lifetime of a cached rate.
    """

    def __init__(
        self,
        registry: OracleAssetRegistry,
        query_client: OracleQueryClient,
        cache: TieredCache,
        fx_oracle: OracleDescriptor | None,
        ttl_seconds: float = 300,
    ) -> None:
        self._registry = registry
        self._query = query_client
        self._cache = cache
        self._fx_oracle = fx_oracle
        self._ttl = ttl_seconds

    async def get_fx_rate(self, currency: str) -> Decimal:
        """USD per unit of currency; 1 for USD, 0 when unavailable."""
        currency = currency.upper()
        if currency == USD:
            return Decimal("1")
        if self._fx_oracle is None:
            return ZERO

        oracle = self._fx_oracle
        try:
            return await self._cache.get_or_compute(
                f"fx_rate:{currency}",
                self._ttl,
                lambda: self._fetch_rate(oracle, currency),
            )
        except PriceEngineError as e:
            logger.warning("fx_rate_unavailable", currency=currency, error=str(e))
            return ZERO

    async def convert_from_usd(self, amount: Decimal, currency: str) -> Decimal:
        """Express a USD amount in currency (0 when the rate is unknown)."""
        rate = await self.get_fx_rate(currency)
        if rate <= 0:
            return ZERO
        return amount / rate

    async def available_currencies(self) -> list[str]:
        """Currencies the FX oracle prices that we can display, USD first."""
        if self._fx_oracle is None:
            return [USD]
        try:
            listed = set(await self._registry.asset_list(self._fx_oracle))
        except PriceEngineError as e:
            logger.warning("fx_currency_list_unavailable", error=str(e))
            return [USD]
        return [USD] + sorted(c for c in CURRENCY_INFO if c != USD and c in listed)

    @staticmethod
    def currency_info(currency: str) -> tuple[str, str] | None:
        """(name, symbol) for a supported currency code."""
        return CURRENCY_INFO.get(currency.upper())

    async def _fetch_rate(self, oracle: OracleDescriptor, currency: str) -> Decimal:
        raw = await self._query.get_last_price(oracle, OtherAsset(currency))
        if raw <= 0:
            # Do not cache a missing rate
            raise PriceEngineError(f"{oracle.name} has no price for {currency}")
        rate = scale_price(raw, oracle)
        logger.debug("fx_rate_fetched", currency=currency, rate=str(rate))
        return rate
