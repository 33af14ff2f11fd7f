"""Read-only queries against Reflector-style price oracle contracts.

Two entry points are used:
  assets()          -> Vec<Asset>           supported assets
  lastprice(asset)  -> Option<PriceData>    most recent price record

Asset is the contract enum Stellar(Address) | Other(Symbol). PriceData is a
struct {price: i128, timestamp: u64}; price is fixed-point with the oracle's
decimals.
"""

from decimal import Decimal
from typing import Any

from stellar_sdk import scval

from price_engine.chain.client import LedgerClient
from price_engine.exceptions import ProviderConfigError, SimulationError
from price_engine.logging import get_logger
from price_engine.models import OracleAssetId, OracleDescriptor, StellarAsset
from price_engine.oracle.identifiers import STELLAR_PREFIX

logger = get_logger(__name__)

ZERO = Decimal("0")


def encode_asset_param(asset_id: OracleAssetId) -> Any:
    """Encode an OracleAssetId as the contract's Asset enum value."""
    if isinstance(asset_id, StellarAsset):
        return scval.to_vec([scval.to_symbol("Stellar"), scval.to_address(asset_id.identifier)])
    return scval.to_vec([scval.to_symbol("Other"), scval.to_symbol(asset_id.symbol)])


def flatten_asset_list(result: Any) -> list[str]:
    """Flatten a decoded Vec<Asset> into symbol strings.

    Other(sym) -> "sym", Stellar(addr) -> "stellar_<addr>". Malformed
    entries are skipped.
    """
    if not isinstance(result, list):
        return []
    symbols: list[str] = []
    for item in result:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            continue
        tag, value = item
        if not value:
            continue
        if tag == "Other":
            symbols.append(str(value))
        elif tag == "Stellar":
            symbols.append(f"{STELLAR_PREFIX}{value}")
    return symbols


def extract_raw_price(result: Any) -> Decimal:
    """Pull the raw integer price out of a decoded Option<PriceData>.

    None (no data) and unrecognized shapes read as zero.
    """
    if result is None:
        return ZERO
    if isinstance(result, dict):
        record = result.get("Some", result)
        if isinstance(record, dict) and "price" in record:
            return Decimal(str(record["price"]))
        return ZERO
    if isinstance(result, (int, str)):
        return Decimal(str(result))
    return ZERO


def scale_price(raw: Decimal, oracle: OracleDescriptor) -> Decimal:
    """Convert a fixed-point oracle price to a plain price: raw / 10**decimals."""
    return raw.scaleb(-oracle.decimals)


class OracleQueryClient:
    """Executes oracle contract simulations through a LedgerClient.

    Failures of the simulation itself raise SimulationError (or
    ProviderConfigError for a missing contract id); an empty result is
    not an error.
    """

    def __init__(self, ledger: LedgerClient) -> None:
        self._ledger = ledger

    async def list_assets(self, oracle: OracleDescriptor) -> list[str]:
        """Return the oracle's supported assets as flat symbol strings."""
        result = await self._ledger.simulate_contract_call(oracle.contract_id, "assets")
        symbols = flatten_asset_list(result)
        logger.debug("oracle_assets_listed", oracle=oracle.name, count=len(symbols))
        return symbols

    async def get_last_price(
        self, oracle: OracleDescriptor, asset_id: OracleAssetId
    ) -> Decimal:
        """Return the raw (unscaled) last price, or 0 if the oracle has none."""
        try:
            param = encode_asset_param(asset_id)
        except (ValueError, TypeError) as e:
            raise ProviderConfigError(f"Cannot encode {asset_id} for {oracle.name}: {e}") from e
        result = await self._ledger.simulate_contract_call(
            oracle.contract_id, "lastprice", [param]
        )
        try:
            raw = extract_raw_price(result)
        except ArithmeticError as e:
            raise SimulationError(f"Unreadable price from {oracle.name}: {result!r}") from e
        logger.debug("oracle_raw_price", oracle=oracle.name, asset=str(asset_id), raw=str(raw))
        return raw
