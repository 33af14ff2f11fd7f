"""Candidate oracle identifiers for an asset.

Oracles list their assets either as bare tickers ("BTC") or as Stellar
addresses, which the query client flattens to "stellar_<address>". An issued
asset can appear under several spellings, so matching works from an ordered
list of pure functions AssetRef -> candidate strings. The first candidate
found in an oracle's asset list wins.
"""

from collections.abc import Callable

from stellar_sdk import Asset
from stellar_sdk.exceptions import SdkError

from price_engine.models import AssetRef, OracleAssetId, OtherAsset, StellarAsset

STELLAR_PREFIX = "stellar_"

CandidateFn = Callable[[AssetRef, str], list[str]]


def derive_contract_id(asset: AssetRef, network_passphrase: str) -> str | None:
    """Stellar Asset Contract id for (code, issuer, network), or None if invalid."""
    try:
        sdk_asset = Asset.native() if asset.is_native else Asset(asset.code, asset.issuer)
        return sdk_asset.contract_id(network_passphrase)
    except (SdkError, ValueError):
        return None


def symbol_candidates(asset: AssetRef, network_passphrase: str) -> list[str]:
    """Direct ticker match: the code, or XLM for the native currency."""
    return [asset.symbol] if asset.symbol else []


def issuer_candidates(asset: AssetRef, network_passphrase: str) -> list[str]:
    """The literal issuer address, bare and prefixed."""
    if asset.issuer is None:
        return []
    return [asset.issuer, STELLAR_PREFIX + asset.issuer]


def contract_candidates(asset: AssetRef, network_passphrase: str) -> list[str]:
    """Derived asset contract id, bare and prefixed. Also covers native XLM."""
    if asset.issuer is None and not asset.is_native:
        return []
    contract_id = derive_contract_id(asset, network_passphrase)
    if contract_id is None:
        return []
    return [contract_id, STELLAR_PREFIX + contract_id]


def composite_candidates(asset: AssetRef, network_passphrase: str) -> list[str]:
    """code_issuer and code:issuer forms used by some oracle deployments."""
    if asset.issuer is None:
        return []
    return [f"{asset.code}_{asset.issuer}", f"{asset.code}:{asset.issuer}"]


CANDIDATE_FUNCTIONS: list[CandidateFn] = [
    symbol_candidates,
    issuer_candidates,
    contract_candidates,
    composite_candidates,
]


def candidate_identifiers(asset: AssetRef, network_passphrase: str) -> list[str]:
    """All candidate spellings for asset, in match-priority order, without duplicates."""
    seen: set[str] = set()
    ordered: list[str] = []
    for fn in CANDIDATE_FUNCTIONS:
        for candidate in fn(asset, network_passphrase):
            if candidate not in seen:
                seen.add(candidate)
                ordered.append(candidate)
    return ordered


def to_oracle_asset_id(listed: str) -> OracleAssetId:
    """Convert an entry of an oracle asset list back to its typed identifier."""
    if listed.startswith(STELLAR_PREFIX):
        return StellarAsset(listed[len(STELLAR_PREFIX):])
    return OtherAsset(listed)


def to_listed(asset_id: OracleAssetId) -> str:
    """Inverse of to_oracle_asset_id."""
    if isinstance(asset_id, StellarAsset):
        return STELLAR_PREFIX + asset_id.identifier
    return asset_id.symbol
