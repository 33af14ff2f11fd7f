"""Asset -> oracle mapping.

Knows, per configured oracle, which assets it can price, and resolves an
AssetRef to the first oracle (in priority order) that lists one of the
asset's candidate identifiers. There is no scoring: priority decides.

Asset lists are cached in the TieredCache for 24h. Building the mapping is
idempotent and safe under concurrency: all first-time callers await a single
shared initialization run.
"""

import time
from collections.abc import Callable

from price_engine.cache.tiered_cache import TieredCache
from price_engine.exceptions import PriceEngineError, ProviderConfigError
from price_engine.logging import get_logger
from price_engine.models import AssetRef, OracleAssetId, OracleDescriptor
from price_engine.oracle.identifiers import candidate_identifiers, to_listed, to_oracle_asset_id
from price_engine.oracle.query_client import OracleQueryClient

logger = get_logger(__name__)

_MAPPING_READY_KEY = "oracle_mapping_ready"

Resolution = tuple[OracleDescriptor, OracleAssetId]


class OracleAssetRegistry:
    """Discovers oracle asset lists and resolves assets against them.

    Args:
        oracles: Oracle descriptors in priority order.
        query_client: Client used to load asset lists.
        cache: Shared tiered cache (asset lists + in-flight de-duplication).
        network_passphrase: Used to derive asset contract ids.
        max_attempts: Immediate attempts per asset-list load.
        list_ttl_seconds: Lifetime of asset lists and memoized resolutions.
    """

    def __init__(
        self,
        oracles: list[OracleDescriptor],
        query_client: OracleQueryClient,
        cache: TieredCache,
        network_passphrase: str,
        max_attempts: int = 3,
        list_ttl_seconds: float = 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._oracles = list(oracles)
        self._query = query_client
        self._cache = cache
        self._passphrase = network_passphrase
        self._max_attempts = max_attempts
        self._ttl = list_ttl_seconds
        self._clock = clock
        self._memo: dict[AssetRef, tuple[float, list[Resolution]]] = {}

    @property
    def oracles(self) -> list[OracleDescriptor]:
        return list(self._oracles)

    def oracle_by_name(self, name: str) -> OracleDescriptor | None:
        return next((o for o in self._oracles if o.name == name), None)

    # ──────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────

    async def resolve(self, asset: AssetRef) -> Resolution | None:
        """Return the highest-priority (oracle, identifier) pair for asset, or None."""
        matches = await self.candidates(asset)
        return matches[0] if matches else None

    async def candidates(self, asset: AssetRef) -> list[Resolution]:
        """Every oracle that lists asset, in priority order, with the matched identifier."""
        memo = self._memo.get(asset)
        if memo is not None and self._clock() < memo[0]:
            return list(memo[1])

        await self.ensure_mapping()

        identifiers = candidate_identifiers(asset, self._passphrase)
        matches: list[Resolution] = []
        complete = True
        for oracle in self._oracles:
            listed = await self._listed_assets(oracle)
            if listed is None:
                complete = False
                continue
            match = next((c for c in identifiers if c in listed), None)
            if match is not None:
                matches.append((oracle, to_oracle_asset_id(match)))

        # A partial view must not pin the asset to a lower-priority oracle for 24h.
        if complete:
            self._memo[asset] = (self._clock() + self._ttl, matches)
        if matches:
            logger.debug(
                "asset_resolved",
                asset=asset.key,
                oracle=matches[0][0].name,
                identifier=to_listed(matches[0][1]),
                alternatives=len(matches) - 1,
            )
        else:
            logger.debug("asset_unsupported_by_oracles", asset=asset.key)
        return list(matches)

    async def asset_list(self, oracle: OracleDescriptor) -> list[str]:
        """Supported-asset symbols for one oracle, loaded at most once per TTL.

        Raises ProviderError/ProviderConfigError when every attempt fails.
        """
        return await self._cache.get_or_compute(
            self._list_key(oracle),
            self._ttl,
            lambda: self._load_with_retry(oracle),
        )

    async def ensure_mapping(self) -> None:
        """Load every oracle's asset list; concurrent callers share one run."""
        await self._cache.dedupe(_MAPPING_READY_KEY, self._load_all)

    async def reset(self) -> None:
        """Forget asset lists and memoized resolutions."""
        self._memo.clear()
        for oracle in self._oracles:
            await self._cache.delete(self._list_key(oracle))
        logger.info("oracle_mapping_reset")

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    async def _load_all(self) -> None:
        loaded = 0
        for oracle in self._oracles:
            try:
                await self.asset_list(oracle)
                loaded += 1
            except PriceEngineError as e:
                logger.warning("oracle_asset_list_unavailable", oracle=oracle.name, error=str(e))
        logger.info("oracle_mapping_ready", oracles=len(self._oracles), loaded=loaded)

    async def _listed_assets(self, oracle: OracleDescriptor) -> set[str] | None:
        """Cached asset list for oracle, or None if it failed to load this round."""
        listed = await self._cache.get(self._list_key(oracle))
        return set(listed) if listed is not None else None

    async def _load_with_retry(self, oracle: OracleDescriptor) -> list[str]:
        """Load an asset list with immediate retries (no delay between attempts)."""
        if not oracle.contract_id:
            raise ProviderConfigError(f"Oracle {oracle.name} has no contract id")

        last_error: PriceEngineError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                symbols = await self._query.list_assets(oracle)
            except ProviderConfigError:
                raise
            except PriceEngineError as e:
                last_error = e
                logger.warning(
                    "oracle_asset_list_retry",
                    oracle=oracle.name,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                continue
            logger.info("oracle_asset_list_loaded", oracle=oracle.name, count=len(symbols))
            return symbols

        assert last_error is not None
        raise last_error

    @staticmethod
    def _list_key(oracle: OracleDescriptor) -> str:
        return f"oracle_assets:{oracle.contract_id}"
