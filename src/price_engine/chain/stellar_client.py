"""Stellar ledger client via stellar-sdk async servers.

Wraps SorobanServerAsync (contract simulations) and ServerAsync (Horizon
order books and trades). Every network call is scheduled through the shared
RPC gateway so the provider quota is respected across the whole engine.
"""

from typing import Any

import aiohttp
from stellar_sdk import (
    Asset,
    ServerAsync,
    SorobanServerAsync,
    StrKey,
    TransactionBuilder,
    scval,
)
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.client.aiohttp_client import AiohttpClient
from stellar_sdk.exceptions import SdkError

from price_engine.chain.client import LedgerClient
from price_engine.config import NetworkSettings
from price_engine.exceptions import HorizonError, ProviderConfigError, SimulationError
from price_engine.gateway.rate_limiter import RateLimitedGateway
from price_engine.logging import get_logger
from price_engine.models import AssetRef

logger = get_logger(__name__)

SIMULATION_BASE_FEE = 100_000
SIMULATION_TIMEOUT_SECONDS = 30

_SCALAR_DECODERS = {
    stellar_xdr.SCValType.SCV_BOOL: scval.from_bool,
    stellar_xdr.SCValType.SCV_U32: scval.from_uint32,
    stellar_xdr.SCValType.SCV_I32: scval.from_int32,
    stellar_xdr.SCValType.SCV_U64: scval.from_uint64,
    stellar_xdr.SCValType.SCV_I64: scval.from_int64,
    stellar_xdr.SCValType.SCV_TIMEPOINT: scval.from_timepoint,
    stellar_xdr.SCValType.SCV_DURATION: scval.from_duration,
    stellar_xdr.SCValType.SCV_U128: scval.from_uint128,
    stellar_xdr.SCValType.SCV_I128: scval.from_int128,
    stellar_xdr.SCValType.SCV_U256: scval.from_uint256,
    stellar_xdr.SCValType.SCV_I256: scval.from_int256,
    stellar_xdr.SCValType.SCV_BYTES: scval.from_bytes,
    stellar_xdr.SCValType.SCV_SYMBOL: scval.from_symbol,
}


def scval_to_native(value: stellar_xdr.SCVal) -> Any:
    """Convert a contract return value into plain Python data.

    Enum variants come back as vectors, e.g. Asset::Other(BTC) -> ["Other", "BTC"];
    struct fields come back as a dict keyed by field name.
    """
    kind = value.type
    if kind == stellar_xdr.SCValType.SCV_VOID:
        return None
    if kind in _SCALAR_DECODERS:
        return _SCALAR_DECODERS[kind](value)
    if kind == stellar_xdr.SCValType.SCV_STRING:
        raw = scval.from_string(value)
        return raw.decode() if isinstance(raw, bytes) else raw
    if kind == stellar_xdr.SCValType.SCV_ADDRESS:
        return scval.from_address(value).address
    if kind == stellar_xdr.SCValType.SCV_VEC:
        items = value.vec.sc_vec if value.vec is not None else []
        return [scval_to_native(item) for item in items]
    if kind == stellar_xdr.SCValType.SCV_MAP:
        entries = value.map.sc_map if value.map is not None else []
        result: dict[Any, Any] = {}
        for entry in entries:
            key = scval_to_native(entry.key)
            if isinstance(key, list):
                key = tuple(key)
            result[key] = scval_to_native(entry.val)
        return result
    raise SimulationError(f"Unsupported contract value type: {kind}")


def to_sdk_asset(asset: AssetRef) -> Asset:
    """Build a stellar-sdk Asset; native XLM or a bare code maps to Asset.native()."""
    if asset.is_native or asset.issuer is None:
        return Asset.native()
    return Asset(asset.code, asset.issuer)


class StellarClient(LedgerClient):
    """Concrete ledger client using stellar-sdk async servers."""

    def __init__(self, settings: NetworkSettings, gateway: RateLimitedGateway) -> None:
        self._settings = settings
        self._gateway = gateway
        self._soroban: SorobanServerAsync | None = None
        self._horizon: ServerAsync | None = None

    @property
    def network_passphrase(self) -> str:
        return self._settings.passphrase

    async def connect(self) -> None:
        """Create the Soroban RPC and Horizon servers."""
        if not self._settings.rpc_url or not self._settings.horizon_url:
            raise ProviderConfigError(f"Missing endpoints for network {self._settings.name}")
        logger.info(
            "connecting_to_stellar",
            network=self._settings.name,
            rpc_url=self._settings.rpc_url,
            horizon_url=self._settings.horizon_url,
        )
        timeout = self._settings.request_timeout_seconds
        self._soroban = SorobanServerAsync(
            self._settings.rpc_url,
            client=AiohttpClient(request_timeout=timeout, post_timeout=timeout),
        )
        self._horizon = ServerAsync(
            self._settings.horizon_url,
            client=AiohttpClient(request_timeout=timeout, post_timeout=timeout),
        )

    async def close(self) -> None:
        """Close HTTP sessions. Must be called to avoid aiohttp session leaks."""
        if self._soroban is not None:
            await self._soroban.close()
            self._soroban = None
        if self._horizon is not None:
            await self._horizon.close()
            self._horizon = None
        logger.info("stellar_connection_closed")

    async def simulate_contract_call(
        self,
        contract_id: str,
        function_name: str,
        parameters: list[Any] | None = None,
    ) -> Any:
        """Simulate contract_id.function_name(*parameters) from the simulation account."""
        if not contract_id:
            raise ProviderConfigError("Oracle contract id is not configured")
        if not StrKey.is_valid_contract(contract_id):
            raise ProviderConfigError(f"Invalid oracle contract id: {contract_id!r}")
        soroban = self._require_soroban()

        try:
            account = await self._gateway.schedule(
                lambda: soroban.load_account(self._settings.simulation_account)
            )
        except (SdkError, aiohttp.ClientError) as e:
            raise SimulationError(f"{function_name} on {contract_id} failed: {e}") from e

        try:
            transaction = (
                TransactionBuilder(
                    source_account=account,
                    network_passphrase=self.network_passphrase,
                    base_fee=SIMULATION_BASE_FEE,
                )
                .append_invoke_contract_function_op(
                    contract_id=contract_id,
                    function_name=function_name,
                    parameters=parameters or [],
                )
                .set_timeout(SIMULATION_TIMEOUT_SECONDS)
                .build()
            )
        except (ValueError, TypeError) as e:
            raise ProviderConfigError(
                f"Cannot build {function_name} call on {contract_id}: {e}"
            ) from e

        try:
            response = await self._gateway.schedule(
                lambda: soroban.simulate_transaction(transaction)
            )
        except (SdkError, aiohttp.ClientError) as e:
            raise SimulationError(f"{function_name} on {contract_id} failed: {e}") from e

        if response.error:
            raise SimulationError(f"{function_name} on {contract_id} failed: {response.error}")
        if not response.results:
            return None

        retval = stellar_xdr.SCVal.from_xdr(response.results[0].xdr)
        return scval_to_native(retval)

    async def fetch_orderbook(
        self, selling: AssetRef, buying: AssetRef, limit: int = 1
    ) -> dict:
        horizon = self._require_horizon()
        try:
            return await self._gateway.schedule(
                lambda: horizon.orderbook(to_sdk_asset(selling), to_sdk_asset(buying))
                .limit(limit)
                .call()
            )
        except (SdkError, aiohttp.ClientError) as e:
            raise HorizonError(f"Order book {selling.key}/{buying.key} failed: {e}") from e

    async def fetch_trades(
        self, base: AssetRef, counter: AssetRef, limit: int = 5
    ) -> list[dict]:
        horizon = self._require_horizon()
        try:
            response = await self._gateway.schedule(
                lambda: horizon.trades()
                .for_asset_pair(to_sdk_asset(base), to_sdk_asset(counter))
                .order(desc=True)
                .limit(limit)
                .call()
            )
        except (SdkError, aiohttp.ClientError) as e:
            raise HorizonError(f"Trades {base.key}/{counter.key} failed: {e}") from e
        return response.get("_embedded", {}).get("records", [])

    def _require_soroban(self) -> SorobanServerAsync:
        if self._soroban is None:
            raise ProviderConfigError("StellarClient not connected. Call connect() first.")
        return self._soroban

    def _require_horizon(self) -> ServerAsync:
        if self._horizon is None:
            raise ProviderConfigError("StellarClient not connected. Call connect() first.")
        return self._horizon
