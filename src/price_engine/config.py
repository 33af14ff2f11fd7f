"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

MAINNET_PASSPHRASE = "Public Global Stellar Network ; September 2015"
TESTNET_PASSPHRASE = "Test SDF Network ; September 2015"

NetworkName = Literal["mainnet", "testnet"]


class OracleConfig(BaseModel):
    """One Reflector oracle contract as it appears in settings."""

    name: str
    contract_id: str
    quote_currency: str = "USD"
    decimals: int = 14


# Reflector public oracles (mainnet). The Stellar pubnet oracle quotes in USDC.
DEFAULT_MAINNET_ORACLES: list[OracleConfig] = [
    OracleConfig(
        name="CEX_DEX",
        contract_id="CAFJZQWSED6YAWZU3GWRTOCNPPCGBN32L7QV43XX5LZLFTK6JLN34DLN",
        quote_currency="USD",
    ),
    OracleConfig(
        name="STELLAR",
        contract_id="CALI2BYU2JE6WVRUFYTS6MSBNEHGJ35P4AVCZYF3B6QOE3QKOB2PLE6M",
        quote_currency="USDC",
    ),
    OracleConfig(
        name="FX",
        contract_id="CBKGPWGKSKZF52CFHMTRR23TBWTPMRDIYZ4O2P5VS65BMHYH4DXMCJZC",
        quote_currency="USD",
    ),
]


class NetworkSettings(BaseSettings):
    """Stellar network endpoints and the read-only simulation account."""

    model_config = SettingsConfigDict(env_prefix="NETWORK_")

    name: NetworkName = "mainnet"
    mainnet_horizon_url: str = "https://horizon.stellar.org"
    testnet_horizon_url: str = "https://horizon-testnet.stellar.org"
    mainnet_rpc_url: str = "https://rpc.lightsail.network"
    testnet_rpc_url: str = "https://soroban-testnet.stellar.org"
    simulation_account: str = "GDMTVHLWJTHSUDMZVVMXXH6VJHA2ZV3HNG5LYNAZ6RTWB7GISM6PGTUV"
    request_timeout_seconds: float = 10.0

    @property
    def horizon_url(self) -> str:
        return self.testnet_horizon_url if self.name == "testnet" else self.mainnet_horizon_url

    @property
    def rpc_url(self) -> str:
        return self.testnet_rpc_url if self.name == "testnet" else self.mainnet_rpc_url

    @property
    def passphrase(self) -> str:
        return TESTNET_PASSPHRASE if self.name == "testnet" else MAINNET_PASSPHRASE


class OracleSettings(BaseSettings):
    """Oracle tables per network and the priority in which they are consulted.

    Complex fields are read from the environment as JSON, e.g.
    ORACLE_PRIORITY='["STELLAR", "CEX_DEX"]'.
    """

    model_config = SettingsConfigDict(env_prefix="ORACLE_")

    priority: list[str] = ["CEX_DEX", "STELLAR", "FX"]
    mainnet: list[OracleConfig] = DEFAULT_MAINNET_ORACLES
    testnet: list[OracleConfig] = []  # no public testnet oracles configured
    max_attempts: int = 3
    list_ttl_seconds: int = 86_400
    fx_oracle_name: str = "FX"

    def for_network(self, network: NetworkName) -> list[OracleConfig]:
        """Return the oracles for a network, ordered by priority.

        Oracles missing from the priority list are appended in table order.
        """
        table = self.testnet if network == "testnet" else self.mainnet
        rank = {name: i for i, name in enumerate(self.priority)}
        return sorted(table, key=lambda o: rank.get(o.name, len(rank)))


class RateLimitSettings(BaseSettings):
    """Sliding-window limits for each upstream provider gateway."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    rpc_window_seconds: float = 10.0
    rpc_burst_limit: int = 50
    historical_window_seconds: float = 60.0
    historical_burst_limit: int = 20
    buffer_seconds: float = 0.05


class CacheSettings(BaseSettings):
    """Tiered cache sizing and persistent layer location."""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    persist: bool = True
    db_path: str = "data/price_cache.db"
    max_entries: int = 500
    key_prefix: str = "cache_"


class PricingSettings(BaseSettings):
    """Price resolution policy: TTLs, spread threshold and deadlines."""

    model_config = SettingsConfigDict(env_prefix="PRICING_")

    price_ttl_seconds: int = 300  # 5 minutes
    stale_retention_seconds: int = 30 * 86_400
    spread_threshold_percent: Decimal = Decimal("10")
    recent_trades: int = 5
    resolve_timeout_seconds: float = 30.0
    oracle_timeout_seconds: float = 15.0
    orderbook_timeout_seconds: float = 10.0
    historical_timeout_seconds: float = 10.0
    historical_lookback_days: int = 3  # how far back a daily close still counts
    fx_ttl_seconds: int = 300


class HistoricalSettings(BaseSettings):
    """Kraken daily OHLC collection configuration."""

    model_config = SettingsConfigDict(env_prefix="HISTORICAL_")

    enabled: bool = True
    lookback_days: int = 365
    pairs_ttl_seconds: int = 86_400
    refresh_ttl_seconds: int = 86_400
    map_ttl_seconds: int = 365 * 86_400


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    network: NetworkSettings = NetworkSettings()
    oracle: OracleSettings = OracleSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
    cache: CacheSettings = CacheSettings()
    pricing: PricingSettings = PricingSettings()
    historical: HistoricalSettings = HistoricalSettings()
