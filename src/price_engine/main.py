"""Entry point for the price engine.

Wires all components together and prints USD prices for the assets given on
the command line.

Component wiring order (in build_components):
1. KeyValueStore (SQLite or in-memory) and TieredCache
2. RateLimitedGateways (Stellar RPC/Horizon, Kraken)
3. StellarClient and KrakenClient
4. OracleQueryClient and OracleAssetRegistry
5. OrderbookEstimator and HistoricalRateFetcher
6. PricingEventLog and PriceResolver
7. FiatConverter
"""

import argparse
import asyncio
from typing import Any

from price_engine.cache.storage import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from price_engine.cache.tiered_cache import TieredCache
from price_engine.chain.stellar_client import StellarClient
from price_engine.config import AppSettings
from price_engine.diagnostics import PricingEventLog
from price_engine.exceptions import PersistenceError
from price_engine.fiat import FiatConverter
from price_engine.gateway.rate_limiter import RateLimitedGateway
from price_engine.history.fetcher import HistoricalRateFetcher
from price_engine.history.kraken_client import KrakenClient
from price_engine.logging import get_logger, setup_logging
from price_engine.market_data.orderbook import OrderbookEstimator
from price_engine.models import AssetRef, OracleDescriptor
from price_engine.oracle.query_client import OracleQueryClient
from price_engine.oracle.registry import OracleAssetRegistry
from price_engine.resolver import PriceResolver


def build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all price engine components from settings.

    Note: Does NOT open connections -- that happens in start_components().

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    # 1. Persistent layer and cache
    store: KeyValueStore
    if settings.cache.persist:
        store = SqliteKeyValueStore(settings.cache.db_path)
    else:
        store = MemoryKeyValueStore()
    cache = TieredCache(
        store=store,
        max_entries=settings.cache.max_entries,
        key_prefix=settings.cache.key_prefix,
    )

    # 2. One gateway per upstream provider
    limits = settings.rate_limit
    rpc_gateway = RateLimitedGateway(
        "stellar",
        window_seconds=limits.rpc_window_seconds,
        burst_limit=limits.rpc_burst_limit,
        buffer_seconds=limits.buffer_seconds,
    )
    historical_gateway = RateLimitedGateway(
        "kraken",
        window_seconds=limits.historical_window_seconds,
        burst_limit=limits.historical_burst_limit,
        buffer_seconds=limits.buffer_seconds,
    )

    # 3. Provider clients
    ledger = StellarClient(settings.network, rpc_gateway)
    kraken = KrakenClient(historical_gateway) if settings.historical.enabled else None

    # 4. Oracles
    oracles = [
        OracleDescriptor(
            name=o.name,
            contract_id=o.contract_id,
            quote_currency=o.quote_currency,
            decimals=o.decimals,
        )
        for o in settings.oracle.for_network(settings.network.name)
    ]
    query_client = OracleQueryClient(ledger)
    registry = OracleAssetRegistry(
        oracles,
        query_client,
        cache,
        network_passphrase=settings.network.passphrase,
        max_attempts=settings.oracle.max_attempts,
        list_ttl_seconds=settings.oracle.list_ttl_seconds,
    )

    # 5. Fallback sources
    estimator = OrderbookEstimator(ledger, recent_trades=settings.pricing.recent_trades)
    historical = (
        HistoricalRateFetcher(kraken, cache, settings.historical) if kraken is not None else None
    )

    # 6. Resolver
    events = PricingEventLog()
    resolver = PriceResolver(
        registry=registry,
        query_client=query_client,
        estimator=estimator,
        cache=cache,
        settings=settings.pricing,
        historical=historical,
        events=events,
        max_attempts=settings.oracle.max_attempts,
    )

    # 7. Fiat conversion
    fiat = FiatConverter(
        registry,
        query_client,
        cache,
        registry.oracle_by_name(settings.oracle.fx_oracle_name),
        ttl_seconds=settings.pricing.fx_ttl_seconds,
    )

    return {
        "store": store,
        "cache": cache,
        "rpc_gateway": rpc_gateway,
        "historical_gateway": historical_gateway,
        "ledger": ledger,
        "kraken": kraken,
        "query_client": query_client,
        "registry": registry,
        "estimator": estimator,
        "historical": historical,
        "events": events,
        "resolver": resolver,
        "fiat": fiat,
    }


async def start_components(components: dict[str, Any]) -> None:
    """Open the persistent store and provider connections."""
    logger = get_logger("price_engine.main")
    store = components["store"]
    if isinstance(store, SqliteKeyValueStore):
        try:
            await store.connect()
        except PersistenceError as e:
            # The cache keeps working in memory; persistence calls will log and fail.
            logger.warning("kv_store_unavailable", error=str(e))
        else:
            removed = await components["cache"].evict_expired()
            logger.info("cache_swept", removed=removed)
    await components["ledger"].connect()


async def stop_components(components: dict[str, Any]) -> None:
    """Close every connection opened by start_components()."""
    await components["ledger"].close()
    if components["kraken"] is not None:
        await components["kraken"].close()
    store = components["store"]
    if isinstance(store, SqliteKeyValueStore):
        await store.close()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="price-engine",
        description="Resolve USD prices for Stellar assets.",
    )
    parser.add_argument(
        "assets",
        nargs="*",
        default=["XLM"],
        help='assets as "XLM", "CODE" or "CODE:ISSUER" (default: XLM)',
    )
    parser.add_argument("--clear", action="store_true", help="clear price caches first")
    parser.add_argument(
        "--diagnostics", action="store_true", help="print the diagnostics report"
    )
    parser.add_argument(
        "--currency", default="USD", help="also show prices in this fiat currency"
    )
    return parser.parse_args(argv)


async def run(argv: list[str] | None = None) -> None:
    """Resolve and print prices for the requested assets."""
    args = _parse_args(argv)

    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level)
    logger = get_logger("price_engine.main")

    # 3. Build all components
    components = build_components(settings)
    resolver: PriceResolver = components["resolver"]
    fiat: FiatConverter = components["fiat"]

    logger.info("price_engine_starting", network=settings.network.name, assets=args.assets)
    try:
        await start_components(components)
        if args.clear:
            await resolver.clear_price_cache()

        assets = [AssetRef.parse(text) for text in args.assets]
        quotes = await asyncio.gather(
            *(resolver.get_price_quote(a.code, a.issuer) for a in assets)
        )
        currency = args.currency.upper()
        for quote in quotes:
            line = f"{quote.asset.key}: {quote.price} USD ({quote.source.value})"
            if currency != "USD" and quote.is_available:
                converted = await fiat.convert_from_usd(quote.price, currency)
                line += f" = {converted:.6f} {currency}"
            print(line)

        if args.diagnostics:
            print(components["events"].format_report())
            stats = components["cache"].stats()
            print(f"  cache entries:  {stats['fresh']} fresh, {stats['expired']} expired")
    finally:
        await stop_components(components)
        logger.info("price_engine_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
