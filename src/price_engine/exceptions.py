"""Custom exceptions for the price engine.

Provider clients raise these so the resolver's fallback chain can react;
nothing here ever escapes PriceResolver.get_price.
"""


class PriceEngineError(Exception):
    """Base exception for all price engine errors."""


class ProviderError(PriceEngineError):
    """Transient upstream failure (network, simulation, HTTP non-2xx)."""


class SimulationError(ProviderError):
    """Raised when a Soroban contract simulation reports an error."""


class HorizonError(ProviderError):
    """Raised when a Horizon order book or trades request fails."""


class HistoricalDataError(ProviderError):
    """Raised when the OHLC data source cannot be reached or parsed."""


class ProviderConfigError(PriceEngineError):
    """Raised when a provider is missing required configuration (contract id, URL)."""


class PersistenceError(PriceEngineError):
    """Raised by a key-value store on read/write failure. Always caught by the cache."""
