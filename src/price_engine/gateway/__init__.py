"""Provider gateways -- serialized, rate-limited dispatch of upstream calls."""

from price_engine.gateway.rate_limiter import RateLimitedGateway

__all__ = ["RateLimitedGateway"]
