"""Pricing event log and health diagnostics.

A bounded in-memory log of what the resolver did (cache hits, fetches,
provider errors, fallbacks) and a summary derived from it. Mirrors every
event to structlog as well so nothing is only visible here.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from price_engine.logging import get_logger

logger = get_logger(__name__)

MAX_EVENTS = 100


class PricingEventType(str, Enum):
    PRICE_FETCH = "price_fetch"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    ORACLE_ERROR = "oracle_error"
    ORDERBOOK_ERROR = "orderbook_error"
    HISTORICAL_ERROR = "historical_error"
    FALLBACK_USED = "fallback_used"


ERROR_EVENTS = frozenset(
    {
        PricingEventType.ORACLE_ERROR,
        PricingEventType.ORDERBOOK_ERROR,
        PricingEventType.HISTORICAL_ERROR,
    }
)


class Staleness(str, Enum):
    FRESH = "fresh"
    RECENT = "recent"
    STALE = "stale"
    VERY_STALE = "very_stale"


@dataclass
class PricingEvent:
    event_type: PricingEventType
    asset: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)


def staleness_for(age_seconds: float | None) -> Staleness:
    """Bucket the age of the last price update."""
    if age_seconds is None:
        return Staleness.VERY_STALE
    minutes = age_seconds / 60
    if minutes <= 5:
        return Staleness.FRESH
    if minutes <= 15:
        return Staleness.RECENT
    if minutes <= 30:
        return Staleness.STALE
    return Staleness.VERY_STALE


class PricingEventLog:
    """Keeps the most recent pricing events and summarizes them.

    Args:
        max_events: Capacity; older events are dropped first.
        clock: Wall-clock time source in seconds.
    """

    def __init__(
        self,
        max_events: int = MAX_EVENTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._events: deque[PricingEvent] = deque(maxlen=max_events)
        self._clock = clock
        self._last_update: float | None = None

    def record(
        self, event_type: PricingEventType, asset: str, **details: Any
    ) -> PricingEvent:
        event = PricingEvent(
            event_type=event_type,
            asset=asset,
            timestamp=self._clock(),
            details=details,
        )
        self._events.append(event)
        if event_type == PricingEventType.PRICE_FETCH:
            self._last_update = event.timestamp

        if event_type in ERROR_EVENTS:
            logger.warning(event_type.value, asset=asset, **details)
        else:
            logger.debug(event_type.value, asset=asset, **details)
        return event

    def events(self) -> list[PricingEvent]:
        return list(self._events)

    def recent_errors(self, minutes: float = 5) -> list[PricingEvent]:
        """Error events newer than the given number of minutes."""
        cutoff = self._clock() - minutes * 60
        return [
            e for e in self._events if e.event_type in ERROR_EVENTS and e.timestamp >= cutoff
        ]

    def clear(self) -> None:
        self._events.clear()
        self._last_update = None

    def diagnostics(self) -> dict[str, Any]:
        """Summary over the retained events.

        Returns:
            Dict with cache_hit_rate and error_rate (percent, 0-100),
            total_requests, last_update (unix seconds or None) and staleness.
        """
        counts = {t: 0 for t in PricingEventType}
        for event in self._events:
            counts[event.event_type] += 1

        lookups = counts[PricingEventType.CACHE_HIT] + counts[PricingEventType.CACHE_MISS]
        errors = sum(counts[t] for t in ERROR_EVENTS)
        total = len(self._events)

        age = None if self._last_update is None else self._clock() - self._last_update
        return {
            "cache_hit_rate": (
                counts[PricingEventType.CACHE_HIT] / lookups * 100 if lookups else 0.0
            ),
            "error_rate": errors / total * 100 if total else 0.0,
            "total_requests": lookups,
            "last_update": self._last_update,
            "staleness": staleness_for(age),
        }

    def format_report(self) -> str:
        """Human-readable diagnostics summary."""
        summary = self.diagnostics()
        lines = [
            "Pricing diagnostics",
            f"  requests:       {summary['total_requests']}",
            f"  cache hit rate: {summary['cache_hit_rate']:.1f}%",
            f"  error rate:     {summary['error_rate']:.1f}%",
            f"  staleness:      {summary['staleness'].value}",
        ]
        errors = self.recent_errors()
        if errors:
            lines.append("  recent errors:")
            for event in errors[-5:]:
                reason = event.details.get("reason", "")
                lines.append(f"    {event.event_type.value} {event.asset} {reason}".rstrip())
        return "\n".join(lines)
