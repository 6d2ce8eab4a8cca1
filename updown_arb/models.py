from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Outcome(str, Enum):
    UP = "up"
    DOWN = "down"

    @property
    def kalshi_side(self) -> str:
        return "yes" if self is Outcome.UP else "no"

    @property
    def opposite(self) -> "Outcome":
        return Outcome.DOWN if self is Outcome.UP else Outcome.UP


class ArbLeg(str, Enum):
    """Cross-venue direction: which outcome is bought on Kalshi."""

    UP = "up"  # Kalshi UP + Polymarket DOWN
    DOWN = "down"  # Kalshi DOWN + Polymarket UP

    @property
    def kalshi_outcome(self) -> Outcome:
        return Outcome.UP if self is ArbLeg.UP else Outcome.DOWN

    @property
    def polymarket_outcome(self) -> Outcome:
        return self.kalshi_outcome.opposite


@dataclass(frozen=True)
class InstrumentIdentifiers:
    lookup_key: str
    up_id: str
    down_id: str
    condition_id: str = ""

    def for_outcome(self, outcome: Outcome) -> str:
        return self.up_id if outcome is Outcome.UP else self.down_id


@dataclass(frozen=True)
class VenuePrices:
    """Best asks for both outcomes, as fractions of $1."""

    venue: str
    market_id: str
    up_ask: float
    down_ask: float
    last_price: float | None = None
    instruments: InstrumentIdentifiers | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def ask_for(self, outcome: Outcome) -> float:
        return self.up_ask if outcome is Outcome.UP else self.down_ask


@dataclass(frozen=True)
class VenueRead:
    """Result of one venue price read: either prices or the reason they are missing."""

    venue: str
    prices: Optional[VenuePrices] = None
    reason: str = ""

    @classmethod
    def ok(cls, prices: VenuePrices) -> "VenueRead":
        return cls(venue=prices.venue, prices=prices)

    @classmethod
    def absent(cls, venue: str, reason: str) -> "VenueRead":
        return cls(venue=venue, prices=None, reason=reason)

    @property
    def available(self) -> bool:
        return self.prices is not None


@dataclass(frozen=True)
class DualSnapshot:
    kalshi_ticker: str
    kalshi: VenueRead
    polymarket: VenueRead
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def complete(self) -> bool:
        return self.kalshi.available and self.polymarket.available


@dataclass(frozen=True)
class OrderResult:
    venue: str
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    configured: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def placed(cls, venue: str, order_id: str, raw: Dict[str, Any] | None = None) -> "OrderResult":
        return cls(venue=venue, success=True, order_id=order_id, raw=raw or {})

    @classmethod
    def failed(cls, venue: str, error: str, raw: Dict[str, Any] | None = None) -> "OrderResult":
        return cls(venue=venue, success=False, error=error, raw=raw or {})

    @classmethod
    def not_configured(cls, venue: str, reason: str) -> "OrderResult":
        return cls(venue=venue, success=False, error=reason, configured=False)


@dataclass(frozen=True)
class ArbOpportunity:
    ticker: str
    leg: ArbLeg
    total: float
    kalshi_ask: float
    polymarket_ask: float
    kalshi_price_cents: int
    polymarket_price: float

    @property
    def kalshi_price(self) -> float:
        return self.kalshi_price_cents / 100.0


@dataclass(frozen=True)
class ArbExecution:
    opportunity: ArbOpportunity
    dry_run: bool
    kalshi_result: OrderResult | None = None
    polymarket_result: OrderResult | None = None

    @property
    def partial(self) -> bool:
        """One venue filled and the other was tried and failed."""
        results = (self.kalshi_result, self.polymarket_result)
        if any(result is None or not result.configured for result in results):
            return False
        return self.kalshi_result.success != self.polymarket_result.success
