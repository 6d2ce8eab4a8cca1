from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from updown_arb.exchanges.base import ExchangeAdapter
from updown_arb.market_slot import parse_slot_key, polymarket_slug
from updown_arb.models import DualSnapshot, VenueRead

LOGGER = logging.getLogger(__name__)


class DualPriceFetcher:
    """Reads both venues concurrently and merges them into one snapshot.

    The Kalshi ticker is resolved by the caller (once at startup and on slot
    changes); this class never lists markets, so each tick costs exactly one
    read per venue.
    """

    def __init__(
        self,
        kalshi: ExchangeAdapter,
        polymarket: ExchangeAdapter,
        polymarket_market: str = "btc",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._kalshi = kalshi
        self._polymarket = polymarket
        self._polymarket_market = polymarket_market
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch(self, kalshi_ticker: str, slot: str | None = None) -> DualSnapshot:
        """One concurrent read per venue.

        ``slot`` is the slot key the caller resolved ``kalshi_ticker`` for; the
        Polymarket market is taken from it so both reads name the same
        instance even when the wall clock crosses a boundary mid-tick.
        """
        fetched_at = self._clock()
        slot_at = parse_slot_key(slot) if slot else fetched_at
        slug = polymarket_slug(self._polymarket_market, slot_at)
        kalshi_read, polymarket_read = await asyncio.gather(
            self._kalshi.fetch_prices(kalshi_ticker),
            self._polymarket.fetch_prices(slug),
            return_exceptions=True,
        )
        return DualSnapshot(
            kalshi_ticker=kalshi_ticker,
            kalshi=self._as_read(self._kalshi.venue, kalshi_read),
            polymarket=self._as_read(self._polymarket.venue, polymarket_read),
            fetched_at=fetched_at,
        )

    @staticmethod
    def _as_read(venue: str, result: VenueRead | BaseException) -> VenueRead:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            # A raising adapter still leaves the other venue readable.
            LOGGER.warning("%s price read raised: %r", venue, result)
            return VenueRead.absent(venue, f"{type(result).__name__}: {result}")
        return result


def format_dual_prices_line(snapshot: DualSnapshot) -> str:
    """One-line log of both venues' asks, ``--`` for a missing venue."""
    parts: list[str] = []
    kalshi = snapshot.kalshi.prices
    if kalshi is not None:
        parts.append(f"Kalshi UP {kalshi.up_ask:.2f} DOWN {kalshi.down_ask:.2f}")
    else:
        parts.append("Kalshi --")
    polymarket = snapshot.polymarket.prices
    if polymarket is not None:
        parts.append(f"Polymarket UP {polymarket.up_ask:.2f} DOWN {polymarket.down_ask:.2f}")
    else:
        parts.append("Polymarket --")
    return f"[{snapshot.fetched_at.isoformat()}] {'  |  '.join(parts)}"
