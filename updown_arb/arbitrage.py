"""Cross-venue up/down arbitrage: detection and at-most-once execution.

Leg UP buys Kalshi YES and Polymarket DOWN; leg DOWN buys Kalshi NO and
Polymarket UP. A leg fires when the sum of its two asks lies in the
half-open band ``[sum_low, sum_threshold)``. Each (ticker, leg) pair is
marked before any order is sent and is never attempted again, so a failed
order is not retried on a later tick.
"""

from __future__ import annotations

import asyncio
import logging
import math

from updown_arb.config import ArbSettings
from updown_arb.exchanges.kalshi import MAX_PRICE_CENTS, MIN_PRICE_CENTS, KalshiAdapter
from updown_arb.exchanges.polymarket import PolymarketAdapter
from updown_arb.models import (
    ArbExecution,
    ArbLeg,
    ArbOpportunity,
    DualSnapshot,
    OrderResult,
    VenuePrices,
)

LOGGER = logging.getLogger(__name__)


class ArbExecutionState:
    """Per-leg sets of tickers already attempted. Grows for the process lifetime."""

    def __init__(self) -> None:
        self._done: dict[ArbLeg, set[str]] = {ArbLeg.UP: set(), ArbLeg.DOWN: set()}

    def is_done(self, ticker: str, leg: ArbLeg) -> bool:
        return ticker in self._done[leg]

    def try_mark(self, ticker: str, leg: ArbLeg) -> bool:
        """Marks (ticker, leg) attempted. False if it already was."""
        done = self._done[leg]
        if ticker in done:
            return False
        done.add(ticker)
        return True

    def tickers(self, leg: ArbLeg) -> frozenset[str]:
        return frozenset(self._done[leg])


class ArbDetector:
    def __init__(
        self,
        settings: ArbSettings,
        kalshi: KalshiAdapter,
        polymarket: PolymarketAdapter,
        state: ArbExecutionState | None = None,
    ) -> None:
        self._settings = settings
        self._kalshi = kalshi
        self._polymarket = polymarket
        self._state = state or ArbExecutionState()

    @property
    def state(self) -> ArbExecutionState:
        return self._state

    def in_band(self, total: float) -> bool:
        return math.isfinite(total) and self._settings.sum_low <= total < self._settings.sum_threshold

    def build_opportunity(
        self,
        ticker: str,
        leg: ArbLeg,
        kalshi: VenuePrices,
        polymarket: VenuePrices,
    ) -> ArbOpportunity:
        kalshi_ask = kalshi.ask_for(leg.kalshi_outcome)
        polymarket_ask = polymarket.ask_for(leg.polymarket_outcome)
        buffer = self._settings.price_buffer
        cents = int(round((kalshi_ask + buffer) * 100))
        return ArbOpportunity(
            ticker=ticker,
            leg=leg,
            total=kalshi_ask + polymarket_ask,
            kalshi_ask=kalshi_ask,
            polymarket_ask=polymarket_ask,
            kalshi_price_cents=max(MIN_PRICE_CENTS, min(MAX_PRICE_CENTS, cents)),
            polymarket_price=min(1.0, polymarket_ask + buffer),
        )

    async def evaluate(self, snapshot: DualSnapshot) -> ArbExecution | None:
        """Checks one snapshot. Returns the execution when a leg fired."""
        kalshi = snapshot.kalshi.prices
        polymarket = snapshot.polymarket.prices
        if kalshi is None or polymarket is None:
            return None

        for leg in (ArbLeg.UP, ArbLeg.DOWN):
            total = kalshi.ask_for(leg.kalshi_outcome) + polymarket.ask_for(leg.polymarket_outcome)
            if not self.in_band(total):
                continue
            # Only the first qualifying leg is considered on a tick.
            if not self._state.try_mark(snapshot.kalshi_ticker, leg):
                return None
            opportunity = self.build_opportunity(snapshot.kalshi_ticker, leg, kalshi, polymarket)
            return await self._execute(opportunity, polymarket)
        return None

    async def _execute(self, opportunity: ArbOpportunity, polymarket: VenuePrices) -> ArbExecution:
        dry_run = self._settings.dry_run
        leg = opportunity.leg
        LOGGER.info(
            "[arb] opportunity (%s leg) on %s: sum=%.3f (Kalshi %s %.2f + Poly %s %.2f), %s Kalshi %s @ %.2f, Poly %s @ %.3f",
            leg.value.upper(),
            opportunity.ticker,
            opportunity.total,
            leg.kalshi_outcome.value.upper(),
            opportunity.kalshi_ask,
            leg.polymarket_outcome.value.upper(),
            opportunity.polymarket_ask,
            "DRY RUN, would place" if dry_run else "placing",
            leg.kalshi_outcome.kalshi_side.upper(),
            opportunity.kalshi_price,
            leg.polymarket_outcome.value.upper(),
            opportunity.polymarket_price,
        )
        if dry_run:
            return ArbExecution(opportunity=opportunity, dry_run=True)

        kalshi_result, polymarket_result = await asyncio.gather(
            self._place_kalshi(opportunity),
            self._place_polymarket(opportunity, polymarket),
            return_exceptions=True,
        )
        kalshi_result = self._as_result(self._kalshi.venue, kalshi_result)
        polymarket_result = self._as_result(self._polymarket.venue, polymarket_result)

        execution = ArbExecution(
            opportunity=opportunity,
            dry_run=False,
            kalshi_result=kalshi_result,
            polymarket_result=polymarket_result,
        )
        if execution.partial:
            LOGGER.warning(
                "[arb] partial execution on %s (%s leg): kalshi=%s polymarket=%s",
                opportunity.ticker,
                leg.value,
                "ok" if kalshi_result.success else kalshi_result.error,
                "ok" if polymarket_result.success else polymarket_result.error,
            )
        return execution

    async def _place_kalshi(self, opportunity: ArbOpportunity) -> OrderResult:
        result = await self._kalshi.place_order(
            opportunity.ticker,
            opportunity.leg.kalshi_outcome,
            self._settings.kalshi_contracts,
            opportunity.kalshi_price_cents,
        )
        if not result.success:
            LOGGER.error("[arb] Kalshi order failed: %s", result.error)
        return result

    async def _place_polymarket(self, opportunity: ArbOpportunity, prices: VenuePrices) -> OrderResult:
        outcome = opportunity.leg.polymarket_outcome
        price = opportunity.polymarket_price
        size = self._settings.polymarket_shares

        if not self._polymarket.meets_min_notional(price, size):
            message = (
                f"notional ${price * size:.2f} below minimum; "
                f"use size >= {self._polymarket.min_size_for_notional(price):g}"
            )
            LOGGER.error("[arb] Polymarket order skipped: %s", message)
            return OrderResult.failed(self._polymarket.venue, message)

        instruments = prices.instruments
        if instruments is None:
            instruments = await self._polymarket.identifier_cache.resolve(prices.market_id)

        result = await self._polymarket.place_order(instruments.for_outcome(outcome), price, size)
        if not result.success and result.configured:
            LOGGER.error("[arb] Polymarket order failed: %s", result.error)
        return result

    @staticmethod
    def _as_result(venue: str, result: OrderResult | BaseException) -> OrderResult:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            LOGGER.error("[arb] %s order raised: %r", venue, result)
            return OrderResult.failed(venue, f"{type(result).__name__}: {result}")
        return result
