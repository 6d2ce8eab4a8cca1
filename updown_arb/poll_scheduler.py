"""Self-pacing poll loop over the dual price fetcher.

One tick = slot check, one dual fetch, one callback. Ticks never overlap:
a tick requested while another is in flight is dropped, not queued. The
delay to the next tick is measured from the start of the current one, so
the cadence stays at the configured interval under fast upstreams and
collapses to back-to-back ticks (never negative, never doubled) under slow
ones.

Usage::

    scheduler = PollScheduler(
        fetcher,
        detector.evaluate,
        kalshi_ticker=ticker,
        resolve_ticker=kalshi.resolve_active_ticker,
        interval_seconds=0.2,
        on_handoff=lifecycle.hand_off,
    )
    await scheduler.run()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from updown_arb.framework.process_supervision import SlotAction, decide_slot_action
from updown_arb.market_slot import slot_key
from updown_arb.models import DualSnapshot
from updown_arb.price_fetcher import DualPriceFetcher

LOGGER = logging.getLogger(__name__)

SnapshotCallback = Callable[[DualSnapshot], Any]
TickerResolver = Callable[[], Awaitable[Optional[str]]]


class NoOpenMarketError(RuntimeError):
    """No open market instance could be found for the series."""


def next_delay(interval_seconds: float, elapsed_seconds: float) -> float:
    """Start-to-start pacing: wait out the rest of the interval, or nothing."""
    return max(0.0, interval_seconds - elapsed_seconds)


def _log_tick_error(exc: BaseException) -> None:
    LOGGER.error("poll tick failed: %s", exc, exc_info=exc)


class PollScheduler:
    def __init__(
        self,
        fetcher: DualPriceFetcher,
        on_snapshot: SnapshotCallback,
        *,
        kalshi_ticker: str,
        resolve_ticker: TickerResolver | None = None,
        interval_seconds: float = 0.2,
        restart_on_rollover: bool = True,
        on_handoff: Callable[[], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        clock: Callable[[], float] = time.perf_counter,
        slot_clock: Callable[[], str] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._fetcher = fetcher
        self._on_snapshot = on_snapshot
        self._kalshi_ticker = kalshi_ticker
        self._resolve_ticker = resolve_ticker
        self._interval = interval_seconds
        self._restart_on_rollover = restart_on_rollover
        self._on_handoff = on_handoff
        self._on_error = on_error or _log_tick_error
        self._clock = clock
        self._slot_clock = slot_clock or slot_key

        self._last_slot = self._slot_clock()
        self._in_flight = False
        self._stop_event = asyncio.Event()
        self._handoff_requested = False
        self._ticks = 0
        self._skipped = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def kalshi_ticker(self) -> str:
        return self._kalshi_ticker

    @property
    def auto_resolve(self) -> bool:
        """Slot changes are acted on only when a resolver was supplied."""
        return self._resolve_ticker is not None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def handoff_requested(self) -> bool:
        return self._handoff_requested

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def tick_count(self) -> int:
        return self._ticks

    @property
    def skipped_count(self) -> int:
        return self._skipped

    def stop(self) -> None:
        """Stops scheduling. A tick already in flight finishes normally."""
        if not self._stop_event.is_set():
            LOGGER.info("poll scheduler stopping")
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        LOGGER.info(
            "polling every %.0fms (ticker=%s, auto_resolve=%s, restart_on_rollover=%s)",
            self._interval * 1000,
            self._kalshi_ticker,
            self.auto_resolve,
            self._restart_on_rollover,
        )
        while not self._stop_event.is_set():
            started = self._clock()
            await self.poll_once()
            if self._stop_event.is_set():
                break

            delay = next_delay(self._interval, self._clock() - started)
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(0)

    async def poll_once(self) -> bool:
        """Runs one tick. Returns False when it was skipped."""
        if self._stop_event.is_set():
            return False
        if self._in_flight:
            self._skipped += 1
            LOGGER.debug("poll skipped: previous tick still in flight")
            return False

        self._in_flight = True
        try:
            await self._tick()
        finally:
            self._in_flight = False
        return True

    async def _tick(self) -> None:
        slot = self._slot_clock()
        action = decide_slot_action(
            self._last_slot,
            slot,
            auto_resolve=self.auto_resolve,
            restart_on_rollover=self._restart_on_rollover,
        )
        if action is not SlotAction.NONE:
            LOGGER.info("market slot changed %s -> %s (%s)", self._last_slot, slot, action.value)
            self._last_slot = slot

        if action is SlotAction.RESTART:
            self._handoff_requested = True
            self.stop()
            if self._on_handoff is not None:
                self._on_handoff()
            return
        if action is SlotAction.REFRESH:
            await self._refresh_ticker(slot)

        self._ticks += 1
        try:
            snapshot = await self._fetcher.fetch(self._kalshi_ticker, slot)
            result = self._on_snapshot(snapshot)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_error(exc)

    async def _refresh_ticker(self, slot: str) -> None:
        assert self._resolve_ticker is not None
        try:
            ticker = await self._resolve_ticker()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_error(exc)
            return
        if not ticker:
            self._on_error(NoOpenMarketError(f"no open market for slot {slot}; keeping {self._kalshi_ticker}"))
            return
        if ticker != self._kalshi_ticker:
            LOGGER.info("kalshi ticker %s -> %s", self._kalshi_ticker, ticker)
            self._kalshi_ticker = ticker
