import asyncio
from datetime import datetime, timezone

import pytest

from updown_arb.models import DualSnapshot, VenueRead
from updown_arb.poll_scheduler import NoOpenMarketError, PollScheduler, next_delay


class FakeFetcher:
    def __init__(self) -> None:
        self.tickers: list[str] = []
        self.slots: list[str | None] = []
        self.active = 0
        self.max_active = 0
        self.gate: asyncio.Event | None = None

    async def fetch(self, kalshi_ticker: str, slot: str | None = None) -> DualSnapshot:
        self.tickers.append(kalshi_ticker)
        self.slots.append(slot)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            return DualSnapshot(
                kalshi_ticker=kalshi_ticker,
                kalshi=VenueRead.absent("kalshi", "test"),
                polymarket=VenueRead.absent("polymarket", "test"),
                fetched_at=datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc),
            )
        finally:
            self.active -= 1


class SlotSequence:
    """Slot clock returning scripted keys, then repeating the last one."""

    def __init__(self, *keys: str) -> None:
        self._keys = list(keys)

    def __call__(self) -> str:
        if len(self._keys) > 1:
            return self._keys.pop(0)
        return self._keys[0]


class SteppingClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def test_next_delay_is_measured_start_to_start() -> None:
    assert next_delay(0.2, 0.05) == pytest.approx(0.15)
    assert next_delay(0.2, 0.2) == 0.0
    assert next_delay(0.2, 1.5) == 0.0


def test_overlapping_poll_is_skipped_not_queued() -> None:
    fetcher = FakeFetcher()
    snapshots: list[DualSnapshot] = []

    async def _run() -> None:
        fetcher.gate = asyncio.Event()
        scheduler = PollScheduler(fetcher, snapshots.append, kalshi_ticker="T1")
        first = asyncio.create_task(scheduler.poll_once())
        await asyncio.sleep(0)
        assert scheduler.in_flight
        assert await scheduler.poll_once() is False
        assert await scheduler.poll_once() is False
        fetcher.gate.set()
        assert await first is True
        assert scheduler.skipped_count == 2
        assert await scheduler.poll_once() is True

    asyncio.run(_run())
    assert fetcher.max_active == 1
    assert fetcher.tickers == ["T1", "T1"]
    assert len(snapshots) == 2


def test_slow_ticks_run_back_to_back() -> None:
    fetcher = FakeFetcher()

    async def _run() -> PollScheduler:
        scheduler = None

        def on_snapshot(snapshot: DualSnapshot) -> None:
            if scheduler.tick_count >= 3:
                scheduler.stop()

        # Each clock read advances 11s, so every tick overruns the 10s interval.
        scheduler = PollScheduler(
            fetcher,
            on_snapshot,
            kalshi_ticker="T1",
            interval_seconds=10.0,
            clock=SteppingClock(step=11.0),
        )
        await asyncio.wait_for(scheduler.run(), timeout=2.0)
        return scheduler

    scheduler = asyncio.run(_run())
    assert scheduler.tick_count == 3
    assert scheduler.stopped


def test_stop_wakes_the_pacing_wait() -> None:
    fetcher = FakeFetcher()

    async def _run() -> None:
        scheduler = PollScheduler(fetcher, lambda snapshot: None, kalshi_ticker="T1", interval_seconds=30.0)
        task = asyncio.create_task(scheduler.run())
        while scheduler.tick_count < 1:
            await asyncio.sleep(0)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert await scheduler.poll_once() is False

    asyncio.run(_run())
    assert fetcher.tickers == ["T1"]


def test_callback_error_is_reported_and_polling_continues() -> None:
    fetcher = FakeFetcher()
    errors: list[BaseException] = []
    calls: list[int] = []

    async def _run() -> None:
        scheduler = None

        async def on_snapshot(snapshot: DualSnapshot) -> None:
            calls.append(1)
            if len(calls) == 1:
                raise ValueError("bad callback")
            if len(calls) == 3:
                scheduler.stop()

        scheduler = PollScheduler(
            fetcher,
            on_snapshot,
            kalshi_ticker="T1",
            interval_seconds=0.001,
            on_error=errors.append,
        )
        await asyncio.wait_for(scheduler.run(), timeout=2.0)

    asyncio.run(_run())
    assert len(calls) == 3
    assert len(errors) == 1
    assert isinstance(errors[0], ValueError)


def test_slot_change_hands_off_before_fetching() -> None:
    fetcher = FakeFetcher()
    handoffs: list[str] = []

    async def resolve() -> str:
        raise AssertionError("restart mode must not re-resolve in process")

    async def _run() -> PollScheduler:
        scheduler = PollScheduler(
            fetcher,
            lambda snapshot: None,
            kalshi_ticker="T1",
            resolve_ticker=resolve,
            restart_on_rollover=True,
            on_handoff=lambda: handoffs.append("handoff"),
            slot_clock=SlotSequence("2026-02-10_12-00", "2026-02-10_12-00", "2026-02-10_12-15"),
        )
        assert await scheduler.poll_once() is True
        assert await scheduler.poll_once() is True
        return scheduler

    scheduler = asyncio.run(_run())
    assert fetcher.tickers == ["T1"]
    assert handoffs == ["handoff"]
    assert scheduler.handoff_requested
    assert scheduler.stopped


def test_slot_change_in_refresh_mode_switches_ticker() -> None:
    fetcher = FakeFetcher()

    async def resolve() -> str:
        return "T2"

    async def _run() -> PollScheduler:
        scheduler = PollScheduler(
            fetcher,
            lambda snapshot: None,
            kalshi_ticker="T1",
            resolve_ticker=resolve,
            restart_on_rollover=False,
            slot_clock=SlotSequence("2026-02-10_12-00", "2026-02-10_12-00", "2026-02-10_12-15"),
        )
        await scheduler.poll_once()
        await scheduler.poll_once()
        await scheduler.poll_once()
        return scheduler

    scheduler = asyncio.run(_run())
    assert fetcher.tickers == ["T1", "T2", "T2"]
    assert scheduler.kalshi_ticker == "T2"
    assert not scheduler.stopped


def test_refresh_failure_keeps_previous_ticker() -> None:
    fetcher = FakeFetcher()
    errors: list[BaseException] = []

    async def resolve() -> None:
        return None

    async def _run() -> None:
        scheduler = PollScheduler(
            fetcher,
            lambda snapshot: None,
            kalshi_ticker="T1",
            resolve_ticker=resolve,
            restart_on_rollover=False,
            on_error=errors.append,
            slot_clock=SlotSequence("2026-02-10_12-00", "2026-02-10_12-15"),
        )
        await scheduler.poll_once()
        await scheduler.poll_once()

    asyncio.run(_run())
    assert fetcher.tickers == ["T1", "T1"]
    assert len(errors) == 1
    assert isinstance(errors[0], NoOpenMarketError)


def test_fixed_ticker_ignores_slot_changes() -> None:
    fetcher = FakeFetcher()
    handoffs: list[str] = []

    async def _run() -> PollScheduler:
        scheduler = PollScheduler(
            fetcher,
            lambda snapshot: None,
            kalshi_ticker="FIXED",
            on_handoff=lambda: handoffs.append("handoff"),
            slot_clock=SlotSequence("2026-02-10_12-00", "2026-02-10_12-15", "2026-02-10_12-30"),
        )
        await scheduler.poll_once()
        await scheduler.poll_once()
        return scheduler

    scheduler = asyncio.run(_run())
    assert fetcher.tickers == ["FIXED", "FIXED"]
    assert handoffs == []
    assert not scheduler.auto_resolve


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PollScheduler(FakeFetcher(), lambda snapshot: None, kalshi_ticker="T1", interval_seconds=0)


def test_fetch_uses_slot_observed_at_tick_start() -> None:
    fetcher = FakeFetcher()

    async def _run() -> None:
        scheduler = PollScheduler(
            fetcher,
            lambda snapshot: None,
            kalshi_ticker="T1",
            slot_clock=SlotSequence("2026-02-10_12-00"),
        )
        await scheduler.poll_once()

    asyncio.run(_run())
    assert fetcher.slots == ["2026-02-10_12-00"]
