from __future__ import annotations

import logging

from updown_arb.arbitrage import ArbDetector
from updown_arb.config import AppSettings
from updown_arb.exchanges.kalshi import KalshiAdapter
from updown_arb.exchanges.polymarket import PolymarketAdapter
from updown_arb.framework.instance_lock import InstanceLock
from updown_arb.framework.process_supervision import (
    GracefulShutdown,
    ProcessLifecycleManager,
    ProcessRelauncher,
)
from updown_arb.models import DualSnapshot
from updown_arb.monitor_log import MonitorLog
from updown_arb.poll_scheduler import NoOpenMarketError, PollScheduler
from updown_arb.price_fetcher import DualPriceFetcher, format_dual_prices_line

LOGGER = logging.getLogger(__name__)


async def resolve_initial_ticker(settings: AppSettings, kalshi: KalshiAdapter) -> str:
    if settings.monitor.kalshi_ticker:
        return settings.monitor.kalshi_ticker
    ticker = await kalshi.resolve_active_ticker()
    if not ticker:
        raise NoOpenMarketError(f"no open {settings.kalshi.series_ticker} markets found")
    return ticker


def build_scheduler(
    settings: AppSettings,
    kalshi: KalshiAdapter,
    polymarket: PolymarketAdapter,
    *,
    kalshi_ticker: str,
    monitor_log: MonitorLog,
    lifecycle: ProcessLifecycleManager,
    detector: ArbDetector | None = None,
) -> PollScheduler:
    """Wires fetcher, slot log and arbitrage detector into one poll loop."""
    fetcher = DualPriceFetcher(kalshi, polymarket, polymarket_market=settings.polymarket.market)
    detector = detector or ArbDetector(settings.arb, kalshi, polymarket)

    async def on_snapshot(snapshot: DualSnapshot) -> None:
        line = format_dual_prices_line(snapshot)
        LOGGER.debug(line)
        monitor_log.append(line, snapshot.fetched_at)
        await detector.evaluate(snapshot)

    monitor = settings.monitor
    return PollScheduler(
        fetcher,
        on_snapshot,
        kalshi_ticker=kalshi_ticker,
        resolve_ticker=kalshi.resolve_active_ticker if monitor.auto_resolve else None,
        interval_seconds=monitor.interval_seconds,
        restart_on_rollover=monitor.restart_on_rollover,
        on_handoff=lifecycle.hand_off,
    )


def build_shutdown(scheduler: PollScheduler) -> GracefulShutdown:
    """Signal path: stop scheduling only. The lock is released once the tick in flight has finished."""
    shutdown = GracefulShutdown()
    shutdown.register_callback("stop_scheduler", scheduler.stop)
    return shutdown


async def run_monitor(
    settings: AppSettings,
    *,
    monitor_log: MonitorLog | None = None,
    lock: InstanceLock | None = None,
    relauncher: ProcessRelauncher | None = None,
    kalshi: KalshiAdapter | None = None,
    polymarket: PolymarketAdapter | None = None,
    install_signal_handlers: bool = True,
) -> int:
    """Runs the dual-venue monitor until stopped or handed off. Returns the exit code.

    Raises ``InstanceLockError`` or ``NoOpenMarketError`` before polling starts.
    """
    monitor_log = monitor_log or MonitorLog(settings.monitor.log_dir)
    lock = lock or InstanceLock(settings.monitor.lock_path)
    lock.acquire()

    lifecycle = ProcessLifecycleManager(lock, relauncher)
    try:
        kalshi = kalshi or KalshiAdapter(settings.kalshi)
        polymarket = polymarket or PolymarketAdapter(settings.polymarket)
        ticker = await resolve_initial_ticker(settings, kalshi)
        LOGGER.info(
            "starting dual price monitor (ticker=%s, every %dms, dry_run=%s)",
            ticker,
            settings.monitor.interval_ms,
            settings.arb.dry_run,
        )
        scheduler = build_scheduler(
            settings,
            kalshi,
            polymarket,
            kalshi_ticker=ticker,
            monitor_log=monitor_log,
            lifecycle=lifecycle,
        )

        shutdown = build_shutdown(scheduler)
        if install_signal_handlers:
            shutdown.install_signal_handlers()

        await scheduler.run()
    finally:
        if not lifecycle.handed_off:
            lock.release()
        for adapter in (kalshi, polymarket):
            if adapter is not None:
                await adapter.aclose()

    if lifecycle.handed_off:
        LOGGER.info("exiting after hand-off")
    return 0
