from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from updown_arb.bot import run_polymarket_order, run_single_order
from updown_arb.config import AppSettings, load_settings, validate_settings
from updown_arb.framework.instance_lock import InstanceLockError
from updown_arb.logging_setup import configure_logging
from updown_arb.monitor import run_monitor
from updown_arb.monitor_log import MonitorLog
from updown_arb.poll_scheduler import NoOpenMarketError

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Kalshi + Polymarket BTC 15m up/down arbitrage monitor",
    )
    subparsers = parser.add_subparsers(dest="command")

    monitor = subparsers.add_parser(
        "monitor",
        help="Poll both venues and place arbitrage orders (default)",
    )
    monitor.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect and log opportunities without placing orders",
    )
    monitor.add_argument(
        "--ticker",
        type=str,
        default=None,
        help="Fixed Kalshi ticker (disables slot rollover)",
    )
    monitor.add_argument(
        "--no-restart",
        action="store_true",
        help="Refresh the ticker in-process at slot boundaries instead of restarting",
    )

    subparsers.add_parser(
        "order",
        help="Place one Kalshi order on the first open market (KALSHI_BOT_* settings)",
    )

    poly_order = subparsers.add_parser(
        "poly-order",
        help="Place one Polymarket DOWN buy on the current slot's market",
    )
    poly_order.add_argument(
        "--price",
        type=float,
        default=None,
        help="Limit price 0-1 (default: best DOWN ask + ARB_PRICE_BUFFER)",
    )
    poly_order.add_argument(
        "--size",
        type=float,
        default=None,
        help="Shares (default: ARB_SIZE, raised to meet POLYMARKET_MIN_USD)",
    )

    raw = list(sys.argv[1:] if argv is None else argv)
    if not raw or raw[0] not in {*subparsers.choices, "-h", "--help"}:
        raw = ["monitor", *raw]
    return parser.parse_args(raw)


def apply_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    if getattr(args, "dry_run", False):
        settings = replace(settings, arb=replace(settings.arb, dry_run=True))
    if getattr(args, "ticker", None):
        settings = replace(settings, monitor=replace(settings.monitor, kalshi_ticker=args.ticker))
    if getattr(args, "no_restart", False):
        settings = replace(settings, monitor=replace(settings.monitor, restart_on_rollover=False))
    return settings


async def _run(args: argparse.Namespace, settings: AppSettings, monitor_log: MonitorLog) -> int:
    if args.command == "order":
        return await run_single_order(settings)
    if args.command == "poly-order":
        return await run_polymarket_order(settings, price=args.price, size=args.size)
    return await run_monitor(settings, monitor_log=monitor_log)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = apply_overrides(load_settings(), args)

    errors = validate_settings(settings, require_kalshi=args.command != "poly-order")
    if errors:
        for error in errors:
            print(f"config error: {error}", file=sys.stderr)
        return 1

    monitor_log = MonitorLog(settings.monitor.log_dir)
    configure_logging(settings.log_level, monitor_log)

    try:
        return asyncio.run(_run(args, settings, monitor_log))
    except (InstanceLockError, NoOpenMarketError) as exc:
        LOGGER.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        monitor_log.stop()


if __name__ == "__main__":
    raise SystemExit(main())
