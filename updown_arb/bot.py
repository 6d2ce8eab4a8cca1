"""One-shot order commands: a single Kalshi order and a single Polymarket DOWN buy."""

from __future__ import annotations

import logging
import math

from updown_arb.config import AppSettings
from updown_arb.exchanges.kalshi import KalshiAdapter
from updown_arb.exchanges.polymarket import PolymarketAdapter
from updown_arb.market_slot import polymarket_slug
from updown_arb.models import Outcome

LOGGER = logging.getLogger(__name__)


async def run_single_order(settings: AppSettings, kalshi: KalshiAdapter | None = None) -> int:
    """Buys on the first open market of the series. Returns the exit code."""
    bot = settings.bot
    outcome = Outcome.UP if bot.side == "yes" else Outcome.DOWN
    LOGGER.info(
        "bot config: series=%s side=%s price=%dc contracts=%d dry_run=%s (one order only)",
        settings.kalshi.series_ticker,
        bot.side,
        bot.price_cents,
        bot.contracts,
        bot.dry_run,
    )

    kalshi = kalshi or KalshiAdapter(settings.kalshi)
    try:
        ticker = await kalshi.resolve_active_ticker()
        if not ticker:
            LOGGER.error("no open %s markets to trade", settings.kalshi.series_ticker)
            return 1
        LOGGER.info("trading market: %s", ticker)

        if bot.dry_run:
            LOGGER.info(
                "[DRY RUN] would place: ticker=%s side=%s count=%d price=%dc",
                ticker,
                bot.side,
                bot.contracts,
                KalshiAdapter.clamp_price_cents(bot.price_cents),
            )
            return 0

        result = await kalshi.place_order(ticker, outcome, bot.contracts, bot.price_cents)
    finally:
        await kalshi.aclose()

    if not result.success:
        LOGGER.error("order failed: %s", result.error)
        return 1
    return 0


async def run_polymarket_order(
    settings: AppSettings,
    price: float | None = None,
    size: float | None = None,
    polymarket: PolymarketAdapter | None = None,
) -> int:
    """Buys the DOWN token of the current slot's market.

    Price defaults to the best DOWN ask plus the arb buffer; size defaults to
    the arb share count, raised until the order meets the minimum notional.
    Places the order even when arb dry-run is on.
    """
    polymarket = polymarket or PolymarketAdapter(settings.polymarket)
    try:
        slug = polymarket_slug(settings.polymarket.market)
        read = await polymarket.fetch_prices(slug)
        if read.prices is None or read.prices.instruments is None:
            LOGGER.error("could not fetch polymarket prices for %s: %s", slug, read.reason)
            return 1

        down_ask = read.prices.down_ask
        if price is None:
            price = min(1.0, down_ask + settings.arb.price_buffer)
        if not math.isfinite(price) or price <= 0 or price > 1:
            LOGGER.error("invalid price %s (use 0-1, e.g. 0.45)", price)
            return 1

        if size is None:
            size = settings.arb.polymarket_shares
        size = max(size, polymarket.min_size_for_notional(price))
        if not math.isfinite(size) or size < 1:
            LOGGER.error("invalid size %s (min 1 share)", size)
            return 1

        token_id = read.prices.instruments.for_outcome(Outcome.DOWN)
        LOGGER.info("slug=%s DOWN token=%s... best ask=%.3f", slug, token_id[:16], down_ask)
        LOGGER.info("placing BUY DOWN @ %.3f x %g", price, size)
        result = await polymarket.place_order(token_id, price, size)
    finally:
        await polymarket.aclose()

    if not result.configured:
        LOGGER.error("polymarket not configured (missing POLYMARKET_PRIVATE_KEY or POLYMARKET_PROXY)")
        return 1
    if not result.success:
        LOGGER.error("order failed: %s", result.error)
        return 1
    LOGGER.info("order placed: %s", result.order_id)
    return 0
