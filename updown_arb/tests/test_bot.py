import asyncio
import math

import pytest

from updown_arb.bot import run_polymarket_order, run_single_order
from updown_arb.config import AppSettings, ArbSettings, BotSettings
from updown_arb.models import InstrumentIdentifiers, OrderResult, Outcome, VenuePrices, VenueRead


class FakeKalshi:
    venue = "kalshi"

    def __init__(self, ticker: str | None = "KXBTC15M-A", result: OrderResult | None = None) -> None:
        self.ticker = ticker
        self.result = result or OrderResult.placed("kalshi", "ord-1")
        self.orders: list[tuple] = []
        self.closed = False

    async def resolve_active_ticker(self) -> str | None:
        return self.ticker

    async def place_order(self, ticker: str, outcome: Outcome, count: int, price_cents: int) -> OrderResult:
        self.orders.append((ticker, outcome, count, price_cents))
        return self.result

    async def aclose(self) -> None:
        self.closed = True


class FakePolymarket:
    venue = "polymarket"

    def __init__(self, down_ask: float | None = 0.48, result: OrderResult | None = None) -> None:
        self.down_ask = down_ask
        self.result = result or OrderResult.placed("polymarket", "0xorder")
        self.orders: list[tuple] = []
        self.closed = False

    async def fetch_prices(self, market_ref: str) -> VenueRead:
        if self.down_ask is None:
            return VenueRead.absent(self.venue, "no asks")
        ids = InstrumentIdentifiers(lookup_key=market_ref, up_id="tok-up", down_id="tok-down")
        return VenueRead.ok(
            VenuePrices(venue=self.venue, market_id=market_ref, up_ask=0.5, down_ask=self.down_ask, instruments=ids)
        )

    def min_size_for_notional(self, price: float) -> float:
        return float(math.ceil(1.0 / price))

    async def place_order(self, token_id: str, price: float, size: float) -> OrderResult:
        self.orders.append((token_id, price, size))
        return self.result

    async def aclose(self) -> None:
        self.closed = True


def _settings(**bot) -> AppSettings:
    return AppSettings(bot=BotSettings(**bot), arb=ArbSettings(dry_run=True, polymarket_shares=1.0))


def test_single_order_buys_configured_side() -> None:
    kalshi = FakeKalshi()

    code = asyncio.run(run_single_order(_settings(side="no", price_cents=35, contracts=2), kalshi=kalshi))

    assert code == 0
    assert kalshi.orders == [("KXBTC15M-A", Outcome.DOWN, 2, 35)]
    assert kalshi.closed


def test_single_order_dry_run_places_nothing() -> None:
    kalshi = FakeKalshi()

    code = asyncio.run(run_single_order(_settings(dry_run=True), kalshi=kalshi))

    assert code == 0
    assert kalshi.orders == []


def test_single_order_failure_exits_nonzero() -> None:
    kalshi = FakeKalshi(result=OrderResult.failed("kalshi", "HTTP 400"))

    assert asyncio.run(run_single_order(_settings(), kalshi=kalshi)) == 1


def test_single_order_without_open_market_exits_nonzero() -> None:
    kalshi = FakeKalshi(ticker=None)

    assert asyncio.run(run_single_order(_settings(), kalshi=kalshi)) == 1
    assert kalshi.orders == []
    assert kalshi.closed


def test_polymarket_order_defaults_price_and_raises_size() -> None:
    polymarket = FakePolymarket(down_ask=0.48)

    code = asyncio.run(run_polymarket_order(_settings(), polymarket=polymarket))

    assert code == 0
    assert len(polymarket.orders) == 1
    token_id, price, size = polymarket.orders[0]
    assert token_id == "tok-down"
    assert price == pytest.approx(0.49)
    assert size == 3.0
    assert polymarket.closed


def test_polymarket_order_uses_explicit_price_and_size() -> None:
    polymarket = FakePolymarket()

    code = asyncio.run(run_polymarket_order(_settings(), price=0.45, size=10, polymarket=polymarket))

    assert code == 0
    assert polymarket.orders == [("tok-down", 0.45, 10)]


def test_polymarket_order_rejects_invalid_price() -> None:
    polymarket = FakePolymarket()

    assert asyncio.run(run_polymarket_order(_settings(), price=1.5, polymarket=polymarket)) == 1
    assert polymarket.orders == []


def test_polymarket_order_without_prices_exits_nonzero() -> None:
    polymarket = FakePolymarket(down_ask=None)

    assert asyncio.run(run_polymarket_order(_settings(), polymarket=polymarket)) == 1
    assert polymarket.orders == []


def test_polymarket_order_not_configured_exits_nonzero() -> None:
    polymarket = FakePolymarket(result=OrderResult.not_configured("polymarket", "not configured"))

    assert asyncio.run(run_polymarket_order(_settings(), polymarket=polymarket)) == 1
    assert len(polymarket.orders) == 1
