import asyncio
import base64
import json

import httpx
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from updown_arb.config import KalshiSettings
from updown_arb.exchanges.kalshi import KalshiAdapter
from updown_arb.models import Outcome

BASE_URL = "https://kalshi.test/trade-api/v2"


def _adapter(handler, **settings) -> KalshiAdapter:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return KalshiAdapter(KalshiSettings(api_base_url=BASE_URL, **settings), client=client)


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def test_fetch_prices_reads_cent_asks() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(
            200,
            json={"market": {"ticker": "KXBTC15M-A", "yes_ask": 40, "no_ask": 55, "last_price": 41}},
        )

    read = asyncio.run(_adapter(handler).fetch_prices("KXBTC15M-A"))

    assert seen == ["/trade-api/v2/markets/KXBTC15M-A"]
    assert read.available
    assert read.prices.up_ask == 0.40
    assert read.prices.down_ask == 0.55
    assert read.prices.last_price == 0.41
    assert read.prices.market_id == "KXBTC15M-A"


def test_fetch_prices_falls_back_to_dollar_strings() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"market": {"ticker": "KXBTC15M-A", "yes_ask_dollars": "0.4200", "no_ask_dollars": "0.5900"}},
        )

    read = asyncio.run(_adapter(handler).fetch_prices("KXBTC15M-A"))

    assert read.prices.up_ask == 0.42
    assert read.prices.down_ask == 0.59
    assert read.prices.last_price is None


def test_fetch_prices_without_ask_is_absent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"market": {"ticker": "KXBTC15M-A", "yes_ask": 0, "no_ask": 55}})

    read = asyncio.run(_adapter(handler).fetch_prices("KXBTC15M-A"))

    assert not read.available
    assert read.venue == "kalshi"


def test_fetch_prices_http_error_is_absent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    read = asyncio.run(_adapter(handler).fetch_prices("KXBTC15M-A"))

    assert not read.available
    assert "503" in read.reason


def test_fetch_prices_transport_error_is_absent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    read = asyncio.run(_adapter(handler).fetch_prices("KXBTC15M-A"))

    assert not read.available


def test_fetch_open_markets_follows_cursor() -> None:
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        requests.append(params)
        if "cursor" not in params:
            markets = [{"ticker": f"M{i}"} for i in range(2)]
            return httpx.Response(200, json={"markets": markets, "cursor": "next"})
        return httpx.Response(200, json={"markets": [{"ticker": "M2"}], "cursor": ""})

    adapter = _adapter(handler, market_page_size=2)
    markets = asyncio.run(adapter.fetch_open_markets(limit=10))

    assert [m["ticker"] for m in markets] == ["M0", "M1", "M2"]
    assert requests[0]["series_ticker"] == "KXBTC15M"
    assert requests[0]["status"] == "open"
    assert requests[1]["cursor"] == "next"


def test_resolve_active_ticker_returns_first_or_none() -> None:
    def with_markets(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"markets": [{"ticker": "KXBTC15M-FIRST"}, {"ticker": "KXBTC15M-2"}]})

    def without_markets(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"markets": []})

    assert asyncio.run(_adapter(with_markets).resolve_active_ticker()) == "KXBTC15M-FIRST"
    assert asyncio.run(_adapter(without_markets).resolve_active_ticker()) is None


def test_place_order_without_credentials_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = asyncio.run(_adapter(handler).place_order("T1", Outcome.UP, 1, 41))

    assert not result.success
    assert "credentials" in result.error


def test_place_order_signs_and_posts_limit_buy(private_key, key_pem) -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"order": {"order_id": "ord-1", "status": "resting"}})

    adapter = _adapter(handler, key_id="key-1", private_key_pem=key_pem)
    result = asyncio.run(adapter.place_order("KXBTC15M-A", Outcome.DOWN, 2, 140))

    assert result.success
    assert result.order_id == "ord-1"
    assert captured["path"] == "/trade-api/v2/portfolio/orders"
    assert captured["body"] == {
        "ticker": "KXBTC15M-A",
        "action": "buy",
        "side": "no",
        "count": 2,
        "type": "limit",
        "time_in_force": "good_till_canceled",
        "no_price": 99,
    }

    headers = captured["headers"]
    assert headers["KALSHI-ACCESS-KEY"] == "key-1"
    message = f"{headers['KALSHI-ACCESS-TIMESTAMP']}POST/trade-api/v2/portfolio/orders".encode("utf-8")
    private_key.public_key().verify(
        base64.b64decode(headers["KALSHI-ACCESS-SIGNATURE"]),
        message,
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
        hashes.SHA256(),
    )


def test_place_order_rejection_returns_error(key_pem) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": "insufficient_balance"}})

    adapter = _adapter(handler, key_id="key-1", private_key_pem=key_pem)
    result = asyncio.run(adapter.place_order("KXBTC15M-A", Outcome.UP, 1, 41))

    assert not result.success
    assert "HTTP 400" in result.error
    assert "insufficient_balance" in result.error


def test_clamp_and_signing_path() -> None:
    assert KalshiAdapter.clamp_price_cents(0) == 1
    assert KalshiAdapter.clamp_price_cents(150) == 99
    assert KalshiAdapter.clamp_price_cents(41) == 41
    assert KalshiAdapter._canonical_signing_path("/markets?limit=1") == "/trade-api/v2/markets"
    assert KalshiAdapter._canonical_signing_path("/trade-api/v2/portfolio/orders") == "/trade-api/v2/portfolio/orders"
