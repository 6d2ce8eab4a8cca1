from __future__ import annotations

import base64
import logging
import time
from pathlib import Path
from typing import Any

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from updown_arb.config import KalshiSettings
from updown_arb.models import OrderResult, Outcome, VenuePrices, VenueRead

from .base import ExchangeAdapter

LOGGER = logging.getLogger(__name__)

MIN_PRICE_CENTS = 1
MAX_PRICE_CENTS = 99


class KalshiAdapter(ExchangeAdapter):
    venue = "kalshi"

    def __init__(self, settings: KalshiSettings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.timeout_seconds,
        )
        self._private_key = self._load_private_key()

    @property
    def has_credentials(self) -> bool:
        return self._private_key is not None and bool(self._settings.key_id)

    # ------------------------------------------------------------------
    # Market discovery
    # ------------------------------------------------------------------

    async def fetch_open_markets(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Open markets of the configured series, newest listing order, up to ``limit``."""
        limit = max(1, limit or self._settings.max_markets)
        page_size = self._settings.market_page_size
        collected: list[dict[str, Any]] = []
        cursor: str | None = None

        while True:
            params: dict[str, Any] = {
                "series_ticker": self._settings.series_ticker,
                "status": "open",
                "limit": page_size,
            }
            if cursor:
                params["cursor"] = cursor
            response = await self._client.get("/markets", params=params)
            response.raise_for_status()
            payload = response.json()
            markets = [m for m in payload.get("markets") or [] if isinstance(m, dict)]
            collected.extend(markets)

            cursor = payload.get("cursor") or None
            if not cursor or len(collected) >= limit or len(markets) < page_size:
                break

        return collected[:limit]

    async def resolve_active_ticker(self) -> str | None:
        LOGGER.info("refreshing %s markets", self._settings.series_ticker)
        markets = await self.fetch_open_markets()
        for market in markets:
            ticker = str(market.get("ticker") or "").strip()
            if ticker:
                return ticker
        return None

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    async def fetch_prices(self, market_ref: str) -> VenueRead:
        try:
            response = await self._client.get(f"/markets/{market_ref}")
            response.raise_for_status()
            raw = response.json()
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            LOGGER.debug("kalshi market fetch failed for %s: %s", market_ref, exc)
            return VenueRead.absent(self.venue, str(exc) or type(exc).__name__)

        market = raw.get("market") if isinstance(raw, dict) else None
        if not isinstance(market, dict):
            return VenueRead.absent(self.venue, "market missing from response")

        prices = self._prices_from_market(market, fallback_ticker=market_ref)
        if prices is None:
            return VenueRead.absent(self.venue, "no ask on one or both sides")
        return VenueRead.ok(prices)

    @classmethod
    def _prices_from_market(cls, market: dict[str, Any], fallback_ticker: str = "") -> VenuePrices | None:
        up_cents = cls._cents_field(market, "yes_ask")
        down_cents = cls._cents_field(market, "no_ask")
        if not up_cents or not down_cents:
            return None
        last_cents = cls._cents_field(market, "last_price")
        return VenuePrices(
            venue=cls.venue,
            market_id=str(market.get("ticker") or fallback_ticker),
            up_ask=up_cents / 100.0,
            down_ask=down_cents / 100.0,
            last_price=last_cents / 100.0 if last_cents is not None else None,
        )

    @staticmethod
    def _cents_field(market: dict[str, Any], key: str) -> int | None:
        """Reads ``key`` in cents, falling back to the ``<key>_dollars`` string."""
        value = market.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(round(value))
        dollars = market.get(f"{key}_dollars")
        if dollars is None or dollars == "":
            return None
        try:
            return int(round(float(dollars) * 100))
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @staticmethod
    def clamp_price_cents(price_cents: int) -> int:
        return max(MIN_PRICE_CENTS, min(MAX_PRICE_CENTS, int(price_cents)))

    async def place_order(self, ticker: str, outcome: Outcome, count: int, price_cents: int) -> OrderResult:
        if not self.has_credentials:
            return OrderResult.failed(self.venue, "missing kalshi credentials")

        price = self.clamp_price_cents(price_cents)
        payload = self._build_order_payload(ticker, outcome, count, price)
        try:
            result = await self._private_request("POST", "/portfolio/orders", json=payload)
        except (httpx.HTTPError, ValueError) as exc:
            detail = self._error_detail(exc)
            LOGGER.error("kalshi order failed for %s: %s", ticker, detail)
            return OrderResult.failed(self.venue, detail)

        order = result.get("order") if isinstance(result.get("order"), dict) else result
        order_id = order.get("order_id") or order.get("id")
        if not order_id:
            LOGGER.error("kalshi order for %s returned no order id: %s", ticker, result)
            return OrderResult.failed(self.venue, "no order id in response", raw=result)

        LOGGER.info(
            "kalshi order placed: %s ticker=%s side=%s count=%d price=%dc",
            order_id,
            ticker,
            outcome.kalshi_side,
            count,
            price,
        )
        return OrderResult.placed(self.venue, str(order_id), raw=result)

    @staticmethod
    def _build_order_payload(ticker: str, outcome: Outcome, count: int, price_cents: int) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ticker": ticker,
            "action": "buy",
            "side": outcome.kalshi_side,
            "count": count,
            "type": "limit",
            "time_in_force": "good_till_canceled",
        }
        if outcome is Outcome.UP:
            payload["yes_price"] = price_cents
        else:
            payload["no_price"] = price_cents
        return payload

    @staticmethod
    def _error_detail(exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            return f"HTTP {exc.response.status_code}: {exc.response.text[:300]}"
        return str(exc) or type(exc).__name__

    async def _private_request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._auth_headers(method, path)
        response = await self._client.request(method, path, headers=headers, **kwargs)
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {"data": payload}

    def _auth_headers(self, method: str, path: str) -> dict[str, str]:
        assert self._private_key is not None
        assert self._settings.key_id

        ts_ms = str(int(time.time() * 1000))
        canonical_path = self._canonical_signing_path(path)
        message = f"{ts_ms}{method.upper()}{canonical_path}".encode("utf-8")
        signature = self._private_key.sign(
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
            hashes.SHA256(),
        )
        return {
            "KALSHI-ACCESS-KEY": self._settings.key_id,
            "KALSHI-ACCESS-TIMESTAMP": ts_ms,
            "KALSHI-ACCESS-SIGNATURE": base64.b64encode(signature).decode("utf-8"),
        }

    @staticmethod
    def _canonical_signing_path(path: str) -> str:
        path = path.split("?", 1)[0]
        if path.startswith("/trade-api/"):
            return path
        return f"/trade-api/v2{path if path.startswith('/') else '/' + path}"

    def _load_private_key(self):
        pem_text = self._settings.private_key_pem
        if not pem_text and self._settings.private_key_path:
            pem_path = Path(self._settings.private_key_path)
            if pem_path.exists():
                pem_text = pem_path.read_text(encoding="utf-8")

        if not pem_text:
            return None

        return serialization.load_pem_private_key(
            pem_text.encode("utf-8"),
            password=None,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
