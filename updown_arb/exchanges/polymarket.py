from __future__ import annotations

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any

import httpx
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, OrderArgs, PartialCreateOrderOptions
from py_clob_client.order_builder.constants import BUY

from updown_arb.config import PolymarketSettings
from updown_arb.identifier_cache import IdentifierCache, IdentifierResolutionError
from updown_arb.models import InstrumentIdentifiers, OrderResult, VenuePrices, VenueRead

from .base import ExchangeAdapter

LOGGER = logging.getLogger(__name__)

_TICK_DECIMALS = {"0.01": 2, "0.001": 3, "0.0001": 4}


class PolymarketAdapter(ExchangeAdapter):
    venue = "polymarket"

    def __init__(
        self,
        settings: PolymarketSettings,
        identifier_cache: IdentifierCache | None = None,
        gamma_client: httpx.AsyncClient | None = None,
        clob_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._gamma = gamma_client or httpx.AsyncClient(
            base_url=settings.gamma_base_url.rstrip("/"),
            timeout=settings.timeout_seconds,
        )
        self._clob = clob_client or httpx.AsyncClient(
            base_url=settings.clob_base_url.rstrip("/"),
            timeout=settings.timeout_seconds,
        )
        self._identifier_cache = identifier_cache or IdentifierCache(self.fetch_token_ids)
        self._live_client: ClobClient | None = None

    @property
    def identifier_cache(self) -> IdentifierCache:
        return self._identifier_cache

    # ------------------------------------------------------------------
    # Identifier resolution
    # ------------------------------------------------------------------

    async def fetch_token_ids(self, slug: str) -> InstrumentIdentifiers:
        """Up/Down CLOB token ids for a market slug, via the Gamma API."""
        try:
            response = await self._gamma.get(f"/markets/slug/{slug}")
        except httpx.HTTPError as exc:
            raise IdentifierResolutionError(f"Gamma API request failed for slug={slug}: {exc}") from exc
        if response.status_code >= 400:
            raise IdentifierResolutionError(
                f"Gamma API {response.status_code} {response.reason_phrase} for slug={slug}"
            )

        data = response.json()
        if not isinstance(data, dict):
            raise IdentifierResolutionError(f"unexpected Gamma payload for slug={slug}")

        outcomes = [str(item) for item in self._parse_json_array(data.get("outcomes"))]
        token_ids = [str(item) for item in self._parse_json_array(data.get("clobTokenIds"))]
        try:
            up_idx = outcomes.index("Up")
            down_idx = outcomes.index("Down")
        except ValueError:
            raise IdentifierResolutionError(
                f"missing Up/Down outcomes for slug={slug} (outcomes: {outcomes})"
            ) from None

        if max(up_idx, down_idx) >= len(token_ids) or not token_ids[up_idx] or not token_ids[down_idx]:
            raise IdentifierResolutionError(f"missing token ids for slug={slug}")

        condition_id = data.get("conditionId")
        return InstrumentIdentifiers(
            lookup_key=slug,
            up_id=token_ids[up_idx],
            down_id=token_ids[down_idx],
            condition_id=condition_id if isinstance(condition_id, str) else "",
        )

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    async def fetch_best_ask(self, token_id: str) -> float | None:
        response = await self._clob.get("/book", params={"token_id": token_id})
        if response.status_code >= 400:
            LOGGER.debug("polymarket /book %d for token %s", response.status_code, token_id)
            return None
        payload = response.json()
        asks = payload.get("asks") if isinstance(payload, dict) else None
        return self._best_ask(asks)

    async def fetch_prices(self, market_ref: str) -> VenueRead:
        try:
            instruments = await self._identifier_cache.resolve(market_ref)
            up_ask, down_ask = await asyncio.gather(
                self.fetch_best_ask(instruments.up_id),
                self.fetch_best_ask(instruments.down_id),
            )
        except (IdentifierResolutionError, httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            LOGGER.debug("polymarket price fetch failed for %s: %s", market_ref, exc)
            return VenueRead.absent(self.venue, str(exc) or type(exc).__name__)

        if up_ask is None or down_ask is None:
            return VenueRead.absent(self.venue, "no asks on one or both sides")

        return VenueRead.ok(
            VenuePrices(
                venue=self.venue,
                market_id=market_ref,
                up_ask=up_ask,
                down_ask=down_ask,
                instruments=instruments,
            )
        )

    @staticmethod
    def _best_ask(levels: Any) -> float | None:
        if not isinstance(levels, list):
            return None
        best: float | None = None
        for level in levels:
            if not isinstance(level, dict):
                continue
            try:
                price = float(level.get("price"))
            except (TypeError, ValueError):
                continue
            if not math.isfinite(price):
                continue
            if best is None or price < best:
                best = price
        return best

    @staticmethod
    def _parse_json_array(value: Any) -> list[Any]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return []
            return parsed if isinstance(parsed, list) else []
        return []

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @property
    def min_order_usd(self) -> float:
        return self._settings.min_order_usd if self._settings.min_order_usd > 0 else 1.0

    def meets_min_notional(self, price: float, size: float) -> bool:
        return price * size >= self.min_order_usd

    def min_size_for_notional(self, price: float) -> float:
        if price <= 0:
            return math.inf
        return float(math.ceil(self.min_order_usd / price))

    @staticmethod
    def round_to_tick(price: float, tick_size: str) -> float:
        return round(price, _TICK_DECIMALS.get(tick_size, 4))

    async def place_order(
        self,
        token_id: str,
        price: float,
        size: float,
        tick_size: str | None = None,
        neg_risk: bool | None = None,
    ) -> OrderResult:
        """Limit buy (GTC) of ``size`` shares at ``price``.

        Callers are expected to check :meth:`meets_min_notional` first; an
        order below the minimum is rejected here without reaching the CLOB.
        """
        if not self._settings.trading_configured:
            LOGGER.info(
                "polymarket not configured (missing POLYMARKET_PRIVATE_KEY or POLYMARKET_PROXY); "
                "would buy token %s... @ %.3f x%s",
                token_id[:8],
                price,
                size,
            )
            return OrderResult.not_configured(self.venue, "polymarket trading not configured")

        if not self.meets_min_notional(price, size):
            message = (
                f"polymarket order notional ${price * size:.2f} below min ${self.min_order_usd:g}; "
                f"use size >= {self.min_size_for_notional(price):g}"
            )
            LOGGER.error(message)
            return OrderResult.failed(self.venue, message)

        tick = tick_size or self._settings.tick_size
        rounded = self.round_to_tick(price, tick)
        options = PartialCreateOrderOptions(
            tick_size=tick,
            neg_risk=self._settings.neg_risk if neg_risk is None else neg_risk,
        )
        try:
            response = await asyncio.to_thread(self._submit_buy_order, token_id, rounded, size, options)
        except Exception as exc:
            LOGGER.error("polymarket order failed: %s", exc)
            return OrderResult.failed(self.venue, str(exc) or type(exc).__name__)

        raw = response if isinstance(response, dict) else {"data": str(response)}
        order_id = raw.get("orderID") or raw.get("orderId") or raw.get("order_id")
        error = raw.get("error") or raw.get("errorMsg")
        if error or not order_id:
            message = str(error or "no order id in response")
            LOGGER.error("polymarket order failed: %s", message)
            return OrderResult.failed(self.venue, message, raw=raw)

        LOGGER.info(
            "polymarket order placed: %s token=%s... price=%s size=%s",
            order_id,
            token_id[:12],
            rounded,
            size,
        )
        return OrderResult.placed(self.venue, str(order_id), raw=raw)

    def _submit_buy_order(
        self,
        token_id: str,
        price: float,
        size: float,
        options: PartialCreateOrderOptions,
    ) -> Any:
        client = self._get_live_client()
        args = OrderArgs(token_id=token_id, price=float(price), size=float(size), side=BUY)
        return client.create_and_post_order(args, options)

    def _get_live_client(self) -> ClobClient:
        if self._live_client is None:
            self._live_client = self._build_live_client()
        return self._live_client

    def _build_live_client(self) -> ClobClient:
        settings = self._settings
        key = settings.private_key or ""
        if not key.startswith("0x"):
            key = f"0x{key}"

        client = ClobClient(
            settings.clob_base_url,
            chain_id=settings.chain_id,
            key=key,
            signature_type=settings.signature_type,
            funder=settings.proxy_address,
        )
        creds = self._load_credential_file(settings.credential_path)
        if creds is None:
            creds = client.create_or_derive_api_creds()
        client.set_api_creds(creds)
        return client

    @staticmethod
    def _load_credential_file(path: str | None) -> ApiCreds | None:
        """Reads ``{"key", "secret", "passphrase"}``; url-safe secrets are normalized."""
        if not path:
            return None
        credential_path = Path(path)
        if not credential_path.exists():
            return None
        parsed = json.loads(credential_path.read_text(encoding="utf-8"))
        secret = str(parsed.get("secret") or "").replace("-", "+").replace("_", "/")
        return ApiCreds(
            api_key=str(parsed.get("key") or ""),
            api_secret=secret,
            api_passphrase=str(parsed.get("passphrase") or ""),
        )

    def clear_live_client(self) -> None:
        self._live_client = None

    async def aclose(self) -> None:
        await self._gamma.aclose()
        await self._clob.aclose()
