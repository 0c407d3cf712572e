from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from ..models import Color, IntervalSnapshot, MarketContext, OrderBook, OrderBookLevel, PriceQuote, Side
from ..scheduler import RoundScheduler
from .base import INTERVAL_SECONDS, MarketDataError, polymarket_slug, slug_timestamp, to_polymarket_slug

logger = logging.getLogger(__name__)

GAMMA_BASE_URL = "https://gamma-api.polymarket.com"
CLOB_BASE_URL = "https://clob.polymarket.com"
RESOLVED_PRICE = 0.9
CACHED_INTERVALS_BEHIND = 2


@dataclass(frozen=True)
class MarketInfo:
    slug: str
    condition_id: str
    token_ids: dict[Side, str]


@dataclass(frozen=True)
class ClobMarket:
    color: Color | None
    up_price: float
    down_price: float
    active: bool


class PolymarketClient:
    """Gamma/CLOB REST client used both as price oracle and as context provider."""

    def __init__(
        self,
        *,
        gamma_url: str = GAMMA_BASE_URL,
        clob_url: str = CLOB_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gamma_url = gamma_url.rstrip("/")
        self.clob_url = clob_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._clock = clock
        self._scheduler = RoundScheduler(round_seconds=INTERVAL_SECONDS)
        self._market_cache: dict[str, MarketInfo] = {}

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        if self._client is not None:
            response = await self._client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    # Market metadata

    async def fetch_market_info(self, slug: str) -> MarketInfo | None:
        slug = to_polymarket_slug(slug)
        cached = self._market_cache.get(slug)
        if cached is not None:
            return cached

        try:
            payload = await self._get_json(f"{self.gamma_url}/events/slug/{slug}")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in {404, 422}:
                return None
            raise

        info = self._parse_market_info(slug, payload)
        if info is not None:
            self._evict_stale_markets()
            self._market_cache[slug] = info
        return info

    def _evict_stale_markets(self) -> None:
        oldest = self._scheduler.current_round(self._clock()).start_ts - CACHED_INTERVALS_BEHIND * INTERVAL_SECONDS
        for stale in [key for key in self._market_cache if (slug_timestamp(key) or 0) < oldest]:
            del self._market_cache[stale]

    def _parse_market_info(self, slug: str, payload: object) -> MarketInfo | None:
        if not isinstance(payload, dict):
            return None
        markets = payload.get("markets")
        if not isinstance(markets, list) or not markets or not isinstance(markets[0], dict):
            return None

        market = markets[0]
        condition_id = market.get("conditionId")
        if not isinstance(condition_id, str) or not condition_id:
            return None

        outcomes = self._coerce_list(market.get("outcomes"))
        token_ids = self._coerce_list(market.get("clobTokenIds"))
        mapping: dict[Side, str] = {}
        if outcomes and len(outcomes) == len(token_ids):
            for outcome, token_id in zip(outcomes, token_ids):
                side = self._normalize_outcome_label(outcome)
                if side is not None and token_id:
                    mapping[side] = str(token_id)
        elif len(token_ids) >= 2:
            mapping = {Side.UP: str(token_ids[0]), Side.DOWN: str(token_ids[1])}

        if Side.UP not in mapping or Side.DOWN not in mapping:
            logger.warning("[Polymarket] Market %s has no up/down token mapping", slug)
            return None
        return MarketInfo(slug=slug, condition_id=condition_id, token_ids=mapping)

    def _coerce_list(self, value: object) -> list[object]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed.startswith("[") and trimmed.endswith("]"):
                try:
                    parsed = json.loads(trimmed)
                except json.JSONDecodeError:
                    return []
                return parsed if isinstance(parsed, list) else []
        return []

    def _normalize_outcome_label(self, value: object) -> Side | None:
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized in {"up", "yes", "higher", "above"}:
            return Side.UP
        if normalized in {"down", "no", "lower", "below"}:
            return Side.DOWN
        return None

    # Price oracle

    async def _quote(self, market_slug: str, side: Side, clob_side: str) -> PriceQuote | None:
        try:
            info = await self.fetch_market_info(market_slug)
            if info is None:
                logger.warning("[Polymarket] Market not found: %s", market_slug)
                return None
            token_id = info.token_ids[side]
            payload = await self._get_json(
                f"{self.clob_url}/price",
                params={"token_id": token_id, "side": clob_side},
            )
            price = float(payload["price"])
        except (httpx.HTTPError, ValueError, TypeError, KeyError) as exc:
            logger.warning("[Polymarket] %s price unavailable for %s %s: %s", clob_side, market_slug, side.value, exc)
            return None

        if price <= 0:
            return None
        return PriceQuote(price=price, instrument_id=token_id)

    async def get_buy_price(self, market_slug: str, side: Side) -> PriceQuote | None:
        return await self._quote(market_slug, side, "BUY")

    async def get_sell_price(self, market_slug: str, side: Side) -> PriceQuote | None:
        return await self._quote(market_slug, side, "SELL")

    async def get_order_book_details(self, instrument_id: str) -> OrderBook | None:
        try:
            payload = await self._get_json(f"{self.clob_url}/book", params={"token_id": instrument_id})
            bids = self._parse_levels(payload.get("bids"))
            asks = self._parse_levels(payload.get("asks"))
        except (httpx.HTTPError, ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning("[Polymarket] Order book unavailable for %s: %s", instrument_id, exc)
            return None

        bids.sort(key=lambda level: level.price, reverse=True)
        asks.sort(key=lambda level: level.price)
        return OrderBook(bids=tuple(bids), asks=tuple(asks))

    def _parse_levels(self, raw: object) -> list[OrderBookLevel]:
        if not isinstance(raw, list):
            return []
        return [
            OrderBookLevel(price=float(level["price"]), size=float(level["size"]))
            for level in raw
            if isinstance(level, dict)
        ]

    # Context provider

    async def fetch_clob_market(self, condition_id: str) -> ClobMarket | None:
        try:
            payload = await self._get_json(f"{self.clob_url}/markets/{condition_id}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[Polymarket] CLOB market %s unavailable: %s", condition_id, exc)
            return None
        if not isinstance(payload, dict):
            return None

        tokens = payload.get("tokens")
        up_token: dict[str, Any] | None = None
        down_token: dict[str, Any] | None = None
        if isinstance(tokens, list):
            for token in tokens:
                if not isinstance(token, dict):
                    continue
                side = self._normalize_outcome_label(token.get("outcome"))
                if side is Side.UP:
                    up_token = token
                elif side is Side.DOWN:
                    down_token = token

        active = (
            payload.get("active") is True
            and payload.get("accepting_orders") is True
            and payload.get("closed") is False
        )
        if up_token is None or down_token is None:
            return ClobMarket(color=None, up_price=0.0, down_price=0.0, active=active)

        up_price = self._safe_float(up_token.get("price"))
        down_price = self._safe_float(down_token.get("price"))
        return ClobMarket(
            color=self._resolve_color(up_token, down_token, up_price, down_price),
            up_price=up_price,
            down_price=down_price,
            active=active,
        )

    @staticmethod
    def _safe_float(value: object) -> float:
        try:
            return float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _resolve_color(
        up_token: dict[str, Any],
        down_token: dict[str, Any],
        up_price: float,
        down_price: float,
    ) -> Color | None:
        if up_token.get("winner") is True:
            return Color.GREEN
        if down_token.get("winner") is True:
            return Color.RED
        if up_price > RESOLVED_PRICE:
            return Color.GREEN
        if down_price > RESOLVED_PRICE:
            return Color.RED
        if up_price > down_price:
            return Color.GREEN
        if down_price > up_price:
            return Color.RED
        return None

    async def _snapshot(self, slug: str) -> tuple[IntervalSnapshot, bool]:
        info = await self.fetch_market_info(slug)
        if info is None:
            return IntervalSnapshot(slug=slug, color=None), False
        market = await self.fetch_clob_market(info.condition_id)
        if market is None:
            return IntervalSnapshot(slug=slug, color=None), False
        return IntervalSnapshot(slug=slug, color=market.color, last_price=market.up_price), market.active

    async def get_market_context(self, asset: str) -> MarketContext:
        now_ts = self._clock()
        window = self._scheduler.current_round(now_ts)
        start_ts = int(window.start_ts)

        try:
            (current, active), (prev1, _), (prev2, _) = await asyncio.gather(
                self._snapshot(polymarket_slug(asset, start_ts)),
                self._snapshot(polymarket_slug(asset, start_ts - INTERVAL_SECONDS)),
                self._snapshot(polymarket_slug(asset, start_ts - 2 * INTERVAL_SECONDS)),
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise MarketDataError(f"polymarket context unavailable for {asset}: {exc}") from exc

        return MarketContext(
            asset=asset,
            current=current,
            active=active,
            time_to_end=max(0, int(window.close_ts - now_ts)),
            previous=(prev2, prev1),
            next_slug=polymarket_slug(asset, start_ts + INTERVAL_SECONDS),
            source="polymarket",
        )
