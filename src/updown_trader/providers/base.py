from __future__ import annotations

import re
from typing import Protocol

from ..models import MarketContext, OrderBook, PriceQuote, Side

INTERVAL_SECONDS = 15 * 60

_BINANCE_SLUG = re.compile(r"^binance-([a-z]+)usdt-(\d+)$")
_TRAILING_TS = re.compile(r"-(\d+)$")


class MarketDataError(RuntimeError):
    """Raised when a market context cannot be assembled from upstream data."""


class PriceOracle(Protocol):
    async def get_buy_price(self, market_slug: str, side: Side) -> PriceQuote | None: ...

    async def get_sell_price(self, market_slug: str, side: Side) -> PriceQuote | None: ...

    async def get_order_book_details(self, instrument_id: str) -> OrderBook | None: ...


class MarketContextProvider(Protocol):
    async def get_market_context(self, asset: str) -> MarketContext: ...


def polymarket_slug(asset: str, start_ts: int) -> str:
    return f"{asset.lower()}-updown-15m-{int(start_ts)}"


def to_polymarket_slug(slug: str) -> str:
    """Map ``binance-ethusdt-<open ms>`` to ``eth-updown-15m-<open s>``.

    Anything that is not a Binance kline slug is returned unchanged.
    """
    match = _BINANCE_SLUG.match(slug or "")
    if match is None:
        return slug
    asset, open_ms = match.groups()
    return polymarket_slug(asset, int(open_ms) // 1000)


def slug_timestamp(slug: str) -> int | None:
    """Interval start in seconds, whichever slug family ``slug`` belongs to."""
    match = _TRAILING_TS.search(to_polymarket_slug(slug or ""))
    if match is None:
        return None
    return int(match.group(1))
