from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from src.updown_trader.config import TRADING_CONFIGS
from src.updown_trader.engine import TradingEngine
from src.updown_trader.models import (
    Color,
    IntervalSnapshot,
    MarketContext,
    OrderBook,
    OrderBookLevel,
    PriceQuote,
    Side,
)
from src.updown_trader.providers.base import INTERVAL_SECONDS, MarketDataError, polymarket_slug
from src.updown_trader.repository import SeriesRepository

BASE_TS = 1_767_225_600


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def ts(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeOracle:
    """Scripted prices keyed by ``(slug, side)``.

    Each key holds a list of prices; calls consume it and the last value
    repeats once the list runs out.
    """

    def __init__(self) -> None:
        self.buy_prices: dict[tuple[str, Side], list[float]] = {}
        self.sell_prices: dict[tuple[str, Side], list[float]] = {}
        self.book: OrderBook | None = None
        self.buy_calls: list[tuple[str, Side]] = []
        self.sell_calls: list[tuple[str, Side]] = []

    def set_buy(self, slug: str, side: Side, *prices: float) -> None:
        self.buy_prices[(slug, side)] = list(prices)

    def set_sell(self, slug: str, side: Side, *prices: float) -> None:
        self.sell_prices[(slug, side)] = list(prices)

    def set_book(self, bids_total: float, asks_total: float) -> None:
        self.book = OrderBook(
            bids=(OrderBookLevel(price=0.19, size=bids_total),),
            asks=(OrderBookLevel(price=0.21, size=asks_total),),
        )

    @staticmethod
    def _next(prices: list[float] | None) -> float | None:
        if not prices:
            return None
        if len(prices) > 1:
            return prices.pop(0)
        return prices[0]

    async def get_buy_price(self, market_slug: str, side: Side) -> PriceQuote | None:
        self.buy_calls.append((market_slug, side))
        price = self._next(self.buy_prices.get((market_slug, side)))
        if price is None:
            return None
        return PriceQuote(price=price, instrument_id=f"{market_slug}:{side.value}")

    async def get_sell_price(self, market_slug: str, side: Side) -> PriceQuote | None:
        self.sell_calls.append((market_slug, side))
        price = self._next(self.sell_prices.get((market_slug, side)))
        if price is None:
            return None
        return PriceQuote(price=price, instrument_id=f"{market_slug}:{side.value}")

    async def get_order_book_details(self, instrument_id: str) -> OrderBook | None:
        return self.book


def interval_slug(index: int, asset: str = "eth") -> str:
    """Slug of the ``index``-th interval after ``BASE_TS``."""
    return polymarket_slug(asset, BASE_TS + index * INTERVAL_SECONDS)


def build_context(
    index: int,
    *,
    asset: str = "eth",
    current: Color | None = None,
    prev1: Color | None = None,
    prev2: Color | None = None,
    time_to_end: int = 600,
    active: bool = True,
) -> MarketContext:
    return MarketContext(
        asset=asset,
        current=IntervalSnapshot(slug=interval_slug(index, asset), color=current),
        active=active,
        time_to_end=time_to_end,
        previous=(
            IntervalSnapshot(slug=interval_slug(index - 2, asset), color=prev2),
            IntervalSnapshot(slug=interval_slug(index - 1, asset), color=prev1),
        ),
        next_slug=interval_slug(index + 1, asset),
        source="test",
    )


class FakeContextProvider:
    def __init__(self) -> None:
        self.contexts: dict[str, MarketContext] = {}
        self.calls = 0

    def set(self, index: int, **kwargs) -> MarketContext:
        context = build_context(index, **kwargs)
        self.contexts[context.asset] = context
        return context

    async def get_market_context(self, asset: str) -> MarketContext:
        self.calls += 1
        context = self.contexts.get(asset)
        if context is None:
            raise MarketDataError(f"no context scripted for {asset}")
        return context


class FakeNotifier:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def broadcast(self, text: str) -> int:
        self.messages.append(text)
        return 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def context_provider() -> FakeContextProvider:
    return FakeContextProvider()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def repository(tmp_path) -> SeriesRepository:
    return SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))


@pytest.fixture
def make_engine(clock, oracle, context_provider, notifier, repository):
    def _make(bot_id: str = "bot1", **overrides) -> TradingEngine:
        config = replace(TRADING_CONFIGS[bot_id], **overrides)
        return TradingEngine(
            config,
            context_provider=context_provider,
            price_oracle=oracle,
            repository=repository,
            notifier=notifier,
            clock=clock,
        )

    return _make


@pytest.fixture
def slug_at():
    return interval_slug
