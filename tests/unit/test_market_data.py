import asyncio

import httpx
import pytest

from src.updown_trader.models import Color, Side
from src.updown_trader.providers import (
    BinanceContextProvider,
    MarketDataError,
    PolymarketClient,
    slug_timestamp,
    to_polymarket_slug,
)

START_TS = 1_767_225_600


def _gamma_event(ts: int) -> dict:
    return {
        "markets": [
            {
                "conditionId": f"c-{ts}",
                "outcomes": '["Up", "Down"]',
                "clobTokenIds": f'["up-{ts}", "down-{ts}"]',
            }
        ]
    }


def _clob_market(up_price: float, down_price: float, *, winner: str | None = None, active: bool = False) -> dict:
    return {
        "active": active,
        "accepting_orders": active,
        "closed": not active,
        "tokens": [
            {"outcome": "Up", "price": up_price, "winner": winner == "up"},
            {"outcome": "Down", "price": down_price, "winner": winner == "down"},
        ],
    }


def _polymarket_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.startswith("/events/slug/"):
        slug = path.rsplit("/", 1)[-1]
        ts = int(slug.rsplit("-", 1)[-1])
        if ts < START_TS - 1800:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=_gamma_event(ts))
    if path.startswith("/markets/"):
        ts = int(path.rsplit("-", 1)[-1])
        markets = {
            START_TS: _clob_market(0.6, 0.4, active=True),
            START_TS - 900: _clob_market(0.0, 1.0, winner="down"),
            START_TS - 1800: _clob_market(0.95, 0.05),
        }
        return httpx.Response(200, json=markets[ts])
    if path == "/price":
        token_id = request.url.params["token_id"]
        side = request.url.params["side"]
        if token_id.startswith("up-"):
            return httpx.Response(200, json={"price": "0.55" if side == "BUY" else "0.53"})
        return httpx.Response(500, json={"error": "boom"})
    if path == "/book":
        return httpx.Response(
            200,
            json={
                "bids": [{"price": "0.40", "size": "10"}, {"price": "0.45", "size": "5"}],
                "asks": [{"price": "0.60", "size": "7"}, {"price": "0.50", "size": "3"}],
            },
        )
    return httpx.Response(404)


def _polymarket() -> PolymarketClient:
    return PolymarketClient(
        gamma_url="https://gamma.test",
        clob_url="https://clob.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_polymarket_handler)),
        clock=lambda: START_TS + 100,
    )


def test_slug_bridge_converts_binance_slugs() -> None:
    assert to_polymarket_slug("binance-ethusdt-1767225600000") == "eth-updown-15m-1767225600"
    assert to_polymarket_slug("btc-updown-15m-1767225600") == "btc-updown-15m-1767225600"
    assert slug_timestamp("binance-btcusdt-1767225600000") == 1767225600
    assert slug_timestamp("no-timestamp-here") is None


def test_polymarket_quotes_prices_and_book() -> None:
    async def _run():
        client = _polymarket()
        slug = f"eth-updown-15m-{START_TS}"
        buy = await client.get_buy_price(slug, Side.UP)
        sell = await client.get_sell_price(slug, Side.UP)
        failed = await client.get_buy_price(slug, Side.DOWN)
        missing = await client.get_buy_price(f"eth-updown-15m-{START_TS - 9000}", Side.UP)
        book = await client.get_order_book_details(buy.instrument_id)
        return buy, sell, failed, missing, book

    buy, sell, failed, missing, book = asyncio.run(_run())

    assert buy.price == 0.55
    assert buy.instrument_id == f"up-{START_TS}"
    assert sell.price == 0.53
    assert failed is None
    assert missing is None
    assert [level.price for level in book.bids] == [0.45, 0.40]
    assert [level.price for level in book.asks] == [0.50, 0.60]


def test_polymarket_market_context_resolves_colors() -> None:
    context = asyncio.run(_polymarket().get_market_context("eth"))

    assert context.current_slug == f"eth-updown-15m-{START_TS}"
    assert context.current_color is Color.GREEN
    assert context.active is True
    assert context.time_to_end == 800
    assert context.prev1.color is Color.RED
    assert context.prev2.color is Color.GREEN
    assert context.next_slug == f"eth-updown-15m-{START_TS + 900}"
    assert context.source == "polymarket"


def _kline(open_ms: int, open_price: float, close_price: float) -> list:
    return [open_ms, str(open_price), "0", "0", str(close_price), "0", open_ms + 899_999]


KLINES = [
    _kline((START_TS - 2700) * 1000, 100.0, 99.0),
    _kline((START_TS - 1800) * 1000, 100.0, 101.0),
    _kline((START_TS - 900) * 1000, 101.0, 100.5),
    _kline(START_TS * 1000, 100.5, 100.5),
]


def test_binance_context_from_klines() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        assert request.url.params["interval"] == "15m"
        assert request.url.params["symbol"] == "ETHUSDT"
        if request.url.host == "primary.test":
            return httpx.Response(500)
        return httpx.Response(200, json=KLINES)

    async def _run():
        provider = BinanceContextProvider(
            endpoints=["https://primary.test/api/v3", "https://backup.test/api/v3"],
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=lambda: START_TS + 780,
        )
        first = await provider.get_market_context("eth")
        second = await provider.get_market_context("eth")
        return first, second

    context, _ = asyncio.run(_run())

    assert calls == ["primary.test", "backup.test", "backup.test"]
    assert context.current_slug == f"binance-ethusdt-{START_TS * 1000}"
    assert context.current_color is Color.GREEN
    assert context.prev1.color is Color.RED
    assert context.prev2.color is Color.GREEN
    assert context.time_to_end == 119
    assert to_polymarket_slug(context.next_slug) == f"eth-updown-15m-{START_TS + 900}"
    assert context.source == "binance"


def test_binance_raises_when_all_endpoints_fail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    provider = BinanceContextProvider(
        endpoints=["https://a.test/api/v3", "https://b.test/api/v3"],
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    with pytest.raises(MarketDataError):
        asyncio.run(provider.get_market_context("eth"))


def test_binance_rejects_unknown_asset() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
    provider = BinanceContextProvider(client=httpx.AsyncClient(transport=transport))

    with pytest.raises(MarketDataError, match="unknown asset"):
        asyncio.run(provider.get_market_context("doge"))


def test_gamma_outcomes_may_be_json_strings() -> None:
    client = _polymarket()

    info = client._parse_market_info("s", _gamma_event(1))

    assert info is not None
    assert info.token_ids == {Side.UP: "up-1", Side.DOWN: "down-1"}


def test_market_info_cache_drops_intervals_older_than_prev2() -> None:
    now = {"ts": START_TS + 100}
    client = PolymarketClient(
        gamma_url="https://gamma.test",
        clob_url="https://clob.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_polymarket_handler)),
        clock=lambda: now["ts"],
    )

    async def _run():
        await client.fetch_market_info(f"eth-updown-15m-{START_TS}")
        await client.fetch_market_info(f"eth-updown-15m-{START_TS + 900}")
        now["ts"] = START_TS + 2700 + 100
        await client.fetch_market_info(f"eth-updown-15m-{START_TS + 2700}")

    asyncio.run(_run())

    assert set(client._market_cache) == {
        f"eth-updown-15m-{START_TS + 900}",
        f"eth-updown-15m-{START_TS + 2700}",
    }
