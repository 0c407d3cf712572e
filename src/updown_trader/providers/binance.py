from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

import httpx

from ..models import Candle, IntervalSnapshot, MarketContext
from .base import MarketDataError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = (
    "https://data-api.binance.vision/api/v3",
    "https://api.binance.com/api/v3",
    "https://api1.binance.com/api/v3",
    "https://api2.binance.com/api/v3",
)
SYMBOLS = {
    "eth": "ETHUSDT",
    "btc": "BTCUSDT",
}


class BinanceContextProvider:
    """Builds the 15-minute context from Binance klines.

    The last four klines are fetched: the oldest is ignored, the middle two
    are the closed predecessors and the newest is the forming interval.
    """

    def __init__(
        self,
        *,
        endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one Binance endpoint is required")
        self.endpoints = [endpoint.rstrip("/") for endpoint in endpoints]
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._clock = clock
        self._endpoint_index = 0

    async def _fetch(self, url: str, params: dict[str, Any]) -> Any:
        if self._client is not None:
            response = await self._client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    async def get_klines(self, symbol: str, limit: int = 4) -> list[Candle]:
        params = {"symbol": symbol, "interval": "15m", "limit": limit}
        last_error: Exception | None = None

        for offset in range(len(self.endpoints)):
            index = (self._endpoint_index + offset) % len(self.endpoints)
            endpoint = self.endpoints[index]
            try:
                payload = await self._fetch(f"{endpoint}/klines", params)
                candles = [self._parse_kline(row) for row in payload]
            except (httpx.HTTPError, ValueError, TypeError, IndexError) as exc:
                last_error = exc
                continue

            if index != self._endpoint_index:
                logger.info("[Binance] Switched to endpoint: %s", endpoint)
                self._endpoint_index = index
            return candles

        raise MarketDataError(f"all Binance endpoints failed for {symbol}: {last_error}")

    @staticmethod
    def _parse_kline(row: Sequence[Any]) -> Candle:
        return Candle(
            open_time_ms=int(row[0]),
            close_time_ms=int(row[6]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
        )

    async def get_market_context(self, asset: str) -> MarketContext:
        symbol = SYMBOLS.get(asset.lower())
        if symbol is None:
            raise MarketDataError(f"unknown asset: {asset}")

        candles = await self.get_klines(symbol, limit=4)
        if len(candles) < 4:
            raise MarketDataError(f"expected 4 klines for {symbol}, got {len(candles)}")

        _, prev2, prev1, current = candles[-4:]
        prefix = f"binance-{symbol.lower()}"

        def snapshot(candle: Candle) -> IntervalSnapshot:
            return IntervalSnapshot(
                slug=f"{prefix}-{candle.open_time_ms}",
                color=candle.color,
                open_price=candle.open,
                last_price=candle.close,
            )

        now_ms = self._clock() * 1000
        return MarketContext(
            asset=asset.lower(),
            current=snapshot(current),
            active=True,
            time_to_end=max(0, int((current.close_time_ms - now_ms) // 1000)),
            previous=(snapshot(prev2), snapshot(prev1)),
            next_slug=f"{prefix}-{current.close_time_ms + 1}",
            source="binance",
        )
