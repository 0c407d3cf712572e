from .base import (
    INTERVAL_SECONDS,
    MarketContextProvider,
    MarketDataError,
    PriceOracle,
    slug_timestamp,
    to_polymarket_slug,
)
from .binance import BinanceContextProvider
from .polymarket import PolymarketClient

__all__ = [
    "INTERVAL_SECONDS",
    "BinanceContextProvider",
    "MarketContextProvider",
    "MarketDataError",
    "PolymarketClient",
    "PriceOracle",
    "slug_timestamp",
    "to_polymarket_slug",
]
