from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .models import OrderBook, StabilityResult, ValidationSample

WINDOW_SIZE = 12
MAX_REVERSAL_PRICE = 0.50
LOW_PRICE = 0.30
VERY_LOW_PRICE = 0.15
DUST_PRICE = 0.10
DUST_MAX_RISE = 0.05
IMBALANCE_CONFIRM = 0.10
IMBALANCE_STRONG = 0.50
IMBALANCE_VERY_STRONG = 0.80
INTRA_WINDOW_MAX_RISE_PCT = 5.0
TREND_NOISE = 0.001


@dataclass(frozen=True)
class OrderBookAnalysis:
    bids_total: float
    asks_total: float
    total_size: float
    best_bid: float
    best_ask: float
    spread: float
    imbalance: float


def analyze_order_book(book: OrderBook | None) -> OrderBookAnalysis | None:
    """Summarize depth on both sides.

    Imbalance is ``(asks - bids) / total``; positive means more resting
    sellers than buyers on the monitored side.
    """
    if book is None or not book.bids or not book.asks:
        return None

    bids_total = sum(level.size for level in book.bids)
    asks_total = sum(level.size for level in book.asks)
    total_size = bids_total + asks_total
    if total_size <= 0:
        return None

    best_bid = book.bids[0].price
    best_ask = book.asks[0].price
    return OrderBookAnalysis(
        bids_total=bids_total,
        asks_total=asks_total,
        total_size=total_size,
        best_bid=best_bid,
        best_ask=best_ask,
        spread=best_ask - best_bid,
        imbalance=(asks_total - bids_total) / total_size,
    )


def _trend_ok(prices: Sequence[float]) -> bool:
    first = prices[0]
    for previous, current in zip(prices, prices[1:]):
        if current > previous + TREND_NOISE and first > 0:
            if (current - first) / first * 100 > INTRA_WINDOW_MAX_RISE_PCT:
                return False
    return True


def check_stability(history: Sequence[ValidationSample]) -> StabilityResult:
    """Classify the last ``WINDOW_SIZE`` samples of the monitored side.

    Falling or low prices on the monitored side corroborate the signal;
    rising prices mean the interval is turning against it.
    """
    window = list(history)[-WINDOW_SIZE:]
    prices = [sample.price for sample in window if sample.price > 0]
    if not prices:
        return StabilityResult(stable=False, reason="no prices in window")

    first = prices[0]
    last = prices[-1]
    change = last - first
    change_pct = change / first * 100 if first > 0 else 0.0
    imbalance = window[-1].imbalance if window[-1].imbalance is not None else 0.0
    book_ok = imbalance > IMBALANCE_CONFIRM

    def verdict(stable: bool, reason: str) -> StabilityResult:
        return StabilityResult(stable=stable, reason=reason, change_percent=change_pct)

    if last > MAX_REVERSAL_PRICE:
        return verdict(False, f"price ${last:.4f} above ${MAX_REVERSAL_PRICE:.2f}, interval turned against the signal")

    if last < DUST_PRICE and change > DUST_MAX_RISE:
        return verdict(False, f"price rose from ${first:.4f} to ${last:.4f}")

    if last < LOW_PRICE and (book_ok or change_pct <= -10):
        return verdict(True, f"low price ${last:.4f} confirmed (change {change_pct:+.2f}%, imbalance {imbalance * 100:.1f}%)")

    if last < VERY_LOW_PRICE and first < VERY_LOW_PRICE:
        return verdict(True, f"price ${last:.4f} stays in the very low range")

    if last < LOW_PRICE:
        return verdict(True, f"low price ${last:.4f}")

    if change_pct > 10 and last > LOW_PRICE:
        return verdict(False, f"price rose {change_pct:.2f}%")

    if change_pct > 2 and last > LOW_PRICE:
        return verdict(False, f"price rose {change_pct:.2f}%, possible reversal")

    if change_pct <= -1 and _trend_ok(prices) and book_ok:
        return verdict(True, f"price fell {abs(change_pct):.2f}%, imbalance {imbalance * 100:.1f}%")

    if change_pct < -10 and imbalance > 0.05:
        return verdict(True, f"price fell {abs(change_pct):.2f}%, imbalance {imbalance * 100:.1f}%")

    if change_pct < -5 and imbalance > IMBALANCE_CONFIRM:
        return verdict(True, f"price fell {abs(change_pct):.2f}%, strong imbalance {imbalance * 100:.1f}%")

    if abs(change_pct) < 5 and imbalance > IMBALANCE_VERY_STRONG:
        return verdict(True, f"price flat ({change_pct:+.2f}%), very strong imbalance {imbalance * 100:.1f}%")

    if abs(change_pct) < 5 and imbalance > IMBALANCE_STRONG:
        return verdict(True, f"price flat ({change_pct:+.2f}%), strong imbalance {imbalance * 100:.1f}%")

    return verdict(False, f"unstable: change {change_pct:+.2f}%, imbalance {imbalance * 100:.1f}%")
