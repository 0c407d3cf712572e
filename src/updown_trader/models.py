from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class Color(StrEnum):
    GREEN = "green"
    RED = "red"

    @property
    def opposite(self) -> Color:
        return Color.RED if self is Color.GREEN else Color.GREEN

    @property
    def side(self) -> Side:
        return Side.UP if self is Color.GREEN else Side.DOWN

    @property
    def emoji(self) -> str:
        return "🟢" if self is Color.GREEN else "🔴"


class Side(StrEnum):
    UP = "up"
    DOWN = "down"


class SignalType(StrEnum):
    TWO_CANDLES = "2candles"
    THREE_CANDLES = "3candles"

    @property
    def candle_count(self) -> int:
        return 3 if self is SignalType.THREE_CANDLES else 2


class BuyStrategy(StrEnum):
    SIGNAL = "signal"
    VALIDATE = "validate"


class SeriesStatus(StrEnum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    CANCELLED = "cancelled"
    COOLDOWN = "cooldown"


class MarketState(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"


class ValidationState(StrEnum):
    VALIDATING = "validating"
    VALIDATED = "validated"
    REJECTED = "rejected"


class PositionStatus(StrEnum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    SOLD = "sold"


class EventType(StrEnum):
    SERIES_OPENED = "series_opened"
    BUY = "buy"
    SELL = "sell"
    SELL_HEDGE = "sell_hedge"
    HEDGE_BOUGHT = "hedge_bought"
    HEDGE_SETTLED = "hedge_settled"
    SIGNAL_CANCELLED = "signal_cancelled"
    WAITING_MARKET = "waiting_market"
    MARKET_ACTIVE = "market_active"
    MARKET_WON = "market_won"
    MARKET_LOST = "market_lost"
    SERIES_WON = "series_won"
    SERIES_LOST = "series_lost"
    SERIES_CANCELLED = "series_cancelled"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PRICE_ERROR = "price_error"
    ORDER_BOOK = "order_book"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_REJECTED = "validation_rejected"
    COOLDOWN_STARTED = "cooldown_started"
    COOLDOWN_ENDED = "cooldown_ended"


class LogAction(StrEnum):
    CHECK = "check"
    SKIP = "skip"
    DETECT = "detect"
    SEND = "send"
    ERROR = "error"
    TRADE = "trade"


@dataclass(frozen=True)
class PriceQuote:
    price: float
    instrument_id: str | None = None


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    bids: tuple[OrderBookLevel, ...]
    asks: tuple[OrderBookLevel, ...]


@dataclass(frozen=True)
class IntervalSnapshot:
    slug: str
    color: Color | None
    open_price: float | None = None
    last_price: float | None = None


@dataclass(frozen=True)
class MarketContext:
    """Current 15-minute interval plus its two predecessors, oldest first."""

    asset: str
    current: IntervalSnapshot
    active: bool
    time_to_end: int
    previous: tuple[IntervalSnapshot, IntervalSnapshot]
    next_slug: str
    source: str = "unknown"

    @property
    def current_slug(self) -> str:
        return self.current.slug

    @property
    def current_color(self) -> Color | None:
        return self.current.color

    @property
    def prev1(self) -> IntervalSnapshot:
        return self.previous[1]

    @property
    def prev2(self) -> IntervalSnapshot:
        return self.previous[0]

    def to_dict(self) -> dict[str, Any]:
        def _snapshot(item: IntervalSnapshot) -> dict[str, Any]:
            return {
                "slug": item.slug,
                "color": item.color.value if item.color else None,
                "open_price": item.open_price,
                "last_price": item.last_price,
            }

        return {
            "asset": self.asset,
            "source": self.source,
            "current": _snapshot(self.current),
            "prev1": _snapshot(self.prev1),
            "prev2": _snapshot(self.prev2),
            "next_slug": self.next_slug,
            "active": self.active,
            "time_to_end": self.time_to_end,
        }


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float

    @property
    def color(self) -> Color:
        return Color.GREEN if self.close >= self.open else Color.RED


@dataclass(frozen=True)
class RoundWindow:
    round_id: int
    start_ts: float
    close_ts: float


@dataclass(frozen=True)
class Signal:
    asset: str
    color: Color
    signal_market_slug: str
    next_market_slug: str
    signal_type: SignalType
    time_to_end: int = 0
    detected_at: datetime = field(default_factory=lambda: utc_now())


class Position(BaseModel):
    step: int
    market_slug: str
    instrument_id: str | None = None
    amount: float
    price: float
    shares: float
    commission: float
    status: PositionStatus = PositionStatus.ACTIVE


class SeriesEvent(BaseModel):
    timestamp: datetime
    type: EventType
    step: int | None = None
    market_slug: str | None = None
    amount: float | None = None
    market_color: Color | None = None
    pnl: float | None = None
    message: str = ""


class StabilityResult(BaseModel):
    stable: bool
    reason: str
    change_percent: float = 0.0


class ValidationSample(BaseModel):
    timestamp: datetime
    price: float
    matches: bool
    side: Side
    imbalance: float | None = None
    bids_total: float | None = None
    asks_total: float | None = None

    @property
    def symbol(self) -> str:
        return "+" if self.matches else "-"


class ValidationRun(BaseModel):
    market_slug: str
    state: ValidationState = ValidationState.VALIDATING
    history: list[ValidationSample] = Field(default_factory=list)
    event_index: int | None = None
    last_check_at: datetime | None = None
    last_result: StabilityResult | None = None


class TradingSeries(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    bot_id: str
    asset: str
    signal_market_slug: str | None = None
    signal_color: Color | None = None
    bet_color: Color | None = None
    status: SeriesStatus = SeriesStatus.ACTIVE
    current_step: int = 1
    current_market_slug: str | None = None
    market_state: MarketState = MarketState.WAITING
    positions: list[Position] = Field(default_factory=list)
    next_step_bought: bool = False
    next_market_slug: str | None = None
    total_invested: float = 0.0
    total_commission: float = 0.0
    total_pnl: float = 0.0
    hedge_losses: float = 0.0
    validation: ValidationRun | None = None
    hedge_validation: ValidationRun | None = None
    events: list[SeriesEvent] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: utc_now())
    ended_at: datetime | None = None

    @property
    def validation_state(self) -> ValidationState | None:
        return self.validation.state if self.validation else None

    @property
    def hedge_validation_state(self) -> ValidationState | None:
        return self.hedge_validation.state if self.hedge_validation else None

    def add_event(
        self,
        event_type: EventType,
        *,
        timestamp: datetime,
        message: str = "",
        step: int | None = None,
        market_slug: str | None = None,
        amount: float | None = None,
        market_color: Color | None = None,
        pnl: float | None = None,
    ) -> int:
        """Append a timeline event and return its index."""
        self.events.append(
            SeriesEvent(
                timestamp=timestamp,
                type=event_type,
                step=step if step is not None else self.current_step,
                market_slug=market_slug or self.current_market_slug,
                amount=amount,
                market_color=market_color,
                pnl=pnl,
                message=message,
            )
        )
        return len(self.events) - 1

    def active_position(self, step: int) -> Position | None:
        for position in self.positions:
            if position.step == step and position.status is PositionStatus.ACTIVE:
                return position
        return None

    def open_positions(self) -> list[Position]:
        return [p for p in self.positions if p.status is PositionStatus.ACTIVE]

    def cooldown_active(self, now: datetime) -> bool:
        if self.status is not SeriesStatus.COOLDOWN or self.ended_at is None:
            return False
        return ensure_utc(self.ended_at) > now

    def has_event(self, event_type: EventType) -> bool:
        return any(event.type is event_type for event in self.events)


class TradingStats(BaseModel):
    bot_id: str
    initial_deposit: float = 100.0
    current_balance: float = 100.0
    total_trades: int = 0
    won_trades: int = 0
    lost_trades: int = 0
    cancelled_trades: int = 0
    total_pnl: float = 0.0
    total_commissions: float = 0.0
    max_win_streak: int = 0
    max_loss_streak: int = 0
    current_streak: int = 0
    wins_by_step: dict[int, int] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: utc_now())

    def record_win(self, *, step: int, pnl: float, commission: float) -> None:
        self.total_trades += 1
        self.won_trades += 1
        self.total_pnl += pnl
        self.total_commissions += commission
        self.wins_by_step[step] = self.wins_by_step.get(step, 0) + 1
        self.current_streak = self.current_streak + 1 if self.current_streak >= 0 else 1
        self.max_win_streak = max(self.max_win_streak, self.current_streak)

    def record_loss(self, *, pnl: float, commission: float) -> None:
        self.total_trades += 1
        self.lost_trades += 1
        self.total_pnl += pnl
        self.total_commissions += commission
        self.current_streak = self.current_streak - 1 if self.current_streak <= 0 else -1
        self.max_loss_streak = max(self.max_loss_streak, abs(self.current_streak))

    def record_cancel(self, *, pnl: float, commission: float, counted: bool = True) -> None:
        if counted:
            self.cancelled_trades += 1
        self.total_pnl += pnl
        self.total_commissions += commission


class TradeLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: utc_now())
    bot_id: str | None = None
    asset: str = "unknown"
    market_slug: str = "unknown"
    action: LogAction = LogAction.TRADE
    reason: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
