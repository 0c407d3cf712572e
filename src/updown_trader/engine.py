from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import BotConfig
from .models import (
    BuyStrategy,
    Color,
    EventType,
    LogAction,
    MarketContext,
    MarketState,
    Position,
    PositionStatus,
    PriceQuote,
    SeriesStatus,
    Signal,
    TradeLogEntry,
    TradingSeries,
    TradingStats,
    ValidationRun,
    ValidationState,
    utc_now,
)
from .notifier import Notifier, render_series_message
from .paper_trading import FeeSchedule, Fill, compute_stake, redemption_value, sell_proceeds, simulate_buy
from .providers.base import INTERVAL_SECONDS, MarketContextProvider, PriceOracle, slug_timestamp, to_polymarket_slug
from .repository import SeriesRepository
from .stability import analyze_order_book
from .state import RuntimeState
from .validation import (
    decide,
    due_for_sample,
    monitored_side,
    record_sample,
    render_final,
    render_progress,
)

logger = logging.getLogger(__name__)

SIGNAL_CANCEL_WINDOW_SECONDS = 20
HEDGE_SELL_WINDOW_SECONDS = 20


class PurchaseRejected(Exception):
    """A step or hedge purchase could not be priced or funded."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


@dataclass(frozen=True)
class PurchasePlan:
    step: int
    market_slug: str
    quote: PriceQuote
    fill: Fill


def _short_hash(instrument_id: str | None) -> str:
    if not instrument_id:
        return ""
    return instrument_id[:7]


class TradingEngine:
    """Martingale series state machine for one bot configuration.

    Holds at most one active or cooldown series per asset. Every mutation
    of a series happens under that asset's lock, either from ``tick`` or
    from ``on_signal``.
    """

    def __init__(
        self,
        config: BotConfig,
        *,
        context_provider: MarketContextProvider,
        price_oracle: PriceOracle,
        repository: SeriesRepository,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        state: RuntimeState | None = None,
    ) -> None:
        self.config = config
        self.bot_id = config.bot_id
        self.fees = FeeSchedule(entry_fee=config.entry_fee, exit_fee=config.exit_fee)
        self.context_provider = context_provider
        self.price_oracle = price_oracle
        self.repository = repository
        self.notifier = notifier
        self._clock = clock
        self._state = state
        self._active: dict[str, TradingSeries] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, asset: str) -> asyncio.Lock:
        lock = self._locks.get(asset)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[asset] = lock
        return lock

    def _tag(self, series: TradingSeries | None = None, asset: str | None = None) -> str:
        name = (series.asset if series else asset or "").upper()
        return f"[Trade] [{self.bot_id}] {name}"

    # Ledger and bookkeeping

    def _stats(self) -> TradingStats:
        return self.repository.get_or_create_stats(self.bot_id, initial_deposit=self.config.base_deposit)

    def _save(self, series: TradingSeries) -> None:
        self.repository.save_series(series)

    def _log(
        self,
        asset: str,
        market_slug: str | None,
        reason: str,
        data: dict[str, Any] | None = None,
        action: LogAction = LogAction.TRADE,
    ) -> None:
        entry = TradeLogEntry(
            timestamp=self._clock(),
            bot_id=self.bot_id,
            asset=asset,
            market_slug=market_slug or "unknown",
            action=action,
            reason=reason,
            data=data or {},
        )
        try:
            self.repository.append_log(entry)
        except sqlite3.Error as exc:
            logger.warning("[Trade] [%s] Failed to write trade log: %s", self.bot_id, exc)

    async def _notify(self, series: TradingSeries, short_message: str) -> None:
        if self.notifier is None:
            return
        text = render_series_message(series, short_message, self.config.max_steps)
        try:
            await self.notifier.broadcast(text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s: Notification failed: %s", self._tag(series), exc)

    def _runtime_event(self, level: str, message: str, data: dict | None = None) -> None:
        if self._state is not None:
            self._state.add_event(level, message, {"bot_id": self.bot_id, **(data or {})})

    # Lifecycle

    async def start(self) -> None:
        stats = self._stats()
        pristine = stats.total_trades == 0 and stats.total_pnl == 0 and stats.cancelled_trades == 0
        if pristine and stats.initial_deposit != self.config.base_deposit:
            stats.initial_deposit = self.config.base_deposit
            stats.current_balance = self.config.base_deposit
            logger.info("[Trade] [%s] Initialized ledger with deposit $%.2f", self.bot_id, self.config.base_deposit)
        for step in range(1, self.config.max_steps + 1):
            stats.wins_by_step.setdefault(step, 0)
        self.repository.save_stats(stats)

        for series in self.repository.find_active_series(self.bot_id):
            self._active[series.asset] = series
            logger.info("%s: Resumed series at Step %s", self._tag(series), series.current_step)

        now = self._clock()
        for series in self.repository.find_series_by_status(self.bot_id, SeriesStatus.COOLDOWN):
            if series.cooldown_active(now):
                self._active[series.asset] = series
                logger.info("%s: Resumed cooldown until %s", self._tag(series), series.ended_at)
            else:
                await self.end_cooldown(series)

        logger.info("[Trade] [%s] Engine started (%s series in memory)", self.bot_id, len(self._active))

    async def tick(self) -> None:
        now = self._clock()
        for asset, series in list(self._active.items()):
            if series.status is SeriesStatus.COOLDOWN and not series.cooldown_active(now):
                await self.end_cooldown(series)
                self._active.pop(asset, None)

        for asset in list(self._active):
            async with self._lock(asset):
                series = self._active.get(asset)
                if series is None or series.status is not SeriesStatus.ACTIVE:
                    continue
                try:
                    await self.check_series(series)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("%s: Tick failed: %s", self._tag(series), exc)

    # Signal intake

    async def on_signal(self, signal: Signal) -> TradingSeries | None:
        asset = signal.asset.lower()
        if signal.signal_type is not self.config.signal_type:
            logger.debug(
                "[Trade] [%s] %s: Signal type %s does not match %s, skipping",
                self.bot_id,
                asset.upper(),
                signal.signal_type.value,
                self.config.signal_type.value,
            )
            return None

        async with self._lock(asset):
            if await self._slot_occupied(asset):
                return None
            return await self._open_series(asset, signal)

    async def _slot_occupied(self, asset: str) -> bool:
        now = self._clock()
        existing = self._active.get(asset)
        if existing is not None:
            if existing.status is SeriesStatus.COOLDOWN:
                if existing.cooldown_active(now):
                    logger.info("%s: Cooldown active until %s, skipping signal", self._tag(asset=asset), existing.ended_at)
                    return True
                await self.end_cooldown(existing)
                self._active.pop(asset, None)
            else:
                logger.info("%s: Series already active, skipping signal", self._tag(asset=asset))
                return True

        stored_cooldown = self.repository.find_series(self.bot_id, asset, SeriesStatus.COOLDOWN)
        if stored_cooldown is not None:
            if stored_cooldown.cooldown_active(now):
                self._active[asset] = stored_cooldown
                logger.info("%s: Cooldown found in storage, skipping signal", self._tag(asset=asset))
                return True
            await self.end_cooldown(stored_cooldown)

        stored_active = self.repository.find_series(self.bot_id, asset, SeriesStatus.ACTIVE)
        if stored_active is not None:
            self._active[asset] = stored_active
            logger.info("%s: Active series found in storage, skipping signal", self._tag(asset=asset))
            return True
        return False

    async def _open_series(self, asset: str, signal: Signal) -> TradingSeries | None:
        bet_color = signal.color.opposite
        next_slug = to_polymarket_slug(signal.next_market_slug)

        quote = await self.price_oracle.get_buy_price(next_slug, bet_color.side)
        if quote is None:
            logger.info("%s: Cannot get price for %s, skipping signal", self._tag(asset=asset), next_slug)
            self._log(asset, next_slug, f"CANNOT_GET_PRICE: {next_slug}", {"side": bet_color.side.value}, LogAction.SKIP)
            return None
        if quote.price > self.config.max_price:
            logger.info(
                "%s: Price too high ($%.3f > $%.2f), skipping signal",
                self._tag(asset=asset),
                quote.price,
                self.config.max_price,
            )
            self._log(
                asset,
                next_slug,
                f"PRICE_TOO_HIGH: ${quote.price:.3f} > ${self.config.max_price:.2f}",
                {"price": quote.price, "max_price": self.config.max_price},
                LogAction.SKIP,
            )
            return None

        now = self._clock()
        series = TradingSeries(
            bot_id=self.bot_id,
            asset=asset,
            signal_market_slug=to_polymarket_slug(signal.signal_market_slug),
            signal_color=signal.color,
            bet_color=bet_color,
            current_market_slug=next_slug,
            market_state=MarketState.WAITING,
            started_at=now,
        )
        series.add_event(
            EventType.SERIES_OPENED,
            timestamp=now,
            message=f"Signal {signal.signal_type.candle_count} {signal.color.emoji} → betting {bet_color.emoji}",
        )
        self._active[asset] = series
        self._runtime_event("info", "series_opened", {"asset": asset, "series_id": series.id})

        if self.config.buy_strategy is BuyStrategy.VALIDATE:
            run = ValidationRun(market_slug=series.signal_market_slug or next_slug)
            run.event_index = series.add_event(
                EventType.VALIDATION_STARTED,
                timestamp=now,
                message=render_progress(run, signal.color),
            )
            series.validation = run
            self._save(series)
            logger.info("%s: Validating signal market %s", self._tag(series), run.market_slug)
            await self._notify(series, "Validating market...")
            return series

        if not await self.buy_step(series):
            await self._cancel_series(series, "⛔ Series cancelled: could not buy (no price or balance)")
            return series

        self._save(series)
        logger.info("%s: Series opened, betting %s", self._tag(series), bet_color.value.upper())
        await self._notify(series, "Series opened")
        return series

    # Purchases

    async def _prepare_purchase(self, series: TradingSeries, *, step: int, market_slug: str) -> PurchasePlan:
        if series.bet_color is None:
            raise PurchaseRejected("price_unavailable", "Series has no bet color")

        quote = await self.price_oracle.get_buy_price(market_slug, series.bet_color.side)
        if quote is None:
            raise PurchaseRejected("price_unavailable", f"❌ Could not get price for {market_slug}")
        if quote.price > self.config.max_price:
            raise PurchaseRejected(
                "price_too_high",
                f"⛔ Price above limit (${quote.price:.3f} > ${self.config.max_price:.2f}) on Step {step}",
            )

        stake = compute_stake(
            quote.price,
            prior_losses=series.total_invested,
            target_profit=self.config.target_profit(step),
            fees=self.fees,
        )
        if stake is None:
            raise PurchaseRejected("unprofitable_price", f"❌ Cannot size a bet at ${quote.price:.3f}")

        stats = self._stats()
        if stats.current_balance < stake:
            raise PurchaseRejected(
                "insufficient_balance",
                f"Insufficient balance: need ${stake:.2f}, have ${stats.current_balance:.2f}",
            )
        return PurchasePlan(
            step=step,
            market_slug=market_slug,
            quote=quote,
            fill=simulate_buy(stake, quote.price, self.fees),
        )

    def _record_purchase(self, series: TradingSeries, plan: PurchasePlan, *, hedge: bool = False) -> None:
        fill = plan.fill
        stats = self._stats()
        stats.current_balance -= fill.amount
        self.repository.save_stats(stats)

        series.positions.append(
            Position(
                step=plan.step,
                market_slug=plan.market_slug,
                instrument_id=plan.quote.instrument_id,
                amount=fill.amount,
                price=fill.price,
                shares=fill.shares,
                commission=fill.commission,
            )
        )
        series.total_invested += fill.amount
        series.total_commission += fill.commission

        now = self._clock()
        emoji = series.bet_color.emoji if series.bet_color else ""
        break_even = " break-even" if self.config.is_break_even_step(plan.step) else ""
        prefix = "⚡ Hedge: " if hedge else "Bought "
        hash_note = f" ({_short_hash(plan.quote.instrument_id)})" if plan.quote.instrument_id else ""
        series.add_event(
            EventType.HEDGE_BOUGHT if hedge else EventType.BUY,
            timestamp=now,
            step=plan.step,
            market_slug=plan.market_slug,
            amount=fill.amount,
            message=(
                f"{prefix}{fill.shares:.2f} shares at ${fill.price:.2f}{hash_note} = ${fill.amount:.2f} "
                f"on {emoji} (Step {plan.step}{break_even})"
            ),
        )

        if hedge:
            series.next_step_bought = True
            series.next_market_slug = plan.market_slug
        else:
            series.market_state = MarketState.WAITING
            series.add_event(EventType.WAITING_MARKET, timestamp=now, message="Waiting for market...")

        label = "HEDGE" if hedge else "BUY"
        logger.info(
            "%s: %s Step %s: %.2f shares at $%.3f = $%.2f",
            self._tag(series),
            label,
            plan.step,
            fill.shares,
            fill.price,
            fill.amount,
        )
        self._log(
            series.asset,
            plan.market_slug,
            f"{label} Step {plan.step}: {fill.shares:.2f} shares at ${fill.price:.3f} = ${fill.amount:.2f}",
            {"step": plan.step, "amount": fill.amount, "price": fill.price, "shares": fill.shares},
        )

    async def buy_step(self, series: TradingSeries) -> bool:
        market_slug = series.current_market_slug or ""
        try:
            plan = await self._prepare_purchase(series, step=series.current_step, market_slug=market_slug)
        except PurchaseRejected as exc:
            event_type = (
                EventType.INSUFFICIENT_BALANCE if exc.reason == "insufficient_balance" else EventType.PRICE_ERROR
            )
            series.add_event(event_type, timestamp=self._clock(), message=exc.message)
            logger.warning("%s: Step %s purchase rejected (%s)", self._tag(series), series.current_step, exc.reason)
            self._log(
                series.asset,
                market_slug,
                f"{exc.reason.upper()}: {exc.message}",
                {"step": series.current_step, "total_invested": series.total_invested},
            )
            return False

        self._record_purchase(series, plan)
        return True

    async def buy_next_step_early(self, series: TradingSeries, context: MarketContext) -> bool:
        next_step = series.current_step + 1
        if next_step > self.config.max_steps:
            return False

        next_slug = to_polymarket_slug(context.next_slug)
        try:
            plan = await self._prepare_purchase(series, step=next_step, market_slug=next_slug)
        except PurchaseRejected as exc:
            logger.info("%s: Hedge for Step %s skipped (%s)", self._tag(series), next_step, exc.reason)
            self._log(series.asset, next_slug, f"HEDGE_SKIPPED {exc.reason.upper()}: {exc.message}", {"step": next_step})
            return False

        self._record_purchase(series, plan, hedge=True)
        self._save(series)
        await self._notify(series, f"⚡ Hedge Step {next_step}")
        return True

    async def sell_hedge(self, series: TradingSeries, time_to_end: int | None = None) -> bool:
        hedge_step = series.current_step + 1
        position = series.active_position(hedge_step)
        if position is None or series.bet_color is None:
            return False

        quote = await self.price_oracle.get_sell_price(position.market_slug, series.bet_color.side)
        if quote is None:
            logger.warning("%s: No sell price for hedge on %s, retrying next tick", self._tag(series), position.market_slug)
            return False

        proceeds, exit_fee = sell_proceeds(position.shares, quote.price, self.fees)
        stats = self._stats()
        stats.current_balance += proceeds
        self.repository.save_stats(stats)

        loss = position.amount - proceeds
        position.status = PositionStatus.SOLD
        series.total_invested -= position.amount
        series.total_commission += exit_fee
        series.hedge_losses += loss
        series.next_step_bought = False
        series.next_market_slug = None

        now = self._clock()
        hash_note = f" ({_short_hash(quote.instrument_id)})" if quote.instrument_id else ""
        series.add_event(
            EventType.SELL_HEDGE,
            timestamp=now,
            step=hedge_step,
            market_slug=position.market_slug,
            amount=proceeds,
            pnl=-loss,
            message=(
                f"📤 Sold hedge Step {hedge_step} at ${quote.price:.2f}{hash_note}: "
                f"returned ${proceeds:.2f} (${-loss:.2f})"
            ),
        )
        if time_to_end is not None and quote.instrument_id:
            await self._record_order_book(series, quote.instrument_id, hedge_step)

        self._save(series)
        logger.info("%s: SELL HEDGE Step %s returned $%.2f", self._tag(series), hedge_step, proceeds)
        self._log(
            series.asset,
            position.market_slug,
            f"SELL HEDGE Step {hedge_step}: returned ${proceeds:.2f} (${-loss:.2f})",
            {"step": hedge_step, "proceeds": proceeds, "loss": loss},
        )
        await self._notify(series, "📤 Sold hedge")
        return True

    async def settle_hedge(self, series: TradingSeries, resolved_color: Color) -> None:
        """Close an unsold hedge at its own market's resolution."""
        hedge_step = series.current_step + 1
        position = series.active_position(hedge_step)
        if position is None:
            return

        won = resolved_color is series.bet_color
        if won:
            proceeds, exit_fee = redemption_value(position.shares, self.fees)
            position.status = PositionStatus.WON
        else:
            proceeds, exit_fee = 0.0, 0.0
            position.status = PositionStatus.LOST

        stats = self._stats()
        stats.current_balance += proceeds
        self.repository.save_stats(stats)

        loss = position.amount - proceeds
        series.total_invested -= position.amount
        series.total_commission += exit_fee
        series.hedge_losses += loss
        series.next_step_bought = False
        series.next_market_slug = None
        series.add_event(
            EventType.HEDGE_SETTLED,
            timestamp=self._clock(),
            step=hedge_step,
            market_slug=position.market_slug,
            amount=proceeds,
            market_color=resolved_color,
            pnl=-loss,
            message=f"Hedge Step {hedge_step} closed {resolved_color.emoji}: returned ${proceeds:.2f} (${-loss:.2f})",
        )
        self._save(series)
        logger.info("%s: Hedge Step %s settled at resolution, returned $%.2f", self._tag(series), hedge_step, proceeds)
        self._log(
            series.asset,
            position.market_slug,
            f"HEDGE SETTLED Step {hedge_step}: returned ${proceeds:.2f} (${-loss:.2f})",
            {"step": hedge_step, "proceeds": proceeds, "loss": loss},
        )

    async def _record_order_book(self, series: TradingSeries, instrument_id: str, step: int) -> None:
        book = await self.price_oracle.get_order_book_details(instrument_id)
        if book is None:
            return
        bids_total = sum(level.size for level in book.bids)
        asks_total = sum(level.size for level in book.asks)
        series.add_event(
            EventType.ORDER_BOOK,
            timestamp=self._clock(),
            step=step,
            message=(
                f"📊 Order Book: Bids {bids_total:.0f} ({len(book.bids)} levels) | "
                f"Asks {asks_total:.0f} ({len(book.asks)} levels)"
            ),
        )

    # Tick evaluation

    async def check_series(self, series: TradingSeries) -> None:
        if series.validation_state is ValidationState.VALIDATING:
            await self.validate_market(series)
            return

        context = await self.context_provider.get_market_context(series.asset)

        if series.hedge_validation_state is ValidationState.VALIDATING:
            await self.validate_hedge_market(series, context)

        our_ts = slug_timestamp(series.current_market_slug or "")
        current_ts = slug_timestamp(context.current_slug)
        prev1_ts = slug_timestamp(context.prev1.slug)
        current_color = context.current_color

        if series.signal_market_slug and series.current_step == 1:
            if (
                slug_timestamp(series.signal_market_slug) == current_ts
                and context.time_to_end <= SIGNAL_CANCEL_WINDOW_SECONDS
                and current_color is not None
                and current_color is not series.signal_color
            ):
                if await self.cancel_signal(series, current_color):
                    return

        if our_ts is None or current_ts is None:
            logger.warning("%s: Unparseable market slug, waiting for next tick", self._tag(series))
            return

        if our_ts > current_ts:
            if series.market_state is not MarketState.WAITING:
                series.market_state = MarketState.WAITING
                self._save(series)
            logger.debug("%s Step %s: waiting for market", self._tag(series), series.current_step)
            return

        if our_ts == current_ts:
            await self._on_market_active(series, context)
            return

        if our_ts == prev1_ts:
            resolved = context.prev1.color
            if resolved is None:
                logger.info("%s: Market closed but color unknown, waiting", self._tag(series))
                return
            await self.resolve_market(series, resolved, context)
            return

        if (
            our_ts == slug_timestamp(context.prev2.slug)
            and series.next_step_bought
            and slug_timestamp(series.next_market_slug or "") == prev1_ts
        ):
            resolved = context.prev2.color
            if resolved is None:
                logger.info("%s: Market closed but color unknown, waiting", self._tag(series))
                return
            if resolved is series.bet_color and context.prev1.color is not None:
                await self.settle_hedge(series, context.prev1.color)
            await self.resolve_market(series, resolved, context)
            return

        logger.warning("%s: Lost track of market %s", self._tag(series), series.current_market_slug)

    async def _on_market_active(self, series: TradingSeries, context: MarketContext) -> None:
        if series.market_state is MarketState.WAITING:
            series.market_state = MarketState.ACTIVE
            series.add_event(EventType.MARKET_ACTIVE, timestamp=self._clock(), message="Market is active")
            self._save(series)
            logger.info("%s Step %s: market is now active", self._tag(series), series.current_step)

        current_color = context.current_color
        if (
            not series.next_step_bought
            and series.current_step < self.config.max_steps
            and current_color is not None
            and current_color is series.signal_color
        ):
            if self.config.buy_strategy is BuyStrategy.SIGNAL:
                await self.buy_next_step_early(series, context)
            elif series.hedge_validation is None:
                await self.start_hedge_validation(series, context)

        if (
            series.next_step_bought
            and current_color is series.bet_color
            and context.time_to_end <= HEDGE_SELL_WINDOW_SECONDS
        ):
            await self.sell_hedge(series, context.time_to_end)

        logger.debug(
            "%s Step %s: %s | %ss left%s",
            self._tag(series),
            series.current_step,
            current_color.value if current_color else "unknown",
            context.time_to_end,
            " [HEDGED]" if series.next_step_bought else "",
        )

    # Signal cancellation

    async def cancel_signal(self, series: TradingSeries, current_color: Color) -> bool:
        if series.bet_color is None:
            return False

        quotes: list[tuple[Position, PriceQuote]] = []
        for position in series.open_positions():
            quote = await self.price_oracle.get_sell_price(position.market_slug, series.bet_color.side)
            if quote is None:
                logger.warning(
                    "%s: No sell price for %s, signal cancellation deferred",
                    self._tag(series),
                    position.market_slug,
                )
                return False
            quotes.append((position, quote))

        now = self._clock()
        total_return = 0.0
        for position, quote in quotes:
            proceeds, exit_fee = sell_proceeds(position.shares, quote.price, self.fees)
            total_return += proceeds
            position.status = PositionStatus.SOLD
            series.total_commission += exit_fee
            hash_note = f" ({_short_hash(quote.instrument_id)})" if quote.instrument_id else ""
            series.add_event(
                EventType.SELL,
                timestamp=now,
                step=position.step,
                market_slug=position.market_slug,
                amount=proceeds,
                message=(
                    f"📤 Sold Step {position.step}: {position.shares:.2f} shares at "
                    f"${quote.price:.2f}{hash_note} = ${proceeds:.2f}"
                ),
            )
        if quotes and quotes[0][1].instrument_id:
            await self._record_order_book(series, quotes[0][1].instrument_id or "", 1)

        pnl = total_return - series.total_invested - series.hedge_losses
        stats = self._stats()
        stats.current_balance += total_return
        stats.record_cancel(pnl=pnl, commission=series.total_commission)
        self.repository.save_stats(stats)

        series.total_pnl = pnl
        series.status = SeriesStatus.CANCELLED
        series.ended_at = now
        series.next_step_bought = False
        series.next_market_slug = None
        signal_emoji = series.signal_color.emoji if series.signal_color else ""
        series.add_event(
            EventType.SIGNAL_CANCELLED,
            timestamp=now,
            market_color=current_color,
            pnl=pnl,
            message=(
                f"⚠️ Signal cancelled: market {current_color.emoji} (was {signal_emoji}) → "
                f"returned ${total_return:.2f} (P&L: ${pnl:.2f})"
            ),
        )
        self._save(series)
        self._active.pop(series.asset, None)

        logger.info("%s: SIGNAL CANCELLED, returned $%.2f, P&L $%.2f", self._tag(series), total_return, pnl)
        self._log(
            series.asset,
            series.signal_market_slug,
            f"SIGNAL CANCELLED: returned ${total_return:.2f}, P&L: ${pnl:.2f}",
            {"total_return": total_return, "pnl": pnl},
        )
        self._runtime_event("info", "series_cancelled", {"asset": series.asset, "series_id": series.id})
        await self._notify(series, "⚠️ Signal cancelled")
        return True

    # Validation

    async def _sample(self, series: TradingSeries, run: ValidationRun) -> bool:
        if series.signal_color is None:
            return False
        side = monitored_side(series.signal_color)
        quote = await self.price_oracle.get_buy_price(run.market_slug, side)
        if quote is None:
            return False

        analysis = None
        if quote.instrument_id:
            analysis = analyze_order_book(await self.price_oracle.get_order_book_details(quote.instrument_id))

        result = record_sample(run, price=quote.price, side=side, analysis=analysis, now=self._clock())
        if run.event_index is not None and 0 <= run.event_index < len(series.events):
            series.events[run.event_index].message = render_progress(run, series.signal_color)
        self._save(series)
        logger.debug(
            "%s: Validation check %s $%.3f → %s (%s checks) %s",
            self._tag(series),
            side.value.upper(),
            quote.price,
            "+" if result.stable else "-",
            len(run.history),
            result.reason,
        )
        return True

    def _finalize_run(self, series: TradingSeries, run: ValidationRun, state: ValidationState, outcome: str) -> None:
        run.state = state
        if series.signal_color is None:
            return
        if run.event_index is not None and 0 <= run.event_index < len(series.events):
            series.events[run.event_index].message = render_final(run, series.signal_color, state, outcome)

    async def validate_market(self, series: TradingSeries) -> None:
        run = series.validation
        if run is None:
            return

        context = await self.context_provider.get_market_context(series.asset)
        run_ts = slug_timestamp(run.market_slug)
        if run_ts == slug_timestamp(context.current_slug):
            time_to_deadline = context.time_to_end
        elif run_ts == slug_timestamp(context.prev1.slug):
            logger.info("%s: Signal market %s already closed", self._tag(series), run.market_slug)
            await self._complete_signal_validation(series, ValidationState.REJECTED)
            return
        else:
            logger.info("%s: Signal market %s not found in context", self._tag(series), run.market_slug)
            return

        if due_for_sample(run, self._clock()):
            await self._sample(series, run)

        state = decide(run, time_to_deadline)
        if state is not ValidationState.VALIDATING:
            await self._complete_signal_validation(series, state)

    async def _complete_signal_validation(self, series: TradingSeries, state: ValidationState) -> None:
        run = series.validation
        if run is None:
            return

        if state is ValidationState.VALIDATED:
            self._finalize_run(series, run, state, "Buying")
            self._save(series)
            if not await self.buy_step(series):
                await self._cancel_series(series, "⛔ Series cancelled: could not buy after validation")
                return
            self._save(series)
            logger.info("%s: Validation passed, bought Step 1", self._tag(series))
            await self._notify(series, "✅ Validation passed, bought")
            return

        self._finalize_run(series, run, ValidationState.REJECTED, "Cancelled")
        reason = run.last_result.reason if run.last_result else "market not stable"
        await self._cancel_series(
            series,
            f"Validation failed, purchase cancelled. Reason: {reason}",
            counted=False,
            event_type=EventType.VALIDATION_REJECTED,
            short_message="❌ Validation failed, series cancelled",
        )

    async def start_hedge_validation(self, series: TradingSeries, context: MarketContext) -> None:
        next_step = series.current_step + 1
        if next_step > self.config.max_steps or series.signal_color is None:
            return

        run = ValidationRun(market_slug=to_polymarket_slug(context.current_slug))
        run.event_index = series.add_event(
            EventType.VALIDATION_STARTED,
            timestamp=self._clock(),
            message=render_progress(run, series.signal_color),
        )
        series.hedge_validation = run
        self._save(series)
        logger.info("%s: Started hedge validation for Step %s on %s", self._tag(series), next_step, run.market_slug)

    async def validate_hedge_market(self, series: TradingSeries, context: MarketContext) -> None:
        run = series.hedge_validation
        if run is None:
            return

        run_ts = slug_timestamp(run.market_slug)
        if run_ts == slug_timestamp(context.current_slug):
            time_to_deadline = context.time_to_end
        elif run_ts == slug_timestamp(context.next_slug):
            time_to_deadline = context.time_to_end + INTERVAL_SECONDS
        else:
            logger.info("%s: Hedge validation market %s not found in context", self._tag(series), run.market_slug)
            run.state = ValidationState.REJECTED
            self._save(series)
            return

        if due_for_sample(run, self._clock()):
            await self._sample(series, run)

        state = decide(run, time_to_deadline)
        if state is not ValidationState.VALIDATING:
            await self._complete_hedge_validation(series, context, state)

    async def _complete_hedge_validation(
        self,
        series: TradingSeries,
        context: MarketContext,
        state: ValidationState,
    ) -> None:
        run = series.hedge_validation
        if run is None:
            return
        next_step = series.current_step + 1

        if state is ValidationState.VALIDATED:
            self._finalize_run(series, run, state, "Buying hedge")
            self._save(series)
            await self.buy_next_step_early(series, context)
            logger.info("%s: Hedge validation passed for Step %s", self._tag(series), next_step)
            return

        self._finalize_run(series, run, ValidationState.REJECTED, "Hedge not needed")
        reason = run.last_result.reason if run.last_result else "market not stable"
        series.add_event(
            EventType.VALIDATION_REJECTED,
            timestamp=self._clock(),
            message=f"Hedge validation for Step {next_step} failed, no hedge. Reason: {reason}",
        )
        self._save(series)
        logger.info("%s: Hedge validation failed, not buying Step %s", self._tag(series), next_step)

    # Settlement

    async def resolve_market(self, series: TradingSeries, resolved_color: Color, context: MarketContext) -> None:
        series.market_state = MarketState.CLOSED
        if resolved_color is series.bet_color:
            await self._settle_win(series, resolved_color)
        else:
            await self._settle_loss(series, resolved_color, context)

    async def _settle_win(self, series: TradingSeries, resolved_color: Color) -> None:
        if series.next_step_bought:
            logger.info("%s: Market won, selling hedge before settlement", self._tag(series))
            if not await self.sell_hedge(series):
                logger.warning("%s: Hedge unsold, settlement deferred", self._tag(series))
                self._save(series)
                return
        series.hedge_validation = None

        now = self._clock()
        step = series.current_step
        position = series.active_position(step)
        shares = position.shares if position else 0.0
        redemption, exit_fee = redemption_value(shares, self.fees)
        step_amount = position.amount if position else 0.0
        if position is not None:
            position.status = PositionStatus.WON

        series.total_commission += exit_fee
        pnl = redemption - series.total_invested - series.hedge_losses
        series.add_event(
            EventType.MARKET_WON,
            timestamp=now,
            market_color=resolved_color,
            pnl=redemption - step_amount,
            message=(
                f"Market closed {resolved_color.emoji}, PROFIT! Received ${redemption:.2f} "
                f"(+${redemption - step_amount:.2f})"
            ),
        )

        series.total_pnl = pnl
        series.status = SeriesStatus.WON
        series.ended_at = now
        hedge_note = f" (incl. -${series.hedge_losses:.2f} hedge)" if series.hedge_losses > 0 else ""
        series.add_event(
            EventType.SERIES_WON,
            timestamp=now,
            pnl=pnl,
            message=f"Series won on Step {step}! P&L: ${pnl:.2f}{hedge_note}",
        )

        stats = self._stats()
        stats.current_balance += redemption
        stats.record_win(step=step, pnl=pnl, commission=series.total_commission)
        self.repository.save_stats(stats)

        self._save(series)
        self._active.pop(series.asset, None)
        logger.info("%s: SERIES WON at Step %s, P&L $%.2f", self._tag(series), step, pnl)
        self._log(
            series.asset,
            series.current_market_slug,
            f"SERIES WON Step {step}: won ${redemption:.2f}, P&L: ${pnl:.2f}",
            {"step": step, "redemption": redemption, "pnl": pnl},
        )
        self._runtime_event("info", "series_won", {"asset": series.asset, "series_id": series.id, "pnl": pnl})
        await self._notify(series, f"✅ PROFIT! Step {step}, P&L: ${pnl:.2f}")

    async def _settle_loss(self, series: TradingSeries, resolved_color: Color, context: MarketContext) -> None:
        position = series.active_position(series.current_step)
        if position is not None:
            position.status = PositionStatus.LOST
        lost_amount = f"${position.amount:.2f}" if position else "?"
        series.add_event(
            EventType.MARKET_LOST,
            timestamp=self._clock(),
            market_color=resolved_color,
            message=f"Market closed {resolved_color.emoji}, step lost ({lost_amount})",
        )
        logger.info("%s: Step %s lost (market %s)", self._tag(series), series.current_step, resolved_color.value)

        if series.next_step_bought:
            next_step = series.current_step + 1
            if next_step > self.config.max_steps:
                await self._finish_lost(series, f"hedge on Step {next_step} exceeds {self.config.max_steps} steps")
                return

            series.current_step = next_step
            series.current_market_slug = series.next_market_slug
            series.next_step_bought = False
            series.next_market_slug = None
            series.market_state = MarketState.WAITING
            series.hedge_validation = None
            series.add_event(
                EventType.WAITING_MARKET,
                timestamp=self._clock(),
                message=f"Moving to Step {next_step} (hedge already bought)",
            )
            self._save(series)
            logger.info("%s: Moving to pre-bought Step %s", self._tag(series), next_step)
            await self._notify(series, f"Step {next_step} (hedge)")
            return

        if series.current_step >= self.config.max_steps:
            await self._finish_lost(series, f"after {self.config.max_steps} steps")
            return

        series.current_step += 1
        series.current_market_slug = to_polymarket_slug(context.current_slug)
        series.market_state = MarketState.WAITING
        series.hedge_validation = None

        if not await self.buy_step(series):
            await self._cancel_series(series, f"⛔ Series cancelled on Step {series.current_step}: could not buy")
            return

        self._save(series)
        logger.info("%s: Moving to Step %s", self._tag(series), series.current_step)
        await self._notify(series, f"Step {series.current_step}")

    async def _finish_lost(self, series: TradingSeries, note: str) -> None:
        now = self._clock()
        pnl = -(series.total_invested + series.hedge_losses)
        series.total_pnl = pnl
        series.status = SeriesStatus.LOST
        series.ended_at = now
        series.add_event(
            EventType.SERIES_LOST,
            timestamp=now,
            pnl=pnl,
            message=f"Series lost {note}. P&L: ${pnl:.2f}",
        )

        stats = self._stats()
        stats.record_loss(pnl=pnl, commission=series.total_commission)
        self.repository.save_stats(stats)

        self._save(series)
        self._active.pop(series.asset, None)
        logger.info("%s: SERIES LOST %s, P&L $%.2f", self._tag(series), note, pnl)
        self._log(
            series.asset,
            series.current_market_slug,
            f"SERIES LOST {note}: P&L: ${pnl:.2f}",
            {"step": series.current_step, "pnl": pnl, "total_invested": series.total_invested},
        )
        self._runtime_event("info", "series_lost", {"asset": series.asset, "series_id": series.id, "pnl": pnl})
        await self._notify(series, f"❌ LOSS! {series.current_step} steps, P&L: ${pnl:.2f}")
        await self.create_cooldown(series.asset)

    async def _cancel_series(
        self,
        series: TradingSeries,
        message: str,
        *,
        counted: bool = True,
        event_type: EventType = EventType.SERIES_CANCELLED,
        short_message: str = "⛔ Series cancelled",
    ) -> None:
        now = self._clock()
        pnl = -(series.total_invested + series.hedge_losses)
        series.total_pnl = pnl
        series.status = SeriesStatus.CANCELLED
        series.ended_at = now
        series.add_event(event_type, timestamp=now, pnl=pnl, message=message)

        stats = self._stats()
        stats.record_cancel(pnl=pnl, commission=series.total_commission, counted=counted)
        self.repository.save_stats(stats)

        self._save(series)
        self._active.pop(series.asset, None)
        logger.info("%s: Series cancelled on Step %s: %s", self._tag(series), series.current_step, message)
        self._log(
            series.asset,
            series.current_market_slug,
            f"SERIES CANCELLED Step {series.current_step}: {message}",
            {"step": series.current_step, "pnl": pnl, "counted": counted},
        )
        self._runtime_event("info", "series_cancelled", {"asset": series.asset, "series_id": series.id})
        await self._notify(series, short_message)

    # Cooldown

    async def create_cooldown(self, asset: str) -> TradingSeries | None:
        now = self._clock()
        existing = self._active.get(asset)
        if existing is not None and existing.status is SeriesStatus.COOLDOWN:
            if existing.cooldown_active(now):
                return existing
            await self.end_cooldown(existing)
            self._active.pop(asset, None)

        stored = self.repository.find_series(self.bot_id, asset, SeriesStatus.COOLDOWN)
        if stored is not None:
            if stored.cooldown_active(now):
                self._active[asset] = stored
                return stored
            await self.end_cooldown(stored)

        seconds = self.config.cooldown_after_full_loss_seconds
        if seconds <= 0:
            return None

        cooldown = TradingSeries(
            bot_id=self.bot_id,
            asset=asset,
            status=SeriesStatus.COOLDOWN,
            current_step=0,
            market_state=MarketState.CLOSED,
            started_at=now,
            ended_at=now + timedelta(seconds=seconds),
        )
        cooldown.add_event(
            EventType.COOLDOWN_STARTED,
            timestamp=now,
            message=f"⏸️ Cooldown started ({-(-seconds // 60)} min)",
        )
        self._save(cooldown)
        self._active[asset] = cooldown
        logger.info("%s: Cooldown until %s", self._tag(asset=asset), cooldown.ended_at)
        return cooldown

    async def end_cooldown(self, series: TradingSeries) -> None:
        if series.status is not SeriesStatus.COOLDOWN or series.has_event(EventType.COOLDOWN_ENDED):
            return
        now = self._clock()
        series.ended_at = now
        series.add_event(EventType.COOLDOWN_ENDED, timestamp=now, message="⏸️ Cooldown ended")
        self._save(series)
        logger.info("%s: Cooldown ended", self._tag(series))

    # Dashboard

    def get_active_series(self) -> dict[str, dict[str, Any]]:
        return {
            asset: {
                "id": series.id,
                "status": series.status.value,
                "step": series.current_step,
                "bet_color": series.bet_color.value if series.bet_color else None,
                "market_state": series.market_state.value,
                "total_invested": series.total_invested,
                "next_step_bought": series.next_step_bought,
                "events": [event.model_dump(mode="json") for event in series.events],
            }
            for asset, series in self._active.items()
        }
