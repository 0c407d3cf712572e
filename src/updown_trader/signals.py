from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

from .models import Color, LogAction, MarketContext, Signal, SignalType, TradeLogEntry
from .providers.base import MarketContextProvider
from .repository import SeriesRepository

if TYPE_CHECKING:
    from .engine import TradingEngine

logger = logging.getLogger(__name__)


class SignalRouter:
    """Fans a detected signal out to every engine.

    Engines are isolated from each other: one failing ``on_signal`` is logged
    and delivery continues with the rest.
    """

    def __init__(self, engines: Sequence[TradingEngine]) -> None:
        self.engines = list(engines)

    async def dispatch(self, signal: Signal) -> int:
        opened = 0
        for engine in self.engines:
            try:
                series = await engine.on_signal(signal)
            except Exception as exc:  # noqa: BLE001
                logger.warning("[Signal] %s failed to handle %s signal: %s", engine.bot_id, signal.asset.upper(), exc)
                continue
            if series is not None:
                opened += 1
        return opened


@dataclass
class ColorHold:
    color: Color
    since: float


def match_pattern(context: MarketContext, signal_type: SignalType) -> Color | None:
    """Color the forming candle extends, or None when the pattern is absent."""
    current = context.current_color
    prev1 = context.prev1.color
    if current is None or prev1 is None or current is not prev1:
        return None
    if signal_type is SignalType.THREE_CANDLES and context.prev2.color is not prev1:
        return None
    return current


class CandleSignalDetector:
    def __init__(
        self,
        context_provider: MarketContextProvider,
        router: SignalRouter,
        repository: SeriesRepository,
        assets: Sequence[str],
        *,
        min_time_before_end: int = 60,
        color_hold_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.context_provider = context_provider
        self.router = router
        self.repository = repository
        self.assets = [asset.lower() for asset in assets]
        self.min_time_before_end = min_time_before_end
        self.color_hold_seconds = color_hold_seconds
        self._clock = clock
        self._color_state: dict[tuple[str, int], ColorHold] = {}
        self._last_interval: dict[str, str] = {}
        self._emitted: set[tuple[str, str, int]] = set()

    def _log(self, asset: str, market_slug: str, action: LogAction, reason: str, data: dict | None = None) -> None:
        try:
            self.repository.append_log(
                TradeLogEntry(asset=asset, market_slug=market_slug, action=action, reason=reason, data=data or {})
            )
        except sqlite3.Error as exc:
            logger.warning("[Signal] Failed to write trade log: %s", exc)

    async def check_all(self) -> list[Signal]:
        signals: list[Signal] = []
        for asset in self.assets:
            signals.extend(await self.check_market(asset))
        return signals

    def _reset_interval(self, asset: str, slug: str) -> None:
        if self._last_interval.get(asset) == slug:
            return
        for key in [key for key in self._color_state if key[0] == asset]:
            del self._color_state[key]
        self._emitted = {key for key in self._emitted if key[0] != asset}
        self._last_interval[asset] = slug

    async def check_market(self, asset: str) -> list[Signal]:
        try:
            context = await self.context_provider.get_market_context(asset)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[Signal] %s: Failed to load market context: %s", asset.upper(), exc)
            self._log(asset, "unknown", LogAction.ERROR, f"CONTEXT_ERROR: {exc}")
            return []

        self._reset_interval(asset, context.current_slug)
        if not context.active:
            return []

        signals: list[Signal] = []
        for signal_type in (SignalType.THREE_CANDLES, SignalType.TWO_CANDLES):
            signal = self._evaluate(context, signal_type)
            if signal is None:
                continue
            signals.append(signal)
            self._log(
                asset,
                context.current_slug,
                LogAction.DETECT,
                f"SIGNAL {signal_type.value}: {signal.color.value.upper()} with {signal.time_to_end}s left",
                {"color": signal.color.value, "signal_type": signal_type.value, "next_slug": signal.next_market_slug},
            )
            logger.info(
                "[Signal] %s: %s %s signal on %s (%ss left)",
                asset.upper(),
                signal_type.value,
                signal.color.value.upper(),
                context.current_slug,
                signal.time_to_end,
            )
            await self.router.dispatch(signal)
        return signals

    def _evaluate(self, context: MarketContext, signal_type: SignalType) -> Signal | None:
        key = (context.asset, signal_type.candle_count)
        color = match_pattern(context, signal_type)
        if color is None:
            self._color_state.pop(key, None)
            return None

        now = self._clock()
        hold = self._color_state.get(key)
        if hold is None or hold.color is not color:
            hold = ColorHold(color=color, since=now)
            self._color_state[key] = hold

        emitted_key = (context.asset, context.current_slug, signal_type.candle_count)
        if emitted_key in self._emitted:
            return None
        if context.time_to_end < self.min_time_before_end:
            return None
        if now - hold.since < self.color_hold_seconds:
            logger.debug(
                "[Signal] %s: %s holding for %.1fs",
                context.asset.upper(),
                color.value,
                now - hold.since,
            )
            return None

        self._emitted.add(emitted_key)
        return Signal(
            asset=context.asset,
            color=color,
            signal_market_slug=context.current_slug,
            next_market_slug=context.next_slug,
            signal_type=signal_type,
            time_to_end=context.time_to_end,
        )
