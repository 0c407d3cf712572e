from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .models import RoundWindow

logger = logging.getLogger(__name__)


@dataclass
class RoundScheduler:
    round_seconds: int = 15 * 60

    def current_round(self, now_ts: float | None = None) -> RoundWindow:
        now_ts = now_ts if now_ts is not None else time.time()
        round_id = int(now_ts // self.round_seconds)
        start_ts = round_id * self.round_seconds
        return RoundWindow(
            round_id=round_id,
            start_ts=start_ts,
            close_ts=start_ts + self.round_seconds,
        )

    def seconds_to_close(self, now_ts: float | None = None) -> float:
        now_ts = now_ts if now_ts is not None else time.time()
        return self.current_round(now_ts).close_ts - now_ts


class IntervalTicker:
    """Runs an async callback every ``interval_seconds`` without overlap.

    The next run is scheduled only after the previous callback returned, so
    a slow tick delays the following one instead of running beside it.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._stop = asyncio.Event()
        self.runs = 0

    def stop(self) -> None:
        self._stop.set()

    async def run_once(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("[Ticker] %s tick failed: %s", self.name, exc)
        finally:
            self.runs += 1

    async def run(self) -> None:
        logger.info("[Ticker] %s started (every %.1fs)", self.name, self.interval_seconds)
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue
        logger.info("[Ticker] %s stopped", self.name)
