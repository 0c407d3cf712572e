from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Sequence

if TYPE_CHECKING:
    from .engine import TradingEngine
    from .providers import MarketContextProvider
    from .repository import SeriesRepository


@dataclass
class RuntimeEvent:
    ts: float
    level: str
    message: str
    data: dict = field(default_factory=dict)


class RuntimeState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_ts = time.time()
        self._events: Deque[RuntimeEvent] = deque(maxlen=200)
        self._repository: SeriesRepository | None = None
        self._engines: list[TradingEngine] = []
        self._context_provider: MarketContextProvider | None = None
        self._assets: tuple[str, ...] = ()

    def attach(
        self,
        *,
        repository: SeriesRepository,
        engines: Sequence[TradingEngine],
        context_provider: MarketContextProvider,
        assets: Sequence[str],
    ) -> None:
        with self._lock:
            self._repository = repository
            self._engines = list(engines)
            self._context_provider = context_provider
            self._assets = tuple(assets)

    def detach(self) -> None:
        with self._lock:
            self._repository = None
            self._engines = []
            self._context_provider = None
            self._assets = ()

    @property
    def repository(self) -> SeriesRepository | None:
        with self._lock:
            return self._repository

    @property
    def engines(self) -> list[TradingEngine]:
        with self._lock:
            return list(self._engines)

    @property
    def context_provider(self) -> MarketContextProvider | None:
        with self._lock:
            return self._context_provider

    @property
    def assets(self) -> tuple[str, ...]:
        with self._lock:
            return self._assets

    def add_event(self, level: str, message: str, data: dict | None = None) -> None:
        with self._lock:
            self._events.append(
                RuntimeEvent(
                    ts=time.time(),
                    level=level,
                    message=message,
                    data=data or {},
                )
            )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            engines = list(self._engines)
            events = list(self._events)
            started_ts = self._started_ts

        return {
            "started_ts": started_ts,
            "bots": {
                engine.bot_id: {
                    "name": engine.config.name,
                    "active_series": engine.get_active_series(),
                }
                for engine in engines
            },
            "events": [
                {
                    "ts": e.ts,
                    "level": e.level,
                    "message": e.message,
                    "data": e.data,
                }
                for e in events
            ],
        }


runtime_state = RuntimeState()
