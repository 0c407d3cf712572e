from __future__ import annotations

import asyncio
import logging

import httpx

from .config import Config, load_bot_configs, load_config
from .engine import TradingEngine
from .notifier import TelegramNotifier
from .providers import BinanceContextProvider, MarketContextProvider, PolymarketClient
from .repository import SeriesRepository
from .scheduler import IntervalTicker
from .signals import CandleSignalDetector, SignalRouter
from .state import runtime_state

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_context_provider(
    config: Config,
    client: httpx.AsyncClient,
    polymarket: PolymarketClient,
) -> MarketContextProvider:
    if config.data_source == "polymarket":
        return polymarket
    return BinanceContextProvider(
        endpoints=config.binance_endpoints,
        client=client,
        timeout_seconds=config.http_timeout_seconds,
    )


async def run(config: Config | None = None, stop_event: asyncio.Event | None = None) -> None:
    config = config or load_config()
    stop_event = stop_event or asyncio.Event()
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    repository = SeriesRepository(config.db_path)

    async with httpx.AsyncClient(timeout=config.http_timeout_seconds) as client:
        polymarket = PolymarketClient(
            gamma_url=config.polymarket_gamma_url,
            clob_url=config.polymarket_clob_url,
            client=client,
            timeout_seconds=config.http_timeout_seconds,
        )
        context_provider = build_context_provider(config, client, polymarket)
        notifier = (
            TelegramNotifier(
                token=config.telegram_bot_token,
                repository=repository,
                api_url=config.telegram_api_url,
                client=client,
            )
            if config.telegram_bot_token
            else None
        )
        if notifier is None:
            logger.info("[Telegram] TELEGRAM_BOT_TOKEN not set, notifications disabled")

        engines = [
            TradingEngine(
                bot_config,
                context_provider=context_provider,
                price_oracle=polymarket,
                repository=repository,
                notifier=notifier,
                state=runtime_state,
            )
            for bot_config in load_bot_configs(config.bot_ids)
        ]
        for engine in engines:
            await engine.start()

        router = SignalRouter(engines)
        detector = CandleSignalDetector(
            context_provider,
            router,
            repository,
            config.assets,
            min_time_before_end=config.signal_min_time_before_end_seconds,
            color_hold_seconds=config.signal_color_hold_seconds,
        )
        tickers = [
            IntervalTicker("signals", config.check_interval_seconds, detector.check_all),
            *(IntervalTicker(engine.bot_id, config.check_interval_seconds, engine.tick) for engine in engines),
        ]

        runtime_state.attach(
            repository=repository,
            engines=engines,
            context_provider=context_provider,
            assets=config.assets,
        )
        runtime_state.add_event(
            "info",
            "trader_started",
            {
                "data_source": config.data_source,
                "assets": list(config.assets),
                "bots": [engine.bot_id for engine in engines],
            },
        )
        logger.info(
            "[Trade] Started %s bot(s) on %s via %s",
            len(engines),
            ", ".join(asset.upper() for asset in config.assets),
            config.data_source,
        )

        try:
            async with asyncio.TaskGroup() as tg:
                for ticker in tickers:
                    tg.create_task(ticker.run())
                await stop_event.wait()
                for ticker in tickers:
                    ticker.stop()
        finally:
            runtime_state.detach()
            logger.info("[Trade] Stopped")


if __name__ == "__main__":
    asyncio.run(run())
