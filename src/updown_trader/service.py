from __future__ import annotations

import asyncio
import logging
import signal

import uvicorn

from .api import app
from .config import load_config
from .main import run

logger = logging.getLogger(__name__)


async def serve() -> None:
    config = load_config()
    stop_event = asyncio.Event()

    server = uvicorn.Server(
        uvicorn.Config(
            app=app,
            host="0.0.0.0",
            port=config.agent_api_port,
            log_level="info",
        )
    )

    def _shutdown() -> None:
        logger.info("Shutdown requested")
        stop_event.set()
        server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown)

    async def _serve_api() -> None:
        try:
            await server.serve()
        finally:
            # The API exiting on its own also ends the trading runtime.
            stop_event.set()

    async with asyncio.TaskGroup() as tg:
        tg.create_task(run(config, stop_event))
        tg.create_task(_serve_api())


if __name__ == "__main__":
    asyncio.run(serve())
