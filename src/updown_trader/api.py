from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Query

from .models import LogAction, SeriesStatus
from .providers import MarketDataError
from .repository import SeriesRepository, page_count
from .state import runtime_state

logger = logging.getLogger(__name__)

app = FastAPI(title="Updown Trader API", version="0.1.0")


def _repository() -> SeriesRepository:
    repository = runtime_state.repository
    if repository is None:
        raise HTTPException(status_code=503, detail="runtime not started")
    return repository


@app.get("/healthz")
async def healthz() -> dict:
    return {"ok": True}


@app.get("/status")
async def status() -> dict:
    if runtime_state.repository is None:
        raise HTTPException(status_code=503, detail="runtime not started")
    return runtime_state.snapshot()


@app.get("/trading/stats")
async def trading_stats(bot_id: str | None = Query(default=None)) -> dict:
    items = _repository().list_stats(bot_id)
    return {"items": [stats.model_dump(mode="json") for stats in items]}


@app.get("/trading/series/active")
async def active_series(bot_id: str | None = Query(default=None)) -> dict:
    items = _repository().list_series(bot_id=bot_id, status=SeriesStatus.ACTIVE, limit=100)
    return {"items": [series.model_dump(mode="json") for series in items]}


@app.get("/trading/series/history")
async def series_history(
    limit: int = Query(default=20, ge=1, le=200),
    bot_id: str | None = Query(default=None),
) -> dict:
    items = _repository().list_series(
        bot_id=bot_id,
        exclude_status=SeriesStatus.ACTIVE,
        order_by_ended=True,
        limit=limit,
    )
    return {"items": [series.model_dump(mode="json") for series in items]}


@app.get("/trading/series")
async def list_series(
    limit: int = Query(default=50, ge=1, le=500),
    bot_id: str | None = Query(default=None),
) -> dict:
    items = _repository().list_series(bot_id=bot_id, limit=limit)
    return {"items": [series.model_dump(mode="json") for series in items]}


@app.get("/logs")
async def list_logs(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    asset: str | None = Query(default=None),
    action: LogAction | None = Query(default=None),
) -> dict:
    entries, total = _repository().list_logs(page=page, limit=limit, asset=asset, action=action)
    return {
        "logs": [entry.model_dump(mode="json") for entry in entries],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": page_count(total, limit),
        },
    }


@app.get("/markets/live")
async def live_markets() -> dict:
    provider = runtime_state.context_provider
    if provider is None:
        raise HTTPException(status_code=503, detail="runtime not started")

    markets: dict[str, dict] = {}
    for asset in runtime_state.assets:
        try:
            context = await provider.get_market_context(asset)
        except MarketDataError as exc:
            logger.warning("[API] %s: market context unavailable: %s", asset.upper(), exc)
            markets[asset] = {"error": str(exc)}
            continue
        markets[asset] = context.to_dict()
    return {"markets": markets}


@app.post("/subscribers/{user_id}/toggle")
async def toggle_subscriber(user_id: str) -> dict:
    enabled = _repository().toggle_subscription(user_id)
    return {"user_id": user_id, "trading_notifications": enabled}
