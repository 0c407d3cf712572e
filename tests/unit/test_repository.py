from datetime import datetime, timedelta, timezone

from src.updown_trader.models import (
    Color,
    EventType,
    LogAction,
    SeriesStatus,
    TradeLogEntry,
    TradingSeries,
)
from src.updown_trader.repository import SeriesRepository, page_count

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _series(bot_id: str = "bot1", asset: str = "eth", **kwargs) -> TradingSeries:
    return TradingSeries(
        bot_id=bot_id,
        asset=asset,
        signal_color=Color.GREEN,
        bet_color=Color.RED,
        started_at=kwargs.pop("started_at", NOW),
        **kwargs,
    )


def test_save_series_upserts_payload(tmp_path) -> None:
    repo = SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))
    series = _series(current_market_slug="eth-updown-15m-1767225600")
    series.add_event(EventType.SERIES_OPENED, timestamp=NOW, message="opened")
    repo.save_series(series)

    series.status = SeriesStatus.WON
    series.ended_at = NOW + timedelta(minutes=15)
    repo.save_series(series)

    loaded = repo.get_series(series.id)
    assert loaded is not None
    assert loaded.status is SeriesStatus.WON
    assert loaded.events[0].type is EventType.SERIES_OPENED
    assert loaded.bet_color is Color.RED
    assert len(repo.list_series()) == 1


def test_find_series_by_bot_asset_and_status(tmp_path) -> None:
    repo = SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))
    older = _series(status=SeriesStatus.COOLDOWN, started_at=NOW)
    newer = _series(status=SeriesStatus.COOLDOWN, started_at=NOW + timedelta(hours=1))
    other_bot = _series(bot_id="bot2")
    for series in (older, newer, other_bot):
        repo.save_series(series)

    assert repo.find_series("bot1", "eth", SeriesStatus.COOLDOWN).id == newer.id
    assert repo.find_series("bot1", "btc", SeriesStatus.COOLDOWN) is None
    assert [s.id for s in repo.find_active_series("bot2")] == [other_bot.id]
    assert len(repo.find_series_by_status("bot1", SeriesStatus.COOLDOWN)) == 2


def test_list_series_history_excludes_active(tmp_path) -> None:
    repo = SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))
    active = _series()
    first = _series(asset="btc", status=SeriesStatus.LOST, ended_at=NOW + timedelta(minutes=5))
    second = _series(asset="btc", status=SeriesStatus.WON, ended_at=NOW + timedelta(minutes=30))
    for series in (active, first, second):
        repo.save_series(series)

    history = repo.list_series(exclude_status=SeriesStatus.ACTIVE, order_by_ended=True)

    assert [s.id for s in history] == [second.id, first.id]


def test_stats_created_once_with_initial_deposit(tmp_path) -> None:
    repo = SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))

    stats = repo.get_or_create_stats("bot3", initial_deposit=1000.0)
    stats.record_win(step=2, pnl=15.0, commission=0.5)
    stats.current_balance += 15.0
    repo.save_stats(stats)
    again = repo.get_or_create_stats("bot3", initial_deposit=1000.0)

    assert again.initial_deposit == 1000.0
    assert again.current_balance == 1015.0
    assert again.won_trades == 1
    assert again.wins_by_step == {2: 1}
    assert [s.bot_id for s in repo.list_stats()] == ["bot3"]


def test_logs_paginate_and_filter(tmp_path) -> None:
    repo = SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))
    for index in range(5):
        repo.append_log(
            TradeLogEntry(
                timestamp=NOW + timedelta(seconds=index),
                bot_id="bot1",
                asset="eth" if index % 2 == 0 else "btc",
                market_slug=f"m{index}",
                action=LogAction.TRADE if index < 3 else LogAction.SKIP,
                reason=f"r{index}",
                data={"index": index},
            )
        )

    page, total = repo.list_logs(page=1, limit=2)
    assert total == 5
    assert [entry.reason for entry in page] == ["r4", "r3"]
    assert page[0].data == {"index": 4}

    eth, eth_total = repo.list_logs(asset="eth")
    assert eth_total == 3

    skipped, skipped_total = repo.list_logs(action=LogAction.SKIP)
    assert skipped_total == 2
    assert {entry.action for entry in skipped} == {LogAction.SKIP}
    assert page_count(5, 2) == 3
    assert page_count(0, 50) == 1


def test_toggle_subscription(tmp_path) -> None:
    repo = SeriesRepository(db_path=str(tmp_path / "trader.sqlite3"))

    assert repo.toggle_subscription("42") is True
    assert repo.subscribed_users() == ["42"]
    assert repo.toggle_subscription("42") is False
    assert repo.subscribed_users() == []
    repo.set_subscription("7", True)
    assert repo.subscribed_users() == ["7"]
