from __future__ import annotations

import json
import math
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import (
    LogAction,
    SeriesStatus,
    TradeLogEntry,
    TradingSeries,
    TradingStats,
    ensure_utc,
    utc_now,
)


class SeriesRepository:
    """sqlite store for series, per-bot ledgers, the trade log and subscribers.

    Series and ledgers are stored as pydantic JSON payloads next to the
    columns used for lookups.
    """

    def __init__(self, db_path: str = "logs/trader.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._bootstrap()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _bootstrap(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trade_series (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_trade_series_lookup
                ON trade_series (bot_id, asset, status)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trading_stats (
                    bot_id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trade_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    bot_id TEXT,
                    asset TEXT NOT NULL,
                    market_slug TEXT NOT NULL,
                    action TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    data_json TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_trade_logs_timestamp
                ON trade_logs (timestamp)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscribers (
                    user_id TEXT PRIMARY KEY,
                    trading_notifications INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _row_to_series(row: sqlite3.Row) -> TradingSeries:
        return TradingSeries.model_validate_json(row["payload_json"])

    # Series

    def save_series(self, series: TradingSeries) -> None:
        now = utc_now().isoformat()
        ended_at = ensure_utc(series.ended_at).isoformat() if series.ended_at else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trade_series (
                    id, bot_id, asset, status, started_at, ended_at, payload_json, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status=excluded.status,
                    ended_at=excluded.ended_at,
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (
                    series.id,
                    series.bot_id,
                    series.asset,
                    series.status.value,
                    ensure_utc(series.started_at).isoformat(),
                    ended_at,
                    series.model_dump_json(),
                    now,
                ),
            )

    def get_series(self, series_id: str) -> TradingSeries | None:
        with self._connect() as conn:
            row = conn.execute("SELECT payload_json FROM trade_series WHERE id = ?", (series_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_series(row)

    def find_active_series(self, bot_id: str) -> list[TradingSeries]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM trade_series
                WHERE bot_id = ? AND status = ?
                ORDER BY started_at ASC
                """,
                (bot_id, SeriesStatus.ACTIVE.value),
            ).fetchall()
            return [self._row_to_series(row) for row in rows]

    def find_series(self, bot_id: str, asset: str, status: SeriesStatus) -> TradingSeries | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT payload_json FROM trade_series
                WHERE bot_id = ? AND asset = ? AND status = ?
                ORDER BY started_at DESC LIMIT 1
                """,
                (bot_id, asset, status.value),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_series(row)

    def find_series_by_status(self, bot_id: str, status: SeriesStatus) -> list[TradingSeries]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM trade_series WHERE bot_id = ? AND status = ?",
                (bot_id, status.value),
            ).fetchall()
            return [self._row_to_series(row) for row in rows]

    def list_series(
        self,
        *,
        bot_id: str | None = None,
        status: SeriesStatus | None = None,
        exclude_status: SeriesStatus | None = None,
        order_by_ended: bool = False,
        limit: int = 50,
    ) -> list[TradingSeries]:
        limit = max(1, min(limit, 500))
        sql = "SELECT payload_json FROM trade_series"
        clauses: list[str] = []
        params: list[Any] = []
        if bot_id is not None:
            clauses.append("bot_id = ?")
            params.append(bot_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if exclude_status is not None:
            clauses.append("status != ?")
            params.append(exclude_status.value)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order_by_ended:
            sql += " ORDER BY ended_at IS NULL, ended_at DESC, started_at DESC LIMIT ?"
        else:
            sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_series(row) for row in rows]

    # Ledger

    def get_stats(self, bot_id: str) -> TradingStats | None:
        with self._connect() as conn:
            row = conn.execute("SELECT payload_json FROM trading_stats WHERE bot_id = ?", (bot_id,)).fetchone()
            if row is None:
                return None
            return TradingStats.model_validate_json(row["payload_json"])

    def get_or_create_stats(self, bot_id: str, *, initial_deposit: float = 100.0) -> TradingStats:
        stats = TradingStats(bot_id=bot_id, initial_deposit=initial_deposit, current_balance=initial_deposit)
        now = utc_now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trading_stats (bot_id, payload_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(bot_id) DO NOTHING
                """,
                (bot_id, stats.model_dump_json(), now),
            )
            row = conn.execute("SELECT payload_json FROM trading_stats WHERE bot_id = ?", (bot_id,)).fetchone()
            if row is None:
                raise RuntimeError(f"failed to fetch stats for {bot_id}")
            return TradingStats.model_validate_json(row["payload_json"])

    def save_stats(self, stats: TradingStats) -> None:
        stats.updated_at = utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trading_stats (bot_id, payload_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(bot_id) DO UPDATE SET
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (stats.bot_id, stats.model_dump_json(), stats.updated_at.isoformat()),
            )

    def list_stats(self, bot_id: str | None = None) -> list[TradingStats]:
        sql = "SELECT payload_json FROM trading_stats"
        params: list[Any] = []
        if bot_id is not None:
            sql += " WHERE bot_id = ?"
            params.append(bot_id)
        sql += " ORDER BY bot_id ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [TradingStats.model_validate_json(row["payload_json"]) for row in rows]

    # Trade log

    def append_log(self, entry: TradeLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trade_logs (timestamp, bot_id, asset, market_slug, action, reason, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ensure_utc(entry.timestamp).isoformat(),
                    entry.bot_id,
                    entry.asset,
                    entry.market_slug,
                    entry.action.value,
                    entry.reason,
                    json.dumps(entry.data, default=str),
                ),
            )

    def list_logs(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        asset: str | None = None,
        action: LogAction | None = None,
    ) -> tuple[list[TradeLogEntry], int]:
        page = max(1, page)
        limit = max(1, min(limit, 200))
        where = ""
        clauses: list[str] = []
        params: list[Any] = []
        if asset is not None:
            clauses.append("asset = ?")
            params.append(asset)
        if action is not None:
            clauses.append("action = ?")
            params.append(action.value)
        if clauses:
            where = " WHERE " + " AND ".join(clauses)

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM trade_logs{where}", params).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM trade_logs{where} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()

        entries = [
            TradeLogEntry(
                timestamp=datetime.fromisoformat(row["timestamp"]),
                bot_id=row["bot_id"],
                asset=row["asset"],
                market_slug=row["market_slug"],
                action=row["action"],
                reason=row["reason"],
                data=json.loads(row["data_json"]) if row["data_json"] else {},
            )
            for row in rows
        ]
        return entries, int(total)

    # Subscribers

    def set_subscription(self, user_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO subscribers (user_id, trading_notifications, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    trading_notifications=excluded.trading_notifications,
                    updated_at=excluded.updated_at
                """,
                (user_id, int(enabled), utc_now().isoformat()),
            )

    def toggle_subscription(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT trading_notifications FROM subscribers WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        enabled = not bool(row["trading_notifications"]) if row else True
        self.set_subscription(user_id, enabled)
        return enabled

    def subscribed_users(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT user_id FROM subscribers WHERE trading_notifications = 1 ORDER BY user_id ASC"
            ).fetchall()
            return [row["user_id"] for row in rows]


def page_count(total: int, limit: int) -> int:
    return max(1, math.ceil(total / max(1, limit)))
