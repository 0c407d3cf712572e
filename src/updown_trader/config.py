from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .models import BuyStrategy, SignalType

SUPPORTED_ASSETS = ("eth", "btc")
DATA_SOURCES = ("binance", "polymarket")
DEFAULT_BINANCE_ENDPOINTS = (
    "https://data-api.binance.vision/api/v3",
    "https://api.binance.com/api/v3",
    "https://api1.binance.com/api/v3",
    "https://api2.binance.com/api/v3",
)


@dataclass(frozen=True)
class BotConfig:
    bot_id: str
    name: str
    signal_type: SignalType
    max_steps: int
    first_bet_percent: float
    base_deposit: float
    max_price: float
    entry_fee: float
    exit_fee: float
    buy_strategy: BuyStrategy = BuyStrategy.SIGNAL
    break_even_on_last_step: bool = False
    cooldown_after_full_loss_seconds: int = 0
    target_profit_percent: float = 0.015

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError(f"{self.bot_id}: max_steps must be >= 1")
        if not 0 < self.max_price < 1:
            raise ValueError(f"{self.bot_id}: max_price must be between 0 and 1")
        for label, rate in (("entry_fee", self.entry_fee), ("exit_fee", self.exit_fee)):
            if not 0 <= rate < 1:
                raise ValueError(f"{self.bot_id}: {label} must be in [0, 1)")
        if self.base_deposit <= 0:
            raise ValueError(f"{self.bot_id}: base_deposit must be positive")
        if self.target_profit_percent < 0:
            raise ValueError(f"{self.bot_id}: target_profit_percent must be non-negative")
        if self.cooldown_after_full_loss_seconds < 0:
            raise ValueError(f"{self.bot_id}: cooldown_after_full_loss_seconds must be non-negative")

    def target_profit(self, step: int) -> float:
        if step >= self.max_steps and self.break_even_on_last_step:
            return 0.0
        return self.base_deposit * self.target_profit_percent

    def is_break_even_step(self, step: int) -> bool:
        return step >= self.max_steps and self.break_even_on_last_step


TRADING_CONFIGS: dict[str, BotConfig] = {
    "bot1": BotConfig(
        bot_id="bot1",
        name="3 candles, 2%, 4 steps, <=$0.55",
        signal_type=SignalType.THREE_CANDLES,
        max_steps=4,
        first_bet_percent=0.02,
        base_deposit=100.0,
        max_price=0.55,
        entry_fee=0.015,
        exit_fee=0.015,
        buy_strategy=BuyStrategy.SIGNAL,
    ),
    "bot2": BotConfig(
        bot_id="bot2",
        name="2 candles, 1.5%, 3 steps (break-even), <=$0.55",
        signal_type=SignalType.TWO_CANDLES,
        max_steps=3,
        first_bet_percent=0.015,
        base_deposit=100.0,
        max_price=0.55,
        entry_fee=0.015,
        exit_fee=0.015,
        buy_strategy=BuyStrategy.SIGNAL,
        break_even_on_last_step=True,
        cooldown_after_full_loss_seconds=15 * 60,
    ),
    "bot3": BotConfig(
        bot_id="bot3",
        name="2 candles, 1.5%, 3 steps (validated), <=$0.55",
        signal_type=SignalType.TWO_CANDLES,
        max_steps=3,
        first_bet_percent=0.015,
        base_deposit=1000.0,
        max_price=0.55,
        entry_fee=0.015,
        exit_fee=0.015,
        buy_strategy=BuyStrategy.VALIDATE,
        break_even_on_last_step=True,
        cooldown_after_full_loss_seconds=15 * 60,
    ),
}


@dataclass(frozen=True)
class Config:
    data_source: str
    assets: tuple[str, ...]
    bot_ids: tuple[str, ...]
    check_interval_seconds: float
    signal_min_time_before_end_seconds: int
    signal_color_hold_seconds: float
    polymarket_gamma_url: str
    polymarket_clob_url: str
    binance_endpoints: tuple[str, ...]
    http_timeout_seconds: float
    db_path: str
    telegram_bot_token: str | None
    telegram_api_url: str
    agent_api_port: int
    debug: bool


def _bool_from_env(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _list_from_env(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None or not value.strip():
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def load_bot_configs(bot_ids: tuple[str, ...] | list[str]) -> list[BotConfig]:
    configs: list[BotConfig] = []
    for bot_id in bot_ids:
        bot_config = TRADING_CONFIGS.get(bot_id)
        if bot_config is None:
            raise ValueError(f"Unknown bot id in BOT_IDS: {bot_id}")
        configs.append(bot_config)
    return configs


def load_config() -> Config:
    load_dotenv()

    data_source = os.getenv("DATA_SOURCE", "binance").strip().lower()
    if data_source not in DATA_SOURCES:
        raise ValueError(f"DATA_SOURCE must be one of {', '.join(DATA_SOURCES)}")

    assets = tuple(a.lower() for a in _list_from_env(os.getenv("ASSETS"), SUPPORTED_ASSETS))
    unknown_assets = [a for a in assets if a not in SUPPORTED_ASSETS]
    if unknown_assets:
        raise ValueError(f"ASSETS contains unsupported asset(s): {', '.join(unknown_assets)}")

    bot_ids = _list_from_env(os.getenv("BOT_IDS"), tuple(TRADING_CONFIGS))
    load_bot_configs(bot_ids)

    check_interval_seconds = float(os.getenv("CHECK_INTERVAL_SECONDS", "5"))
    if check_interval_seconds <= 0:
        raise ValueError("CHECK_INTERVAL_SECONDS must be positive")

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip() or None

    return Config(
        data_source=data_source,
        assets=assets,
        bot_ids=bot_ids,
        check_interval_seconds=check_interval_seconds,
        signal_min_time_before_end_seconds=int(os.getenv("SIGNAL_MIN_TIME_BEFORE_END_SECONDS", "60")),
        signal_color_hold_seconds=float(os.getenv("SIGNAL_COLOR_HOLD_SECONDS", "5")),
        polymarket_gamma_url=os.getenv(
            "POLYMARKET_GAMMA_URL",
            "https://gamma-api.polymarket.com",
        ).strip().rstrip("/"),
        polymarket_clob_url=os.getenv(
            "POLYMARKET_CLOB_URL",
            "https://clob.polymarket.com",
        ).strip().rstrip("/"),
        binance_endpoints=_list_from_env(os.getenv("BINANCE_ENDPOINTS"), DEFAULT_BINANCE_ENDPOINTS),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "5")),
        db_path=os.getenv("TRADER_DB_PATH", "logs/trader.sqlite3").strip(),
        telegram_bot_token=telegram_bot_token,
        telegram_api_url=os.getenv("TELEGRAM_API_URL", "https://api.telegram.org").strip().rstrip("/"),
        agent_api_port=int(os.getenv("AGENT_API_PORT", "8080")),
        debug=_bool_from_env(os.getenv("DEBUG"), False),
    )
