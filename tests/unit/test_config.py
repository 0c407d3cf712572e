from dataclasses import replace

import pytest

from src.updown_trader.config import TRADING_CONFIGS, load_bot_configs, load_config
from src.updown_trader.models import BuyStrategy, SignalType


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DATA_SOURCE",
        "ASSETS",
        "BOT_IDS",
        "CHECK_INTERVAL_SECONDS",
        "TELEGRAM_BOT_TOKEN",
        "DEBUG",
        "AGENT_API_PORT",
        "BINANCE_ENDPOINTS",
        "TRADER_DB_PATH",
    ):
        monkeypatch.setenv(name, "")
    monkeypatch.setenv("DATA_SOURCE", "binance")
    monkeypatch.setenv("CHECK_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("AGENT_API_PORT", "8080")
    monkeypatch.setenv("TRADER_DB_PATH", "logs/trader.sqlite3")

    cfg = load_config()

    assert cfg.data_source == "binance"
    assert cfg.assets == ("eth", "btc")
    assert cfg.bot_ids == ("bot1", "bot2", "bot3")
    assert cfg.check_interval_seconds == 5.0
    assert cfg.telegram_bot_token is None
    assert cfg.debug is False
    assert cfg.agent_api_port == 8080
    assert cfg.binance_endpoints[0] == "https://data-api.binance.vision/api/v3"
    assert cfg.db_path == "logs/trader.sqlite3"


def test_load_config_parses_expected_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_SOURCE", "Polymarket")
    monkeypatch.setenv("ASSETS", "ETH")
    monkeypatch.setenv("BOT_IDS", "bot2, bot3")
    monkeypatch.setenv("CHECK_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("SIGNAL_MIN_TIME_BEFORE_END_SECONDS", "90")
    monkeypatch.setenv("SIGNAL_COLOR_HOLD_SECONDS", "3")
    monkeypatch.setenv("POLYMARKET_CLOB_URL", "https://clob.example.com/")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TRADER_DB_PATH", "/tmp/trader.sqlite3")
    monkeypatch.setenv("AGENT_API_PORT", "9090")
    monkeypatch.setenv("DEBUG", "true")

    cfg = load_config()

    assert cfg.data_source == "polymarket"
    assert cfg.assets == ("eth",)
    assert cfg.bot_ids == ("bot2", "bot3")
    assert cfg.check_interval_seconds == 2.5
    assert cfg.signal_min_time_before_end_seconds == 90
    assert cfg.signal_color_hold_seconds == 3.0
    assert cfg.polymarket_clob_url == "https://clob.example.com"
    assert cfg.telegram_bot_token == "123:abc"
    assert cfg.db_path == "/tmp/trader.sqlite3"
    assert cfg.agent_api_port == 9090
    assert cfg.debug is True


def test_load_config_rejects_unknown_data_source(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_SOURCE", "kraken")

    with pytest.raises(ValueError, match="DATA_SOURCE"):
        load_config()


def test_load_config_rejects_unknown_bot(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_SOURCE", "binance")
    monkeypatch.setenv("ASSETS", "eth")
    monkeypatch.setenv("BOT_IDS", "bot1,bot9")

    with pytest.raises(ValueError, match="bot9"):
        load_config()


def test_load_config_rejects_unknown_asset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_SOURCE", "binance")
    monkeypatch.setenv("ASSETS", "eth,doge")

    with pytest.raises(ValueError, match="doge"):
        load_config()


def test_load_config_rejects_non_positive_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_SOURCE", "binance")
    monkeypatch.setenv("ASSETS", "eth")
    monkeypatch.setenv("BOT_IDS", "bot1")
    monkeypatch.setenv("CHECK_INTERVAL_SECONDS", "0")

    with pytest.raises(ValueError, match="CHECK_INTERVAL_SECONDS"):
        load_config()


def test_stock_bot_configs() -> None:
    bot1, bot2, bot3 = load_bot_configs(["bot1", "bot2", "bot3"])

    assert bot1.signal_type is SignalType.THREE_CANDLES
    assert bot1.max_steps == 4
    assert bot1.cooldown_after_full_loss_seconds == 0
    assert bot2.signal_type is SignalType.TWO_CANDLES
    assert bot2.break_even_on_last_step is True
    assert bot2.cooldown_after_full_loss_seconds == 900
    assert bot3.buy_strategy is BuyStrategy.VALIDATE
    assert bot3.base_deposit == 1000.0


def test_break_even_only_on_last_step() -> None:
    bot2 = TRADING_CONFIGS["bot2"]

    assert bot2.target_profit(1) == pytest.approx(1.5)
    assert bot2.target_profit(2) == pytest.approx(1.5)
    assert bot2.target_profit(3) == 0.0
    assert bot2.is_break_even_step(3) is True
    assert TRADING_CONFIGS["bot1"].target_profit(4) == pytest.approx(1.5)


def test_bot_config_validation() -> None:
    with pytest.raises(ValueError, match="max_price"):
        replace(TRADING_CONFIGS["bot1"], max_price=1.2)
    with pytest.raises(ValueError, match="max_steps"):
        replace(TRADING_CONFIGS["bot1"], max_steps=0)
    with pytest.raises(ValueError, match="entry_fee"):
        replace(TRADING_CONFIGS["bot1"], entry_fee=1.0)
