"""Tests for configuration defaults and environment overrides."""

import pytest

from nebula_stream.config import (
    BINANCE_FUTURES_WS,
    MIN_QUOTE_VOLUME,
    NebulaConfig,
    parse_symbol_list,
)
from nebula_stream.exceptions import NebulaError, UnsupportedTimeframeError
from nebula_stream.timeframes import (
    TIMEFRAMES,
    is_native,
    to_kline_interval,
    validate_timeframe,
)


def test_defaults() -> None:
    cfg = NebulaConfig()
    assert cfg.stream_url == BINANCE_FUTURES_WS
    assert cfg.min_quote_volume == MIN_QUOTE_VOLUME == 1_000_000.0
    assert cfg.quote_asset == "USDT"
    assert cfg.reconnect_delay == 3.0
    assert cfg.close_grace_period == 5.0
    assert cfg.ui_flush_interval == 1.0
    assert cfg.chunk_size == 20
    assert cfg.chunk_delay == 0.05
    assert cfg.refresh_interval == 300.0
    assert cfg.timeframe == "24h"
    assert cfg.strict_ingest is True
    assert cfg.api_enabled is False


def test_from_env_overrides() -> None:
    cfg = NebulaConfig.from_env({
        "NEBULA_STREAM_URL": "wss://example/ws",
        "NEBULA_REST_BASE": "https://rest.example/",
        "NEBULA_QUOTE_ASSET": "usdc",
        "NEBULA_MIN_VOLUME": "250000",
        "NEBULA_TIMEFRAME": "4h",
        "NEBULA_FAVORITES": "btcusdt, ethusdt,,",
        "NEBULA_API": "true",
        "NEBULA_API_PORT": "9000",
        "NEBULA_LOG_LEVEL": "debug",
    })
    assert cfg.stream_url == "wss://example/ws"
    assert cfg.rest_base == "https://rest.example"
    assert cfg.quote_asset == "USDC"
    assert cfg.min_quote_volume == 250000.0
    assert cfg.timeframe == "4h"
    assert cfg.favorites == ["BTCUSDT", "ETHUSDT"]
    assert cfg.api_enabled is True
    assert cfg.api_port == 9000
    assert cfg.log_level == "DEBUG"


def test_from_env_ignores_invalid_values() -> None:
    cfg = NebulaConfig.from_env({
        "NEBULA_MIN_VOLUME": "lots",
        "NEBULA_TIMEFRAME": "3d",
        "NEBULA_API_PORT": "http",
    })
    assert cfg.min_quote_volume == MIN_QUOTE_VOLUME
    assert cfg.timeframe == "24h"
    assert cfg.api_port == 8899


def test_from_env_empty() -> None:
    cfg = NebulaConfig.from_env({})
    assert cfg == NebulaConfig()


def test_parse_symbol_list() -> None:
    assert parse_symbol_list(None) == []
    assert parse_symbol_list(" solusdt ,BTCUSDT") == ["SOLUSDT", "BTCUSDT"]


class TestTimeframes:
    def test_vocabulary(self):
        assert TIMEFRAMES == ("1m", "15m", "1h", "4h", "24h", "7d")
        assert is_native("24h")
        assert not is_native("1h")

    def test_kline_intervals(self):
        assert to_kline_interval("7d") == "1w"
        assert to_kline_interval("15m") == "15m"
        assert to_kline_interval("24h") is None
        assert to_kline_interval("3d") is None

    def test_validate(self):
        assert validate_timeframe("1m") == "1m"
        with pytest.raises(UnsupportedTimeframeError) as exc_info:
            validate_timeframe("3d")
        assert exc_info.value.timeframe == "3d"
        assert isinstance(exc_info.value, NebulaError)
        assert isinstance(exc_info.value, ValueError)
