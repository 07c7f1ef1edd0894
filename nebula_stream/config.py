"""
Configuration for the Liquidity Nebula streaming core.

Module constants are the defaults used by every component. NebulaConfig
bundles them for the launcher, which may override them from NEBULA_*
environment variables. Core components only ever receive plain constructor
arguments.

Environment overrides:
  NEBULA_STREAM_URL        upstream websocket URL
  NEBULA_REST_BASE         kline REST base URL
  NEBULA_QUOTE_ASSET       quote asset suffix (default USDT)
  NEBULA_MIN_VOLUME        minimum 24h quote volume to admit a symbol
  NEBULA_TIMEFRAME         initial observation window
  NEBULA_FAVORITES         comma-separated pinned symbols
  NEBULA_API               "1" to start the embedded API
  NEBULA_API_HOST / NEBULA_API_PORT
  NEBULA_LOG_LEVEL
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from nebula_stream.timeframes import NATIVE_TIMEFRAME, TIMEFRAMES

logger = logging.getLogger(__name__)

# Binance USDT-M futures: all-market rolling 24h ticker stream
BINANCE_FUTURES_WS = "wss://fstream.binance.com/ws/!ticker@arr"

# Binance Futures REST base (klines live under /fapi/v1/klines)
BINANCE_FAPI_BASE = "https://fapi.binance.com"
KLINES_PATH = "/fapi/v1/klines"

# Admission filter
TARGET_QUOTE_ASSET = "USDT"
MIN_QUOTE_VOLUME = 1_000_000.0

# Stream connection manager timings (seconds)
RECONNECT_DELAY = 3.0
CLOSE_GRACE_PERIOD = 5.0
PING_INTERVAL = 20

# UI fan-out throttle (seconds between flushes)
UI_FLUSH_INTERVAL = 1.0

# Baseline resynchronizer
BASELINE_CHUNK_SIZE = 20
BASELINE_CHUNK_DELAY = 0.05       # rate-limit courtesy between chunks
BASELINE_REFRESH_INTERVAL = 300.0  # 5 minutes
BASELINE_REQUEST_TIMEOUT = 10.0
COLD_START_MIN_SYMBOLS = 5
COLD_START_RETRY_DELAY = 2.0

# Embedded API defaults
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8899


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, default)
        return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, default)
        return default


def parse_symbol_list(raw: Optional[str]) -> List[str]:
    """Split "btcusdt, ETHUSDT" into ["BTCUSDT", "ETHUSDT"], dropping blanks."""
    if not raw:
        return []
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


@dataclass
class NebulaConfig:
    """Runtime configuration for one MarketState."""
    stream_url: str = BINANCE_FUTURES_WS
    rest_base: str = BINANCE_FAPI_BASE
    quote_asset: str = TARGET_QUOTE_ASSET
    min_quote_volume: float = MIN_QUOTE_VOLUME
    strict_ingest: bool = True

    reconnect_delay: float = RECONNECT_DELAY
    close_grace_period: float = CLOSE_GRACE_PERIOD
    ui_flush_interval: float = UI_FLUSH_INTERVAL

    chunk_size: int = BASELINE_CHUNK_SIZE
    chunk_delay: float = BASELINE_CHUNK_DELAY
    refresh_interval: float = BASELINE_REFRESH_INTERVAL
    request_timeout: float = BASELINE_REQUEST_TIMEOUT
    cold_start_min_symbols: int = COLD_START_MIN_SYMBOLS
    cold_start_retry_delay: float = COLD_START_RETRY_DELAY

    timeframe: str = NATIVE_TIMEFRAME
    favorites: List[str] = field(default_factory=list)

    api_enabled: bool = False
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "NebulaConfig":
        """Build a config from NEBULA_* variables, falling back to defaults."""
        env = os.environ if env is None else env
        cfg = cls()
        cfg.stream_url = env.get("NEBULA_STREAM_URL", cfg.stream_url)
        cfg.rest_base = env.get("NEBULA_REST_BASE", cfg.rest_base).rstrip("/")
        cfg.quote_asset = env.get("NEBULA_QUOTE_ASSET", cfg.quote_asset).upper()
        cfg.min_quote_volume = _env_float(env, "NEBULA_MIN_VOLUME", cfg.min_quote_volume)

        timeframe = env.get("NEBULA_TIMEFRAME", cfg.timeframe)
        if timeframe in TIMEFRAMES:
            cfg.timeframe = timeframe
        else:
            logger.warning(
                "Ignoring unsupported NEBULA_TIMEFRAME=%r (valid: %s)",
                timeframe, ", ".join(TIMEFRAMES),
            )

        cfg.favorites = parse_symbol_list(env.get("NEBULA_FAVORITES"))
        cfg.api_enabled = env.get("NEBULA_API", "").strip().lower() in ("1", "true", "yes")
        cfg.api_host = env.get("NEBULA_API_HOST", cfg.api_host)
        cfg.api_port = _env_int(env, "NEBULA_API_PORT", cfg.api_port)
        cfg.log_level = env.get("NEBULA_LOG_LEVEL", cfg.log_level).upper()
        return cfg
