#!/usr/bin/env python3
"""
Run the Liquidity Nebula terminal viewer.

Usage:
    python run_viewer.py [--timeframe TF] [--favorites SYM1,SYM2,...] [--api]

Examples:
    python run_viewer.py                              # native 24h window
    python run_viewer.py --timeframe 1h               # change since the 1h open
    python run_viewer.py -t 15m -f BTCUSDT,ETHUSDT    # pin favorites first
    python run_viewer.py --api --api-port 8899        # also serve the read-only API
"""

import argparse
import asyncio
import logging
import sys

from nebula_stream.config import NebulaConfig, parse_symbol_list
from nebula_stream.timeframes import TIMEFRAMES


def setup_logging(level: str, log_file: str) -> None:
    # The rich display owns the terminal, so log lines go to a file
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        filename=log_file,
    )


def main():
    config = NebulaConfig.from_env()

    parser = argparse.ArgumentParser(
        description='Liquidity Nebula - live USDT-M futures tickers with window-relative change'
    )
    parser.add_argument(
        '--timeframe', '-t',
        choices=TIMEFRAMES,
        default=config.timeframe,
        help=f'Observation window (default: {config.timeframe})'
    )
    parser.add_argument(
        '--favorites', '-f',
        type=str,
        default=None,
        help='Comma-separated symbols to pin (their baselines are fetched first)'
    )
    parser.add_argument(
        '--min-volume',
        type=float,
        default=config.min_quote_volume,
        help=f'Minimum 24h quote volume to track a symbol (default: {config.min_quote_volume:,.0f})'
    )
    parser.add_argument(
        '--api', action='store_true',
        help='Enable the embedded read-only API server'
    )
    parser.add_argument(
        '--api-host', default=config.api_host,
        help=f'API server host (default: {config.api_host})'
    )
    parser.add_argument(
        '--api-port', type=int, default=config.api_port,
        help=f'API server port (default: {config.api_port})'
    )
    parser.add_argument(
        '--log-level', default=config.log_level,
        help=f'Logging level (default: {config.log_level})'
    )
    parser.add_argument(
        '--log-file', default='nebula.log',
        help='Log file path (default: nebula.log)'
    )
    args = parser.parse_args()

    config.timeframe = args.timeframe
    if args.favorites is not None:
        config.favorites = parse_symbol_list(args.favorites)
    config.min_quote_volume = args.min_volume
    config.api_enabled = args.api or config.api_enabled
    config.api_host = args.api_host
    config.api_port = args.api_port
    config.log_level = args.log_level.upper()

    setup_logging(config.log_level, args.log_file)

    from nebula_stream.market_viewer import main as viewer_main

    try:
        asyncio.run(viewer_main(config))
    except KeyboardInterrupt:
        print("\nExiting...")
    except Exception as e:
        logging.getLogger(__name__).error("Viewer crashed: %s", e, exc_info=True)
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
