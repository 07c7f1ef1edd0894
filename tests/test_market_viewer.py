"""Tests for the terminal viewer's formatting and layout."""

import math

from rich.console import Console
from rich.layout import Layout

from conftest import FakeConnector, FakeKlineSession, make_ticker
from nebula_stream.baseline_sync import BaselineFetcher
from nebula_stream.config import NebulaConfig
from nebula_stream.market_state import MarketState
from nebula_stream.market_viewer import MarketDisplay, fmt_change, fmt_price, fmt_volume
from nebula_stream.ws_connectors import StreamConnectionManager


def test_fmt_price() -> None:
    assert fmt_price(65000.5) == "65,000.50"
    assert fmt_price(12.3456789) == "12.3457"
    assert fmt_price(0.00012345) == "0.000123"
    assert fmt_price(math.nan) == "—"


def test_fmt_volume() -> None:
    assert fmt_volume(9_500_000_000) == "$9.50B"
    assert fmt_volume(1_250_000) == "$1.25M"
    assert fmt_volume(2_000) == "$2.00K"
    assert fmt_volume(12) == "$12.00"


def test_fmt_change() -> None:
    assert fmt_change(1.5625, False) == "[green]+1.56%[/]"
    assert fmt_change(-2.0, False) == "[red]-2.00%[/]"
    assert fmt_change(0.0, True) == "[dim]syncing[/]"
    assert fmt_change(math.nan, False) == "[dim]n/a[/]"


def test_display_renders_market() -> None:
    """A full frame renders without a live terminal."""
    manager = StreamConnectionManager("wss://test/ws", connect=FakeConnector())
    fetcher = BaselineFetcher(session=FakeKlineSession())
    market = MarketState(NebulaConfig(favorites=["ETHUSDT"]), manager=manager, fetcher=fetcher)
    market.ingestor.handle_message([
        make_ticker("BTCUSDT", "65000", "9000000000", "2.3"),
        make_ticker("ETHUSDT", "3000", "4000000000", "-1.5"),
    ])

    layout = MarketDisplay(market).generate_display()
    assert isinstance(layout, Layout)

    console = Console(record=True, width=160, height=40)
    console.print(layout)
    text = console.export_text()
    assert "LIQUIDITY NEBULA" in text
    assert "BTCUSDT" in text
    assert "Top Gainers" in text
