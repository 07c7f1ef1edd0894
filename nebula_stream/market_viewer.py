#!/usr/bin/env python3
"""
Liquidity Nebula terminal viewer.

Renders the live ticker table with rich. The display loop reads the table
directly at its own frame rate (render path); the UI mirror only receives
throttled deltas and is shown in the status panel for comparison.
"""

import asyncio
import logging
import math
import signal
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from nebula_stream.config import NebulaConfig
from nebula_stream.market_state import MarketState
from nebula_stream.timeframes import is_native

logger = logging.getLogger(__name__)

REFRESH_PER_SECOND = 4
ROWS_PER_PANEL = 20


def fmt_price(value: float) -> str:
    if math.isnan(value):
        return "—"
    if value < 1:
        return f"{value:.6f}"
    if value < 100:
        return f"{value:,.4f}"
    return f"{value:,.2f}"


def fmt_volume(value: float) -> str:
    if math.isnan(value):
        return "—"
    for threshold, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if value >= threshold:
            return f"${value / threshold:.2f}{suffix}"
    return f"${value:.2f}"


def fmt_change(value: float, provisional: bool) -> str:
    if math.isnan(value):
        return "[dim]n/a[/]"
    if provisional:
        return "[dim]syncing[/]"
    style = "green" if value > 0 else "red" if value < 0 else "white"
    return f"[{style}]{value:+.2f}%[/]"


class MarketDisplay:
    """Terminal UI for the market state."""

    def __init__(self, market: MarketState):
        self.market = market
        self.start_time = time.time()

    def create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main", ratio=1),
            Layout(name="footer", size=3),
        )
        layout["main"].split_row(
            Layout(name="gainers", ratio=1),
            Layout(name="losers", ratio=1),
            Layout(name="side", ratio=1),
        )
        layout["side"].split_column(
            Layout(name="favorites", ratio=1),
            Layout(name="status", size=14),
        )
        return layout

    def generate_display(self) -> Layout:
        market = self.market
        layout = self.create_layout()

        runtime = time.time() - self.start_time
        header = Text()
        header.append(" LIQUIDITY NEBULA ", style="bold white on blue")
        header.append(f"  Window: {market.timeframe}", style="bold")
        header.append(f"  |  Symbols: {len(market.table)}", style="dim")
        header.append(f"  |  Runtime: {int(runtime // 60)}m {int(runtime % 60)}s", style="dim")
        header.append(f"  |  {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", style="dim")
        layout["header"].update(Panel(header, box=box.MINIMAL))

        layout["gainers"].update(self._ticker_panel(
            market.render_rows(limit=ROWS_PER_PANEL, sort="gainers"), "Top Gainers", "green"))
        layout["losers"].update(self._ticker_panel(
            market.render_rows(limit=ROWS_PER_PANEL, sort="losers"), "Top Losers", "red"))
        layout["favorites"].update(self._ticker_panel(
            market.render_rows(limit=ROWS_PER_PANEL, sort="favorites"), "Favorites", "yellow"))
        layout["status"].update(self._status_panel())

        ingest = market.ingestor.stats
        footer = (f"Messages: {ingest.messages:,}  |  Admitted: {ingest.admitted:,}  |  "
                  f"Press Ctrl+C to exit")
        layout["footer"].update(Panel(footer, box=box.MINIMAL))
        return layout

    def _ticker_panel(self, rows: List[Dict[str, Any]], title: str, border: str) -> Panel:
        table = Table(box=box.SIMPLE, show_header=True, padding=(0, 1))
        table.add_column("Symbol", style="bold")
        table.add_column("Price", justify="right")
        table.add_column("Change", justify="right")
        table.add_column("Volume", justify="right", style="dim")

        for row in rows:
            symbol = row["symbol"]
            if row["favorite"]:
                symbol = f"[yellow]★[/] {symbol}"
            table.add_row(
                symbol,
                fmt_price(row["price"]),
                fmt_change(row["change"], row["provisional"]),
                fmt_volume(row["volume"]),
            )

        if not rows:
            table.add_row("[dim]waiting for data…[/]", "", "", "")

        return Panel(table, title=f"[bold]{title}[/]", border_style=border)

    def _status_panel(self) -> Panel:
        stats = self.market.get_stats()
        stream = stats["stream"]
        baselines = stats["baselines"]
        ui = stats["ui"]
        ingest = stats["ingest"]

        table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
        table.add_column("Metric", style="dim")
        table.add_column("Value", justify="right")

        state_style = "green" if stream["state"] == "connected" else "yellow"
        last = stream["last_message"]
        age = time.time() - last if last > 0 else float("inf")
        age_style = "green" if age < 5 else "yellow" if age < 30 else "red"

        table.add_row("Stream", f"[{state_style}]{stream['state']}[/]")
        table.add_row("Last msg", f"[{age_style}]{age:.1f}s[/]" if last > 0 else "[red]never[/]")
        table.add_row("Reconnects", f"{stream['reconnects']}")
        table.add_row("Rejected (vol)", f"{ingest['rejected_volume']:,}")
        table.add_row("Rejected (bad)", f"{ingest['rejected_malformed']:,}")
        table.add_row("UI flushes", f"{ui['flushes']:,}")
        table.add_row("UI mirror", f"{ui['mirrored']:,}")
        coverage = f"{baselines['baselines']}/{stats['symbols']}"
        table.add_row("Baselines", coverage if not is_native(self.market.timeframe) else "[dim]native[/]")
        last_pass = baselines["last_pass"]
        if last_pass["requested"]:
            table.add_row("Last pass",
                          f"{last_pass['resolved']}/{last_pass['requested']} in {last_pass['duration_s']:.1f}s")

        return Panel(table, title="[bold]Status[/]", border_style="cyan")


async def main(config: Optional[NebulaConfig] = None) -> None:
    """Run the viewer until interrupted."""
    config = config or NebulaConfig.from_env()
    console = Console()

    market = MarketState(config)
    display = MarketDisplay(market)
    await market.start()

    api_thread = None
    if config.api_enabled:
        from nebula_stream.embedded_api import create_embedded_app, start_api_thread
        app = create_embedded_app(market)
        api_thread = start_api_thread(app, host=config.api_host, port=config.api_port)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))

    try:
        with Live(display.generate_display(), console=console,
                  refresh_per_second=REFRESH_PER_SECOND, screen=True) as live:
            while not shutdown_event.is_set():
                live.update(display.generate_display())
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=1 / REFRESH_PER_SECOND)
                except asyncio.TimeoutError:
                    pass
    finally:
        console.print("[yellow]Shutting down...[/]")
        await market.stop()
        await market.manager.close()

    if api_thread:
        console.print("[dim]API server thread will terminate automatically.[/]")
    console.print("[green]Goodbye![/]")
