"""Tests for the latest-state ticker table."""

import threading

from nebula_stream.ticker_table import TickerSnapshot, TickerTable


def snap(symbol="BTCUSDT", price=100.0, received_at=1000.0, **kwargs) -> TickerSnapshot:
    return TickerSnapshot(
        symbol=symbol,
        price=price,
        volume=kwargs.pop("volume", 2_000_000.0),
        native_change_percent=kwargs.pop("native", 1.0),
        display_change_percent=kwargs.pop("display", 1.0),
        timeframe=kwargs.pop("timeframe", "24h"),
        received_at=received_at,
        **kwargs,
    )


def test_upsert_overwrites_by_symbol() -> None:
    """Later writes replace earlier ones; there is no history."""
    table = TickerTable()
    table.upsert(snap(price=100.0))
    table.upsert(snap(price=101.0))
    assert len(table) == 1
    assert table.get("BTCUSDT").price == 101.0


def test_unknown_symbol_is_absent() -> None:
    table = TickerTable()
    assert table.get("NOPEUSDT") is None
    assert "NOPEUSDT" not in table
    assert table.age_of("NOPEUSDT") is None


def test_symbols_in_first_seen_order() -> None:
    table = TickerTable()
    table.upsert_many([snap("ETHUSDT"), snap("BTCUSDT"), snap("ETHUSDT", price=2.0)])
    assert table.symbols() == ["ETHUSDT", "BTCUSDT"]


def test_snapshots_are_copies() -> None:
    """Mutating a returned snapshot does not touch the table."""
    table = TickerTable()
    table.upsert(snap(price=100.0))
    copy = table.snapshots()[0]
    copy.price = 1.0
    assert table.get("BTCUSDT").price == 100.0


def test_update_all_mutates_in_place() -> None:
    table = TickerTable()
    table.upsert_many([snap("BTCUSDT"), snap("ETHUSDT")])

    def zero(s: TickerSnapshot) -> None:
        s.display_change_percent = 0.0

    assert table.update_all(zero) == 2
    assert all(s.display_change_percent == 0.0 for s in table.snapshots())


def test_age_and_staleness() -> None:
    table = TickerTable()
    table.upsert(snap("BTCUSDT", received_at=1000.0))
    table.upsert(snap("ETHUSDT", received_at=1090.0))

    assert table.age_of("BTCUSDT", now=1100.0) == 100.0
    assert table.stale_symbols(60.0, now=1100.0) == ["BTCUSDT"]


def test_to_dict_reports_display_change() -> None:
    s = snap(native=5.0, display=1.25, timeframe="1h", provisional=False)
    payload = s.to_dict()
    assert payload["priceChangePercent"] == 1.25
    assert payload["nativeChangePercent"] == 5.0
    assert payload["timeframe"] == "1h"
    assert s.price_change_percent == 1.25


def test_concurrent_readers_and_writer() -> None:
    """A reader thread can iterate while the writer keeps inserting."""
    table = TickerTable()
    errors = []

    def reader() -> None:
        try:
            for _ in range(200):
                table.snapshots()
                table.symbols()
        except Exception as e:  # pragma: no cover - failure path
            errors.append(e)

    thread = threading.Thread(target=reader)
    thread.start()
    for i in range(500):
        table.upsert(snap(f"S{i}USDT"))
    thread.join()

    assert errors == []
    assert len(table) == 500
