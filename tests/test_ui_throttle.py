"""Tests for the UI fan-out throttle and the UI state mirror."""

from nebula_stream.ticker_table import TickerSnapshot
from nebula_stream.ui_throttle import UIFanoutThrottle, UIStateMirror


def snap(symbol: str, price: float) -> TickerSnapshot:
    return TickerSnapshot(symbol, price, 2_000_000.0, 1.0, 1.0, "24h")


class TestThrottle:
    def test_first_offer_flushes_immediately(self, clock):
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []
        throttle.subscribe(batches.append)

        assert throttle.offer([snap("BTCUSDT", 1.0)]) is True
        assert len(batches) == 1

    def test_offers_within_interval_are_held(self, clock):
        """Nothing is published until more than one interval has passed."""
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []
        throttle.subscribe(batches.append)
        throttle.offer([snap("BTCUSDT", 1.0)])

        clock.advance(0.5)
        assert throttle.offer([snap("ETHUSDT", 2.0)]) is False
        clock.advance(0.5)
        # Exactly one interval is not enough
        assert throttle.offer([snap("SOLUSDT", 3.0)]) is False
        assert len(batches) == 1
        assert throttle.pending_count == 2

        clock.advance(0.01)
        assert throttle.offer([]) is True
        assert len(batches) == 2
        assert {s.symbol for s in batches[1]} == {"ETHUSDT", "SOLUSDT"}

    def test_pending_keeps_latest_per_symbol(self, clock):
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []
        throttle.subscribe(batches.append)
        throttle.offer([snap("BTCUSDT", 1.0)])

        clock.advance(0.2)
        throttle.offer([snap("BTCUSDT", 2.0)])
        clock.advance(0.2)
        throttle.offer([snap("BTCUSDT", 3.0)])
        clock.advance(1.0)
        throttle.offer([])

        assert len(batches[1]) == 1
        assert batches[1][0].price == 3.0

    def test_flush_is_a_delta(self, clock):
        """Symbols untouched since the last flush are not re-sent."""
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []
        throttle.subscribe(batches.append)
        throttle.offer([snap("BTCUSDT", 1.0), snap("ETHUSDT", 2.0)])

        clock.advance(1.5)
        throttle.offer([snap("ETHUSDT", 2.5)])

        assert [s.symbol for s in batches[1]] == ["ETHUSDT"]

    def test_forced_flush(self, clock):
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []
        throttle.subscribe(batches.append)
        throttle.offer([snap("BTCUSDT", 1.0)])
        throttle.offer([snap("ETHUSDT", 2.0)])

        assert throttle.flush() is True
        assert throttle.flush() is False
        assert len(batches) == 2
        assert throttle.flush_count == 2

    def test_failing_subscriber_isolated(self, clock):
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []

        def broken(batch):
            raise RuntimeError("render failed")

        throttle.subscribe(broken)
        throttle.subscribe(batches.append)
        throttle.offer([snap("BTCUSDT", 1.0)])
        assert len(batches) == 1

    def test_unsubscribe(self, clock):
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        batches = []
        unsubscribe = throttle.subscribe(batches.append)
        unsubscribe()
        throttle.offer([snap("BTCUSDT", 1.0)])
        assert batches == []


class TestMirror:
    def test_merges_by_key(self, clock):
        """The mirror keeps symbols not present in the latest delta."""
        throttle = UIFanoutThrottle(interval=1.0, clock=clock)
        mirror = UIStateMirror()
        throttle.subscribe(mirror.apply)

        throttle.offer([snap("BTCUSDT", 1.0), snap("ETHUSDT", 2.0)])
        clock.advance(1.5)
        throttle.offer([snap("ETHUSDT", 2.5)])

        assert len(mirror) == 2
        assert mirror.get("BTCUSDT").price == 1.0
        assert mirror.get("ETHUSDT").price == 2.5
        assert mirror.updates == 2
        assert set(mirror.tickers()) == {"BTCUSDT", "ETHUSDT"}
