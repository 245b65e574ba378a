"""
Tests for the trade change feed and the aggregation router.

Covers:
- EventBus topic/catch-all delivery and callback isolation
- TradeEventRouter: INSERT only, market/mode from the key, drops
- TradeFeedListener: catch-up from a checkpoint, live delivery, ordering,
  a trade that commits after a later one is still delivered
"""

import threading
import time

import pytest

from ledger.models import Trade
from ledger.subscriptions import ChangeRecord, EventBus, TradeFeedListener
from streams.trades import QueueTableSink, TradeEventRouter, TradeSink, split_pk


T0 = 1_700_000_040_000


class ListSink(TradeSink):

    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)


def _row(**overrides):
    row = {"seq": 1, "pk": "MARKET#BTC-PERP#REAL", "sk": f"TS#{T0}#t1",
           "trade_id": "t1", "market": "BTC-PERP", "mode": "REAL",
           "price": "100", "qty": "1", "side": "BUY", "timestamp": T0,
           "meta": None}
    row.update(overrides)
    return row


def _wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while not predicate() and time.time() < deadline:
        time.sleep(0.05)
    return predicate()


# ── EventBus ─────────────────────────────────────────────────────────────────

class TestEventBus:

    def test_topic_and_catch_all(self):
        bus = EventBus()
        seen_topic, seen_all = [], []
        bus.on("trades", seen_topic.append)
        bus.on_all(seen_all.append)
        bus.emit("trades", 1)
        bus.emit("other", 2)
        assert seen_topic == [1]
        assert seen_all == [1, 2]

    def test_failing_callback_isolated(self):
        bus = EventBus()
        seen = []

        def broken(_):
            raise RuntimeError("boom")

        bus.on("t", broken)
        bus.on("t", seen.append)
        bus.emit("t", "x")
        assert seen == ["x"]

    def test_off(self):
        bus = EventBus()
        seen = []
        bus.on("t", seen.append)
        bus.off("t", seen.append)
        bus.emit("t", 1)
        assert seen == []


# ── Router ───────────────────────────────────────────────────────────────────

class TestTradeEventRouter:

    def test_forwards_insert(self):
        sink = ListSink()
        router = TradeEventRouter(sink)
        message = router.handle(ChangeRecord("INSERT", "trades", 1, _row()))
        assert message["market"] == "BTC-PERP"
        assert message["tradeId"] == "t1"
        assert sink.messages == [message]

    def test_ignores_non_insert(self):
        sink = ListSink()
        router = TradeEventRouter(sink)
        assert router.handle(ChangeRecord("UPDATE", "trades", 1, _row())) is None
        assert router.handle(ChangeRecord("DELETE", "trades", 1, _row())) is None
        assert sink.messages == []

    def test_market_and_mode_from_key(self):
        sink = ListSink()
        router = TradeEventRouter(sink)
        router.handle(ChangeRecord("INSERT", "trades", 1,
                                   _row(market=None, mode="", pk="MARKET#ETH-PERP#PAPER")))
        assert (sink.messages[0]["market"], sink.messages[0]["mode"]) == ("ETH-PERP", "PAPER")

    @pytest.mark.parametrize("overrides", [
        {"market": None, "pk": "garbage"},
        {"mode": "LIVE"},
        {"price": None},
        {"timestamp": None},
    ])
    def test_drops_incomplete(self, overrides):
        sink = ListSink()
        router = TradeEventRouter(sink)
        assert router.handle(ChangeRecord("INSERT", "trades", 1, _row(**overrides))) is None
        assert sink.messages == []
        assert router.dropped == 1

    def test_split_pk(self):
        assert split_pk("MARKET#BTC-PERP#REAL") == ("BTC-PERP", "REAL")
        assert split_pk("TRADER#0xa") == (None, None)
        assert split_pk(None) == (None, None)


# ── Change feed ──────────────────────────────────────────────────────────────

class TestTradeFeed:

    def _record(self, client, i, market="BTC-PERP"):
        client.record_trade(Trade(trade_id=f"t{i}", market=market, mode="REAL",
                                  price="100", qty="1", timestamp=T0 + i))

    def test_catch_up_and_live_into_queue(self, server, client):
        self._record(client, 1)
        self._record(client, 2)

        bus = EventBus()
        TradeEventRouter(QueueTableSink(client)).attach(bus)
        feed = TradeFeedListener.from_server(bus, client, server,
                                             subscriber_id="test:router",
                                             from_beginning=True).start()
        try:
            assert len(client.aggregation_messages()) == 2
            self._record(client, 3, market="ETH-PERP")
            assert _wait_for(lambda: len(client.aggregation_messages()) == 3)
        finally:
            feed.stop()

        bodies = [m["body"] for m in client.aggregation_messages()]
        assert [b["tradeId"] for b in bodies] == ["t1", "t2", "t3"]
        assert bodies[2]["market"] == "ETH-PERP"
        assert client.load_checkpoint("test:router") == feed.last_seq

    def test_restart_resumes_from_checkpoint(self, server, client):
        bus = EventBus()
        seen = []
        bus.on("trades", lambda rec: seen.append(rec.row["trade_id"]))

        self._record(client, 1)
        feed = TradeFeedListener.from_server(bus, client, server,
                                             subscriber_id="test:resume",
                                             from_beginning=True).start()
        feed.stop()
        self._record(client, 2)                 # missed while down
        self._record(client, 3)

        feed = TradeFeedListener.from_server(bus, client, server,
                                             subscriber_id="test:resume").start()
        feed.stop()
        assert seen == ["t1", "t2", "t3"]

    def test_without_checkpoint_starts_at_tail(self, server, client):
        self._record(client, 1)
        bus = EventBus()
        seen = []
        bus.on("trades", seen.append)
        feed = TradeFeedListener.from_server(bus, client, server).start()
        try:
            self._record(client, 2)
            assert _wait_for(lambda: len(seen) == 1)
        finally:
            feed.stop()
        assert seen[0].row["trade_id"] == "t2"
        assert seen[0].seq > 0

    def test_small_batches_drain_fully(self, server, client):
        for i in range(7):
            self._record(client, i)
        bus = EventBus()
        seen = []
        bus.on("trades", lambda rec: seen.append(rec.seq))
        feed = TradeFeedListener.from_server(bus, client, server, from_beginning=True,
                                             batch_size=3).start()
        feed.stop()
        assert len(seen) == 7
        assert seen == sorted(seen)

    def test_trade_committing_late_is_delivered(self, server, client):
        bus = EventBus()
        seen = []
        bus.on("trades", lambda rec: seen.append(rec.row["trade_id"]))
        feed = TradeFeedListener.from_server(bus, client, server,
                                             subscriber_id="test:late",
                                             from_beginning=True).start()
        inserted, release = threading.Event(), threading.Event()

        def slow_writer():
            with client.transaction() as cur:
                client.append_trade(cur, Trade(trade_id="A", market="BTC-PERP",
                                               mode="REAL", price="100", qty="1",
                                               timestamp=T0 + 1))
                inserted.set()
                release.wait(5)

        def fast_writer():
            client.record_trade(Trade(trade_id="B", market="BTC-PERP", mode="REAL",
                                      price="101", qty="1", timestamp=T0 + 2))

        slow = threading.Thread(target=slow_writer)
        fast = threading.Thread(target=fast_writer)
        try:
            slow.start()
            assert inserted.wait(5)
            fast.start()
            time.sleep(0.3)
            assert seen == []               # B waits for A to commit
        finally:
            release.set()
            for writer in (slow, fast):
                if writer.ident is not None:
                    writer.join(5)
        try:
            assert _wait_for(lambda: len(seen) == 2)
        finally:
            feed.stop()
        assert seen == ["A", "B"]
        assert client.load_checkpoint("test:late") == feed.last_seq
