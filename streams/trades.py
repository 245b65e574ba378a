"""
TradeEventRouter: forwards newly inserted trades to downstream aggregation.

Fed by the trade change feed (TradeFeedListener). Only INSERTs are routed.
market/mode come from the row, or from its MARKET#<symbol>#<mode> key when
the columns are empty. Records missing a required field are logged and
dropped.
"""

import logging
from abc import ABC, abstractmethod

from ledger.models import Mode


logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("market", "mode", "price", "qty", "timestamp")


class TradeSink(ABC):
    """Downstream consumer of normalised trade messages."""

    @abstractmethod
    def send(self, message: dict) -> None:
        ...


class QueueTableSink(TradeSink):
    """Appends each message to the ledger's aggregation_queue table."""

    def __init__(self, client):
        self.client = client

    def send(self, message):
        self.client.enqueue_aggregation(message)


def split_pk(pk):
    """MARKET#<symbol>#<mode> → (symbol, mode); (None, None) if malformed."""
    parts = (pk or "").split("#")
    if len(parts) != 3 or parts[0] != "MARKET" or not parts[1]:
        return None, None
    return parts[1], parts[2]


class TradeEventRouter:

    def __init__(self, sink):
        self.sink = sink
        self.forwarded = 0
        self.dropped = 0

    def attach(self, event_bus, topic="trades"):
        event_bus.on(topic, self.handle)
        return self

    def normalize(self, row):
        """Build the outbound message, or None if a required field is missing."""
        market, mode = row.get("market"), row.get("mode")
        if not market or not mode:
            pk_market, pk_mode = split_pk(row.get("pk"))
            market = market or pk_market
            mode = mode or pk_mode
        if mode not in (Mode.REAL.value, Mode.PAPER.value):
            mode = None

        message = {
            "market": market,
            "mode": mode,
            "price": row.get("price"),
            "qty": row.get("qty"),
            "timestamp": row.get("timestamp"),
            "tradeId": row.get("trade_id"),
            "side": row.get("side"),
            "meta": row.get("meta"),
        }
        missing = [f for f in REQUIRED_FIELDS if message[f] is None or message[f] == ""]
        if missing:
            logger.warning("Dropping trade %s (seq %s): missing %s",
                           row.get("trade_id"), row.get("seq"), ", ".join(missing))
            return None
        return message

    def handle(self, record):
        """Route one ChangeRecord. Returns the forwarded message or None."""
        if record.op != "INSERT":
            return None
        message = self.normalize(record.row)
        if message is None:
            self.dropped += 1
            return None
        self.sink.send(message)
        self.forwarded += 1
        return message
