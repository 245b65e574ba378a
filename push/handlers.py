"""
Push protocol handlers, independent of the transport.

    connect                          → connection persisted
    {"channel": "<channel>"}         → subscribe (also {"action": "subscribe", ...})
    {"action": "pnl", ...}           → {topic: "pnl:<trader>", data: positions}
    {"action": "trade", "market"...} → {topic: "trade:<market>", data: trades,
                                         type: "history"}
    disconnect                       → connection removed
"""

import json
import logging

from ledger.api import ApiResponse
from ledger.errors import LedgerError, NotFound, ValidationError
from ledger.models import Mode, parse_mode


logger = logging.getLogger(__name__)

DEFAULT_TRADE_LIMIT = 50
MAX_TRADE_LIMIT = 500


def _ok(**body):
    return ApiResponse(200, {"ok": True, **body})


class PushHandlers:

    def __init__(self, registry, client, gateway, trade_limit=DEFAULT_TRADE_LIMIT):
        self.registry = registry
        self.client = client
        self.gateway = gateway
        self.trade_limit = trade_limit

    def on_connect(self, connection_id, trader_id=None):
        self.registry.connect(connection_id, trader_id)
        return _ok(connectionId=connection_id)

    def on_disconnect(self, connection_id):
        self.registry.disconnect(connection_id)
        return _ok()

    def on_message(self, connection_id, message):
        """Handle one client control message (dict or JSON text)."""
        try:
            if isinstance(message, (str, bytes)):
                try:
                    message = json.loads(message)
                except ValueError:
                    raise ValidationError("Message is not valid JSON") from None
            if not isinstance(message, dict):
                raise ValidationError("Message must be a JSON object")

            action = message.get("action")
            if action in (None, "subscribe") and "channel" in message:
                return self.subscribe(connection_id, message["channel"])
            if action == "pnl":
                return self.pnl(connection_id, message)
            if action == "trade":
                return self.trade(connection_id, message)
            return ApiResponse(200, {"ok": False, "msg": "unknown action"})
        except LedgerError as exc:
            return ApiResponse(exc.status, exc.to_body())

    def subscribe(self, connection_id, channel):
        self.registry.subscribe(connection_id, channel)
        return _ok(channel=channel)

    def pnl(self, connection_id, message):
        """Push the trader's positions straight back to the requester."""
        conn = self.registry.get(connection_id)
        if conn is None:
            raise NotFound(f"Unknown connection {connection_id}")
        trader_id = message.get("traderId") or conn.trader_id
        if not trader_id:
            raise ValidationError("Missing traderId")
        if not isinstance(trader_id, str):
            raise ValidationError(f"Invalid traderId: {trader_id!r}")
        mode = message.get("mode")
        mode = self._mode(mode) if mode else None
        positions = self.client.list_positions(trader_id, mode)
        self.gateway.post(connection_id, {
            "topic": f"pnl:{trader_id}",
            "data": [p.to_dict() for p in positions],
        })
        return _ok()

    def trade(self, connection_id, message):
        """Push a market's most recent trades straight back to the requester."""
        market = message.get("market")
        if not market:
            raise ValidationError("Missing market")
        if not isinstance(market, str):
            raise ValidationError(f"Invalid market: {market!r}")
        market = market.upper()
        mode = self._mode(message.get("mode") or Mode.REAL.value)
        limit = message.get("limit") or self.trade_limit
        try:
            limit = max(1, min(int(limit), MAX_TRADE_LIMIT))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid limit: {limit!r}") from None
        page = self.client.market_trades(market, mode, limit=limit)
        self.gateway.post(connection_id, {
            "topic": f"trade:{market}",
            "data": [t.to_dict() for t in page],
            "type": "history",
        })
        return _ok()

    @staticmethod
    def _mode(value):
        try:
            return parse_mode(value).value
        except ValueError:
            raise ValidationError(f"Invalid mode: {value!r}") from None
