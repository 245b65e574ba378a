"""
FanOutDispatcher: broadcasts one event to every connection subscribed to
its channel.

Pushes run concurrently on a thread pool; a connection that reports
GoneError is deleted from the registry, any other push failure is logged
and does not affect the rest. TradeBroadcastSink feeds new executions
from the trade change feed into the same fan-out.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from ledger.errors import ValidationError
from ledger.models import Mode
from push.gateway import GoneError
from streams.trades import TradeSink


logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    channel: str
    delivered: List[str] = field(default_factory=list)
    gone: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def mode_channels(kind, ident, mode):
    return [f"{kind}.{ident}.{mode}", f"{kind}.{ident}"]


def channels_for_update(payload):
    """
    Target channels for an update event, most specific first:
    market.<market>.<mode> and market.<market> when it names a market,
    else trader.<traderId>.<mode> and trader.<traderId>. A channel without
    a mode suffix follows both REAL and PAPER.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Update payload must be an object")
    mode = payload.get("mode")
    if mode not in (Mode.REAL.value, Mode.PAPER.value):
        raise ValidationError(f"Update payload has invalid mode {mode!r}")
    if not payload.get("type"):
        raise ValidationError("Update payload is missing type")
    if payload.get("market"):
        return mode_channels("market", payload["market"], mode)
    if payload.get("traderId"):
        return mode_channels("trader", payload["traderId"], mode)
    raise ValidationError("Update payload has neither market nor traderId")


class FanOutDispatcher:

    def __init__(self, registry, gateway, max_workers=16):
        self.registry = registry
        self.gateway = gateway
        self._pool = ThreadPoolExecutor(max_workers=max_workers,
                                        thread_name_prefix="fanout")

    def broadcast(self, channel, data):
        """Push {topic: channel, data} to every subscriber of *channel*."""
        result = DispatchResult(channel=channel)
        connections = self.registry.connections_for(channel)
        if not connections:
            return result
        envelope = {"topic": channel, "data": data}
        futures = [
            (c.connection_id, self._pool.submit(self.gateway.post, c.connection_id, envelope))
            for c in connections
        ]
        for connection_id, future in futures:
            try:
                future.result()
            except GoneError:
                self.registry.disconnect(connection_id)
                result.gone.append(connection_id)
                logger.info("Removed stale connection %s", connection_id)
            except Exception:
                result.failed.append(connection_id)
                logger.exception("Push to %s on %s failed", connection_id, channel)
            else:
                result.delivered.append(connection_id)
        return result

    def dispatch_update(self, payload):
        """
        Broadcast a ledger update event to its derived channels. Returns one
        DispatchResult per channel; invalid payloads are logged and dropped
        (None).
        """
        try:
            channels = channels_for_update(payload)
        except ValidationError as exc:
            logger.warning("Dropping update event: %s (%r)", exc, payload)
            return None
        return [self.broadcast(channel, payload) for channel in channels]

    def attach(self, event_bus):
        """Route every update event published on the bus."""
        event_bus.on_all(self.dispatch_update)
        return self

    def close(self):
        self._pool.shutdown(wait=True)


class TradeBroadcastSink(TradeSink):
    """
    Pushes each new execution to market.<market>.<mode> and market.<market>.

    Plugs into TradeEventRouter, so trades reach subscribers already
    normalised. Zero-quantity funding markers are left out; their rate
    goes out as a fundingRateUpdate.
    """

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher

    def send(self, message):
        if Decimal(str(message["qty"])) == 0:
            return
        data = dict(message, type="trade")
        for channel in mode_channels("market", message["market"], message["mode"]):
            self.dispatcher.broadcast(channel, data)
