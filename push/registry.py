"""
ConnectionRegistry: live push connections and their channel subscription,
stored in the ledger database and looked up through the channel index.

Channel grammar:
    market.<symbol>[.<MODE>]     e.g. market.BTC-PERP, market.BTC-PERP.REAL
    trader.<id>[.<MODE>]         e.g. trader.0xabc.PAPER
"""

import logging

from ledger.base import now_ms
from ledger.errors import NotFound, ValidationError
from ledger.models import Connection, Mode
from ledger.state_machine import ConnectionLifecycle


logger = logging.getLogger(__name__)

CONNECTION_TTL_MS = 24 * 3_600_000
CHANNEL_KINDS = ("market", "trader")


class InvalidChannel(ValidationError):
    """Raised when a subscribe request names a malformed channel."""


def parse_channel(channel):
    """Split a channel into (kind, identifier, mode-or-None), validating it."""
    if not isinstance(channel, str):
        raise InvalidChannel(f"Channel must be a string, got {channel!r}")
    parts = channel.split(".")
    if len(parts) not in (2, 3):
        raise InvalidChannel(f"Invalid channel: {channel!r}")
    kind, ident = parts[0], parts[1]
    mode = parts[2] if len(parts) == 3 else None
    if kind not in CHANNEL_KINDS or not ident:
        raise InvalidChannel(f"Invalid channel: {channel!r}")
    if mode is not None and mode not in (Mode.REAL.value, Mode.PAPER.value):
        raise InvalidChannel(f"Invalid channel mode in {channel!r}")
    return kind, ident, mode


def connection_state(conn):
    return "SUBSCRIBED" if conn.channel else "CONNECTED"


class ConnectionRegistry:
    """
    Connected → Subscribed → Disconnected, per ConnectionLifecycle.
    Disconnection deletes the row.
    """

    def __init__(self, client, ttl_ms=CONNECTION_TTL_MS):
        self.client = client
        self.ttl_ms = ttl_ms

    def connect(self, connection_id, trader_id=None, now=None):
        now = now or now_ms()
        conn = Connection(connection_id=connection_id, trader_id=trader_id,
                          channel=None, connected_at=now,
                          expires_at=now + self.ttl_ms)
        with self.client.transaction() as cur:
            cur.execute(
                """
                INSERT INTO connections
                    (connection_id, trader_id, channel, connected_at, expires_at)
                VALUES (%(connection_id)s, %(trader_id)s, %(channel)s,
                        %(connected_at)s, %(expires_at)s)
                ON CONFLICT (connection_id) DO UPDATE SET
                    trader_id = EXCLUDED.trader_id,
                    channel = NULL,
                    connected_at = EXCLUDED.connected_at,
                    expires_at = EXCLUDED.expires_at
                """,
                conn.to_dict(),
            )
        logger.debug("Connected %s", connection_id)
        return conn

    def get(self, connection_id):
        with self.client.transaction() as cur:
            cur.execute(
                "SELECT * FROM connections WHERE connection_id = %s",
                (connection_id,),
            )
            row = cur.fetchone()
            return Connection.from_row(row) if row else None

    def subscribe(self, connection_id, channel):
        """Store *channel* on the connection, replacing any previous one."""
        parse_channel(channel)
        conn = self.get(connection_id)
        if conn is None:
            raise NotFound(f"Unknown connection {connection_id}")
        ConnectionLifecycle.validate_transition(connection_state(conn), "SUBSCRIBED")
        with self.client.transaction() as cur:
            cur.execute(
                "UPDATE connections SET channel = %s WHERE connection_id = %s",
                (channel, connection_id),
            )
        conn.channel = channel
        logger.debug("%s subscribed to %s", connection_id, channel)
        return conn

    def disconnect(self, connection_id):
        """Remove the connection. Returns False if it was already gone."""
        with self.client.transaction() as cur:
            cur.execute(
                "DELETE FROM connections WHERE connection_id = %s "
                "RETURNING channel",
                (connection_id,),
            )
            row = cur.fetchone()
        if row is None:
            return False
        logger.debug("Disconnected %s", connection_id)
        return True

    def connections_for(self, channel, now=None):
        """Unexpired connections whose stored channel equals *channel*."""
        now = now or now_ms()
        with self.client.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM connections
                WHERE channel = %s AND expires_at > %s
                ORDER BY connection_id
                """,
                (channel, now),
            )
            return [Connection.from_row(r) for r in cur.fetchall()]

    def purge_expired(self, now=None):
        with self.client.transaction() as cur:
            cur.execute("DELETE FROM connections WHERE expires_at <= %s",
                        (now or now_ms(),))
            return cur.rowcount
