"""
LedgerClient: the persistence boundary for all financial state.

Balance mutations are additive deltas (balance = balance + delta), never
blind overwrites, so the query API, the chain listener and the scheduled
jobs can write concurrently without mutual exclusion. A delta may carry an
idempotency key; the key is recorded in balance_changes in the same
transaction and a repeated key is a no-op.

Multi-row effects (settle a position and credit its PnL, expire an order
and pay out its contract) run as one transaction, conditioned on markers
(last_settled_epoch, settled_at) so a retry cannot apply them twice.
"""

import logging
from contextlib import contextmanager

import psycopg2
import psycopg2.extras
import psycopg2.pool

from ledger.base import dumps, now_ms, to_decimal
from ledger.cursor import Page, decode_cursor, encode_cursor
from ledger.models import (
    Balance, DailyStats, Market, Order, OrderStatus, Position, PriceSnapshot,
    Trade, market_pk, stats_key,
)
from ledger.schema import UPDATES_CHANNEL
from ledger.state_machine import OrderLifecycle


logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
INTRADAY_TTL_MS = 48 * 3_600_000
# pg_advisory_xact_lock key serialising trade inserts (seq order == commit order)
TRADE_FEED_LOCK = 0x7472616465


class LedgerClient:
    """
    Connection-pooled access to the ledger tables.

    Safe to share between threads: every call checks a connection out of a
    psycopg2 ThreadedConnectionPool for the duration of one transaction.

    Usage:
        client = LedgerClient(**server.dsn())
        client.add_balance("0xabc", "USDC", "REAL", Decimal("25"),
                           idempotency_key="vault:0xtx:Deposited")
        client.get_balance("0xabc", "USDC", "REAL")
        client.close()
    """

    def __init__(self, host="localhost", port=5432, dbname="postgres",
                 user="ledger_app", password=None, minconn=1, maxconn=16):
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn, maxconn,
            host=host, port=port, dbname=dbname, user=user, password=password,
        )

    @classmethod
    def from_server(cls, server, **kwargs):
        """Connect as the application role of a running LedgerServer."""
        return cls(**server.dsn(), **kwargs)

    @contextmanager
    def transaction(self):
        """Yield a dict cursor inside one transaction; commit or roll back."""
        conn = self._pool.getconn()
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    # ── Balances ──────────────────────────────────────────────────────

    def add_balance(self, trader_id, asset, mode, delta,
                    idempotency_key=None, reason=None):
        """
        Apply an additive balance delta. Creates the row on first credit.

        Returns True if the delta was applied, False if idempotency_key had
        already been recorded.
        """
        with self.transaction() as cur:
            return self._add_balance(
                cur, trader_id, asset, mode, delta, idempotency_key, reason,
            )

    def add_pending(self, trader_id, asset, mode, delta):
        """Additive update of the pending (in-flight) amount."""
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO balances (trader_id, asset, mode, pending, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (trader_id, asset, mode) DO UPDATE
                    SET pending = balances.pending + EXCLUDED.pending,
                        updated_at = EXCLUDED.updated_at
                """,
                (trader_id, asset.upper(), _v(mode), to_decimal(delta), now_ms()),
            )

    def get_balance(self, trader_id, asset, mode):
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM balances
                WHERE trader_id = %s AND asset = %s AND mode = %s
                """,
                (trader_id, asset.upper(), _v(mode)),
            )
            row = cur.fetchone()
            return Balance.from_row(row) if row else None

    def list_balances(self, trader_id, mode):
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM balances
                WHERE trader_id = %s AND mode = %s
                ORDER BY asset
                """,
                (trader_id, _v(mode)),
            )
            return [Balance.from_row(r) for r in cur.fetchall()]

    def balance_change(self, idempotency_key):
        """Return the recorded change for a key, or None."""
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM balance_changes WHERE idempotency_key = %s",
                (idempotency_key,),
            )
            return cur.fetchone()

    def _add_balance(self, cur, trader_id, asset, mode, delta,
                     idempotency_key=None, reason=None):
        delta = to_decimal(delta)
        ts = now_ms()
        if idempotency_key is not None:
            cur.execute(
                """
                INSERT INTO balance_changes
                    (idempotency_key, trader_id, asset, mode, delta, reason, applied_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING idempotency_key
                """,
                (idempotency_key, trader_id, asset.upper(), _v(mode), delta,
                 reason, ts),
            )
            if cur.fetchone() is None:
                logger.info("Balance change %s already applied, skipping",
                            idempotency_key)
                return False

        cur.execute(
            """
            INSERT INTO balances (trader_id, asset, mode, balance, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (trader_id, asset, mode) DO UPDATE
                SET balance = balances.balance + EXCLUDED.balance,
                    updated_at = EXCLUDED.updated_at
            """,
            (trader_id, asset.upper(), _v(mode), delta, ts),
        )
        return True

    # ── Positions ─────────────────────────────────────────────────────

    def put_position(self, position):
        """Insert or replace a position row (written by trade execution)."""
        position.updated_at = position.updated_at or now_ms()
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO positions
                    (trader_id, market, mode, size, avg_entry_price,
                     unrealized_pnl, realized_pnl, last_settled_epoch, updated_at)
                VALUES (%(trader_id)s, %(market)s, %(mode)s, %(size)s,
                        %(avg_entry_price)s, %(unrealized_pnl)s, %(realized_pnl)s,
                        %(last_settled_epoch)s, %(updated_at)s)
                ON CONFLICT (trader_id, market, mode) DO UPDATE SET
                    size = EXCLUDED.size,
                    avg_entry_price = EXCLUDED.avg_entry_price,
                    unrealized_pnl = EXCLUDED.unrealized_pnl,
                    realized_pnl = EXCLUDED.realized_pnl,
                    last_settled_epoch = EXCLUDED.last_settled_epoch,
                    updated_at = EXCLUDED.updated_at
                """,
                position.to_dict(),
            )

    def get_position(self, trader_id, market, mode):
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM positions
                WHERE trader_id = %s AND market = %s AND mode = %s
                """,
                (trader_id, market, _v(mode)),
            )
            row = cur.fetchone()
            return Position.from_row(row) if row else None

    def list_positions(self, trader_id, mode=None):
        sql = "SELECT * FROM positions WHERE trader_id = %s"
        params = [trader_id]
        if mode is not None:
            sql += " AND mode = %s"
            params.append(_v(mode))
        sql += " ORDER BY market, mode"
        with self.transaction() as cur:
            cur.execute(sql, params)
            return [Position.from_row(r) for r in cur.fetchall()]

    def open_positions(self, market=None, mode=None):
        """Positions with non-zero size, optionally narrowed to a market/mode."""
        sql = "SELECT * FROM positions WHERE size <> 0"
        params = []
        if market is not None:
            sql += " AND market = %s"
            params.append(market)
        if mode is not None:
            sql += " AND mode = %s"
            params.append(_v(mode))
        sql += " ORDER BY market, mode, trader_id"
        with self.transaction() as cur:
            cur.execute(sql, params)
            return [Position.from_row(r) for r in cur.fetchall()]

    def settle_position(self, position, epoch, quote_asset):
        """
        Move a position's unrealized PnL into its balance and realized PnL.

        One transaction: the position update is conditioned on the pre-read
        unrealized_pnl and on last_settled_epoch < epoch; only if it matches
        is the balance credited (keyed by trader/market/mode/epoch).
        Returns the updated Position, or None if already settled or changed.
        """
        pnl = to_decimal(position.unrealized_pnl)
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE positions SET
                    unrealized_pnl = 0,
                    realized_pnl = realized_pnl + %(pnl)s,
                    last_settled_epoch = %(epoch)s,
                    updated_at = %(now)s
                WHERE trader_id = %(trader_id)s AND market = %(market)s
                  AND mode = %(mode)s
                  AND last_settled_epoch < %(epoch)s
                  AND unrealized_pnl = %(pnl)s
                RETURNING *
                """,
                {
                    "pnl": pnl, "epoch": epoch, "now": now_ms(),
                    "trader_id": position.trader_id, "market": position.market,
                    "mode": _v(position.mode),
                },
            )
            row = cur.fetchone()
            if row is None:
                return None
            self._add_balance(
                cur, position.trader_id, quote_asset, position.mode, pnl,
                idempotency_key=(
                    f"settle:{position.trader_id}:{position.market}:"
                    f"{_v(position.mode)}:{epoch}"
                ),
                reason="daily_settlement",
            )
            return Position.from_row(row)

    # ── Orders ────────────────────────────────────────────────────────

    def put_order(self, order):
        order.created_at = order.created_at or now_ms()
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO orders
                    (order_id, market, mode, trader_id, order_type, side, price,
                     qty, status, expiry_ts, settled_at, created_at)
                VALUES (%(order_id)s, %(market)s, %(mode)s, %(trader_id)s,
                        %(order_type)s, %(side)s, %(price)s, %(qty)s, %(status)s,
                        %(expiry_ts)s, %(settled_at)s, %(created_at)s)
                """,
                order.to_dict(),
            )

    def get_order(self, order_id):
        with self.transaction() as cur:
            cur.execute("SELECT * FROM orders WHERE order_id = %s", (order_id,))
            row = cur.fetchone()
            return Order.from_row(row) if row else None

    def list_orders(self, market, mode, status=None, limit=100, cursor=None):
        """Orders of one market/mode, oldest first, paginated."""
        sql = "SELECT * FROM orders WHERE market = %s AND mode = %s"
        params = [market, _v(mode)]
        if status is not None:
            sql += " AND status = %s"
            params.append(_v(status))
        key = decode_cursor(cursor, required=("created_at", "order_id"))
        if key:
            sql += " AND (created_at, order_id) > (%s, %s)"
            params += [key["created_at"], key["order_id"]]
        sql += " ORDER BY created_at, order_id LIMIT %s"
        params.append(limit)
        with self.transaction() as cur:
            cur.execute(sql, params)
            items = [Order.from_row(r) for r in cur.fetchall()]
        return _page(items, limit, lambda o: {
            "created_at": o.created_at, "order_id": o.order_id,
        })

    def expiring_orders(self, now, order_types=("OPTION", "FUTURE")):
        """OPEN, unsettled orders of the given types whose expiry has passed."""
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM orders
                WHERE status = 'OPEN'
                  AND order_type = ANY(%s)
                  AND expiry_ts < %s
                  AND settled_at IS NULL
                ORDER BY expiry_ts, order_id
                """,
                (list(order_types), now),
            )
            return [Order.from_row(r) for r in cur.fetchall()]

    def transition_order(self, order, new_status, now=None):
        """
        Move an order along OrderLifecycle. The update is conditioned on the
        current status, so a concurrent transition wins at most once.
        Returns True if this call performed the transition.
        """
        now = now or now_ms()
        OrderLifecycle.validate_transition(order.status, _v(new_status),
                                           obj=order, now=now)
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE orders SET status = %s
                WHERE order_id = %s AND status = %s
                RETURNING order_id
                """,
                (_v(new_status), order.order_id, order.status),
            )
            done = cur.fetchone() is not None
        if done:
            order.status = _v(new_status)
        return done

    def expire_order(self, order, payoff, quote_asset, now=None):
        """
        Settle and expire an order in one transaction.

        Flips OPEN → EXPIRED and stamps settled_at only if the order is still
        OPEN and unsettled, and applies the payoff as an additive delta keyed
        by order id. Returns True if this call settled the order.
        """
        now = now or now_ms()
        OrderLifecycle.validate_transition(order.status, OrderStatus.EXPIRED.value,
                                           obj=order, now=now)
        payoff = to_decimal(payoff)
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE orders SET status = 'EXPIRED', settled_at = %s
                WHERE order_id = %s AND status = 'OPEN' AND settled_at IS NULL
                RETURNING order_id
                """,
                (now, order.order_id),
            )
            if cur.fetchone() is None:
                return False
            if payoff != 0:
                self._add_balance(
                    cur, order.trader_id, quote_asset, order.mode, payoff,
                    idempotency_key=f"expiry:{order.order_id}",
                    reason="expiry_settlement",
                )
        order.status = OrderStatus.EXPIRED.value
        order.settled_at = now
        return True

    # ── Trades ────────────────────────────────────────────────────────

    def record_trade(self, trade):
        """
        Append a trade. Returns False if (pk, sk) already exists.

        Executions (qty > 0) also accumulate volume/fees/count into the
        current-minute intraday stats of the market and of GLOBAL.
        """
        with self.transaction() as cur:
            return self.append_trade(cur, trade)

    def append_trade(self, cur, trade):
        """
        record_trade() inside the caller's transaction.

        Takes the trade-feed advisory lock before the INSERT and holds it to
        commit: seq is drawn under the lock, so trades become visible in seq
        order and a change-feed reader never passes over a row that has yet
        to commit.
        """
        trade.timestamp = trade.timestamp or now_ms()
        if trade.pk is None:
            trade.pk = market_pk(trade.market, trade.mode)
        cur.execute("SELECT pg_advisory_xact_lock(%s)", (TRADE_FEED_LOCK,))
        cur.execute(
            """
            INSERT INTO trades
                (pk, sk, trade_id, market, mode, price, qty, side, timestamp,
                 buyer_id, seller_id, fee, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (pk, sk) DO NOTHING
            RETURNING seq
            """,
            (trade.pk, trade.sk, trade.trade_id, trade.market, trade.mode,
             trade.price, trade.qty, trade.side, trade.timestamp,
             trade.buyer_id, trade.seller_id, trade.fee,
             psycopg2.extras.Json(trade.meta, dumps=dumps)
             if trade.meta is not None else None),
        )
        row = cur.fetchone()
        if row is None:
            return False
        trade.seq = row["seq"]
        if trade.qty > 0 and trade.market and trade.mode:
            bucket = trade.timestamp // MINUTE_MS * MINUTE_MS
            for key in (stats_key(trade.market, trade.mode),
                        stats_key(None, trade.mode)):
                self._upsert_intraday(
                    cur, key, bucket,
                    volume=trade.price * trade.qty, fees=trade.fee, trades=1,
                )
        return True

    def latest_trade(self, market, mode, include_synthetic=False):
        """Most recent trade of a market; funding markers are skipped by default."""
        sql = "SELECT * FROM trades WHERE pk = %s"
        if not include_synthetic:
            sql += " AND qty > 0"
        sql += " ORDER BY timestamp DESC, seq DESC LIMIT 1"
        with self.transaction() as cur:
            cur.execute(sql, (market_pk(market, mode),))
            row = cur.fetchone()
            return Trade.from_row(row) if row else None

    def get_trade(self, market, mode, timestamp, trade_id):
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM trades WHERE pk = %s AND sk = %s",
                (market_pk(market, mode), f"TS#{timestamp}#{trade_id}"),
            )
            row = cur.fetchone()
            return Trade.from_row(row) if row else None

    def market_trades(self, market, mode, limit=50, cursor=None):
        """Trades of one market, newest first, paginated."""
        sql = "SELECT * FROM trades WHERE pk = %s"
        params = [market_pk(market, mode)]
        key = decode_cursor(cursor, required=("timestamp", "seq"))
        if key:
            sql += " AND (timestamp, seq) < (%s, %s)"
            params += [key["timestamp"], key["seq"]]
        sql += " ORDER BY timestamp DESC, seq DESC LIMIT %s"
        params.append(limit)
        with self.transaction() as cur:
            cur.execute(sql, params)
            items = [Trade.from_row(r) for r in cur.fetchall()]
        return _page(items, limit, _trade_key)

    def trader_trades(self, trader_id, mode, market=None, limit=50, cursor=None):
        """Trades where the trader was buyer or seller, newest first, paginated."""
        sql = """
            SELECT * FROM trades
            WHERE (buyer_id = %s OR seller_id = %s) AND mode = %s
        """
        params = [trader_id, trader_id, _v(mode)]
        if market is not None:
            sql += " AND market = %s"
            params.append(market)
        key = decode_cursor(cursor, required=("timestamp", "seq"))
        if key:
            sql += " AND (timestamp, seq) < (%s, %s)"
            params += [key["timestamp"], key["seq"]]
        sql += " ORDER BY timestamp DESC, seq DESC LIMIT %s"
        params.append(limit)
        with self.transaction() as cur:
            cur.execute(sql, params)
            items = [Trade.from_row(r) for r in cur.fetchall()]
        return _page(items, limit, _trade_key)

    def trades_in_window(self, market, mode, start_ms, end_ms):
        """Executions (qty > 0) in [start_ms, end_ms], oldest first."""
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM trades
                WHERE pk = %s AND qty > 0 AND timestamp BETWEEN %s AND %s
                ORDER BY timestamp, seq
                """,
                (market_pk(market, mode), start_ms, end_ms),
            )
            return [Trade.from_row(r) for r in cur.fetchall()]

    def max_trade_seq(self):
        with self.transaction() as cur:
            cur.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM trades")
            return cur.fetchone()["seq"]

    def trade_rows_since(self, seq, limit=500):
        """Raw trade rows with seq > *seq*, in insertion order (change feed)."""
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM trades WHERE seq > %s ORDER BY seq LIMIT %s",
                (seq, limit),
            )
            return [dict(r) for r in cur.fetchall()]

    # ── Markets ───────────────────────────────────────────────────────

    def put_market(self, market):
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO markets
                    (symbol, mode, type, status, tick_size, lot_size,
                     funding_interval_sec, expiry_ts, underlying, strike, option_type)
                VALUES (%(symbol)s, %(mode)s, %(type)s, %(status)s, %(tick_size)s,
                        %(lot_size)s, %(funding_interval_sec)s, %(expiry_ts)s,
                        %(underlying)s, %(strike)s, %(option_type)s)
                ON CONFLICT (symbol, mode) DO UPDATE SET
                    type = EXCLUDED.type,
                    status = EXCLUDED.status,
                    tick_size = EXCLUDED.tick_size,
                    lot_size = EXCLUDED.lot_size,
                    funding_interval_sec = EXCLUDED.funding_interval_sec,
                    expiry_ts = EXCLUDED.expiry_ts,
                    underlying = EXCLUDED.underlying,
                    strike = EXCLUDED.strike,
                    option_type = EXCLUDED.option_type
                """,
                market.to_dict(),
            )

    def get_market(self, symbol, mode):
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM markets WHERE symbol = %s AND mode = %s",
                (symbol, _v(mode)),
            )
            row = cur.fetchone()
            return Market.from_row(row) if row else None

    def list_markets(self, mode=None, status=None, market_type=None,
                     limit=100, cursor=None):
        """Markets ordered by (symbol, mode), filtered and paginated."""
        sql = "SELECT * FROM markets WHERE TRUE"
        params = []
        if mode is not None:
            sql += " AND mode = %s"
            params.append(_v(mode))
        if status is not None:
            sql += " AND status = %s"
            params.append(_v(status))
        if market_type is not None:
            sql += " AND type = %s"
            params.append(_v(market_type))
        key = decode_cursor(cursor, required=("symbol", "mode"))
        if key:
            sql += " AND (symbol, mode) > (%s, %s)"
            params += [key["symbol"], key["mode"]]
        sql += " ORDER BY symbol, mode LIMIT %s"
        params.append(limit)
        with self.transaction() as cur:
            cur.execute(sql, params)
            items = [Market.from_row(r) for r in cur.fetchall()]
        return _page(items, limit, lambda m: {"symbol": m.symbol, "mode": m.mode})

    def all_markets(self, **filters):
        """Drain list_markets() across every page."""
        markets, cursor = [], None
        while True:
            page = self.list_markets(cursor=cursor, limit=500, **filters)
            markets.extend(page.items)
            if page.next_cursor is None:
                return markets
            cursor = page.next_cursor

    # ── Price snapshots ───────────────────────────────────────────────

    def add_price_snapshot(self, snapshot):
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO price_snapshots (asset, ts, price, source, expire_at)
                VALUES (%(asset)s, %(ts)s, %(price)s, %(source)s, %(expire_at)s)
                ON CONFLICT (asset, ts) DO UPDATE SET
                    price = EXCLUDED.price,
                    source = EXCLUDED.source,
                    expire_at = EXCLUDED.expire_at
                """,
                snapshot.to_dict(),
            )

    def latest_price(self, asset):
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM price_snapshots
                WHERE asset = %s ORDER BY ts DESC LIMIT 1
                """,
                (asset.upper(),),
            )
            row = cur.fetchone()
            return PriceSnapshot.from_row(row) if row else None

    def price_snapshots(self, asset):
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM price_snapshots WHERE asset = %s ORDER BY ts",
                (asset.upper(),),
            )
            return [PriceSnapshot.from_row(r) for r in cur.fetchall()]

    def purge_expired_prices(self, now):
        """Delete snapshots past their retention deadline. Returns the count."""
        with self.transaction() as cur:
            cur.execute("DELETE FROM price_snapshots WHERE expire_at <= %s", (now,))
            return cur.rowcount

    # ── Stats ─────────────────────────────────────────────────────────

    def upsert_intraday(self, market_key, bucket_ts, **fields):
        """
        Accumulate into an intraday stats row.

        volume/fees/trades are added; funding_rate/mark_price/open_interest
        overwrite when given.
        """
        with self.transaction() as cur:
            self._upsert_intraday(cur, market_key, bucket_ts, **fields)

    def _upsert_intraday(self, cur, market_key, bucket_ts, volume=0, fees=0,
                         trades=0, funding_rate=None, mark_price=None,
                         open_interest=None):
        cur.execute(
            """
            INSERT INTO stats_intraday
                (market_key, bucket_ts, volume, fees, trades, funding_rate,
                 mark_price, open_interest, expire_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (market_key, bucket_ts) DO UPDATE SET
                volume = stats_intraday.volume + EXCLUDED.volume,
                fees = stats_intraday.fees + EXCLUDED.fees,
                trades = stats_intraday.trades + EXCLUDED.trades,
                funding_rate = COALESCE(EXCLUDED.funding_rate, stats_intraday.funding_rate),
                mark_price = COALESCE(EXCLUDED.mark_price, stats_intraday.mark_price),
                open_interest = COALESCE(EXCLUDED.open_interest, stats_intraday.open_interest)
            """,
            (market_key, bucket_ts, to_decimal(volume), to_decimal(fees), trades,
             to_decimal(funding_rate), to_decimal(mark_price),
             to_decimal(open_interest), bucket_ts + INTRADAY_TTL_MS),
        )

    def intraday_rows(self, start_ms, end_ms, market_key=None):
        """Intraday rows with bucket_ts in [start_ms, end_ms]."""
        sql = "SELECT * FROM stats_intraday WHERE bucket_ts BETWEEN %s AND %s"
        params = [start_ms, end_ms]
        if market_key is not None:
            sql += " AND market_key = %s"
            params.append(market_key)
        sql += " ORDER BY market_key, bucket_ts"
        with self.transaction() as cur:
            cur.execute(sql, params)
            return [dict(r) for r in cur.fetchall()]

    def purge_expired_intraday(self, now):
        with self.transaction() as cur:
            cur.execute("DELETE FROM stats_intraday WHERE expire_at <= %s", (now,))
            return cur.rowcount

    def put_daily(self, stats):
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO stats_daily
                    (market_key, day, volume, fees, trades, rolled_up_at)
                VALUES (%(market_key)s, %(day)s, %(volume)s, %(fees)s,
                        %(trades)s, %(rolled_up_at)s)
                ON CONFLICT (market_key, day) DO UPDATE SET
                    volume = EXCLUDED.volume,
                    fees = EXCLUDED.fees,
                    trades = EXCLUDED.trades,
                    rolled_up_at = EXCLUDED.rolled_up_at
                """,
                stats.to_dict(),
            )

    def get_daily(self, market_key, day):
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM stats_daily WHERE market_key = %s AND day = %s",
                (market_key, day),
            )
            row = cur.fetchone()
            return DailyStats.from_row(row) if row else None

    def refresh_lifetime(self, market_key, now=None):
        """Recompute the lifetime row as the sum of the market's daily rows."""
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO stats_lifetime (market_key, volume, fees, trades, days, updated_at)
                SELECT %s, COALESCE(SUM(volume), 0), COALESCE(SUM(fees), 0),
                       COALESCE(SUM(trades), 0), COUNT(*), %s
                FROM stats_daily WHERE market_key = %s
                ON CONFLICT (market_key) DO UPDATE SET
                    volume = EXCLUDED.volume,
                    fees = EXCLUDED.fees,
                    trades = EXCLUDED.trades,
                    days = EXCLUDED.days,
                    updated_at = EXCLUDED.updated_at
                """,
                (market_key, now or now_ms(), market_key),
            )

    def get_lifetime(self, market_key):
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM stats_lifetime WHERE market_key = %s", (market_key,)
            )
            row = cur.fetchone()
            return dict(row) if row else None

    # ── Aggregation queue ─────────────────────────────────────────────

    def enqueue_aggregation(self, body):
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO aggregation_queue (body, enqueued_at)
                VALUES (%s, %s) RETURNING message_id
                """,
                (psycopg2.extras.Json(body, dumps=dumps), now_ms()),
            )
            return cur.fetchone()["message_id"]

    def aggregation_messages(self, after_id=0, limit=100):
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT message_id, body FROM aggregation_queue
                WHERE message_id > %s ORDER BY message_id LIMIT %s
                """,
                (after_id, limit),
            )
            return [dict(r) for r in cur.fetchall()]

    # ── Update notifications & checkpoints ────────────────────────────

    def publish_update(self, payload):
        """Broadcast an update event to every process LISTENing on the bus."""
        with self.transaction() as cur:
            cur.execute("SELECT pg_notify(%s, %s)", (UPDATES_CHANNEL, dumps(payload)))

    def load_checkpoint(self, subscriber_id):
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT last_position FROM subscription_checkpoints
                WHERE subscriber_id = %s
                """,
                (subscriber_id,),
            )
            row = cur.fetchone()
            return row["last_position"] if row else None

    def save_checkpoint(self, subscriber_id, position):
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO subscription_checkpoints (subscriber_id, last_position)
                VALUES (%s, %s)
                ON CONFLICT (subscriber_id) DO UPDATE
                    SET last_position = EXCLUDED.last_position,
                        updated_at = now()
                """,
                (subscriber_id, position),
            )

    def close(self):
        """Close every pooled connection."""
        if self._pool and not self._pool.closed:
            self._pool.closeall()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


# ── Helpers ───────────────────────────────────────────────────────────

def _v(value):
    """Enum member or plain string → plain string."""
    return getattr(value, "value", value)


def _trade_key(trade):
    return {"timestamp": trade.timestamp, "seq": trade.seq}


def _page(items, limit, key_fn):
    next_cursor = encode_cursor(key_fn(items[-1])) if len(items) == limit else None
    return Page(items=items, next_cursor=next_cursor)


