"""
Database schema: ledger tables, indexes, change-feed trigger and
subscription checkpoints. All DDL is idempotent and runs as the
application role.
"""

TRADE_FEED_CHANNEL = "trade_feed"
UPDATES_CHANNEL = "ledger_updates"


def bootstrap_schema(conn):
    """Create every ledger table, index and trigger. Idempotent."""
    conn.autocommit = True
    with conn.cursor() as cur:
        # ── Balances: additive-only, plus the idempotency ledger ─────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                trader_id   TEXT NOT NULL,
                asset       TEXT NOT NULL,
                mode        TEXT NOT NULL,
                balance     NUMERIC NOT NULL DEFAULT 0,
                pending     NUMERIC NOT NULL DEFAULT 0,
                updated_at  BIGINT,
                PRIMARY KEY (trader_id, asset, mode)
            );
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS balance_changes (
                idempotency_key TEXT PRIMARY KEY,
                trader_id       TEXT NOT NULL,
                asset           TEXT NOT NULL,
                mode            TEXT NOT NULL,
                delta           NUMERIC NOT NULL,
                reason          TEXT,
                applied_at      BIGINT NOT NULL
            );
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_balance_changes_trader
                ON balance_changes (trader_id, mode);
        """)

        # ── Positions ────────────────────────────────────────────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                trader_id           TEXT NOT NULL,
                market              TEXT NOT NULL,
                mode                TEXT NOT NULL,
                size                NUMERIC NOT NULL DEFAULT 0,
                avg_entry_price     NUMERIC NOT NULL DEFAULT 0,
                unrealized_pnl      NUMERIC NOT NULL DEFAULT 0,
                realized_pnl        NUMERIC NOT NULL DEFAULT 0,
                last_settled_epoch  INT NOT NULL DEFAULT -1,
                updated_at          BIGINT,
                PRIMARY KEY (trader_id, market, mode)
            );
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_positions_open
                ON positions (market, mode) WHERE size <> 0;
        """)

        # ── Orders ───────────────────────────────────────────────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id    TEXT PRIMARY KEY,
                market      TEXT NOT NULL,
                mode        TEXT NOT NULL,
                trader_id   TEXT NOT NULL,
                order_type  TEXT NOT NULL,
                side        TEXT NOT NULL,
                price       NUMERIC NOT NULL DEFAULT 0,
                qty         NUMERIC NOT NULL DEFAULT 0,
                status      TEXT NOT NULL DEFAULT 'OPEN',
                expiry_ts   BIGINT,
                settled_at  BIGINT,
                created_at  BIGINT
            );
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_market
                ON orders (market, mode, created_at, order_id);
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_expiry
                ON orders (expiry_ts)
                WHERE status = 'OPEN' AND order_type IN ('OPTION', 'FUTURE');
        """)

        # ── Trades: append-only, seq drives the change feed ──────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                seq         BIGSERIAL UNIQUE,
                pk          TEXT NOT NULL,
                sk          TEXT NOT NULL,
                trade_id    TEXT NOT NULL,
                market      TEXT,
                mode        TEXT,
                price       NUMERIC NOT NULL,
                qty         NUMERIC NOT NULL,
                side        TEXT,
                timestamp   BIGINT NOT NULL,
                buyer_id    TEXT,
                seller_id   TEXT,
                fee         NUMERIC NOT NULL DEFAULT 0,
                meta        JSONB,
                PRIMARY KEY (pk, sk)
            );
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_buyer
                ON trades (buyer_id, timestamp DESC) WHERE buyer_id IS NOT NULL;
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_seller
                ON trades (seller_id, timestamp DESC) WHERE seller_id IS NOT NULL;
        """)

        # ── Markets ──────────────────────────────────────────────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS markets (
                symbol                TEXT NOT NULL,
                mode                  TEXT NOT NULL,
                type                  TEXT NOT NULL,
                status                TEXT NOT NULL,
                tick_size             NUMERIC NOT NULL,
                lot_size              NUMERIC NOT NULL,
                funding_interval_sec  INT NOT NULL DEFAULT 3600,
                expiry_ts             BIGINT,
                underlying            TEXT,
                strike                NUMERIC,
                option_type           TEXT,
                PRIMARY KEY (symbol, mode)
            );
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_markets_status
                ON markets (status, mode, symbol);
        """)

        # ── Price snapshots ──────────────────────────────────────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS price_snapshots (
                asset      TEXT NOT NULL,
                ts         BIGINT NOT NULL,
                price      NUMERIC NOT NULL,
                source     TEXT NOT NULL,
                expire_at  BIGINT NOT NULL,
                PRIMARY KEY (asset, ts)
            );
        """)

        # ── Stats ────────────────────────────────────────────────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS stats_intraday (
                market_key     TEXT NOT NULL,
                bucket_ts      BIGINT NOT NULL,
                volume         NUMERIC NOT NULL DEFAULT 0,
                fees           NUMERIC NOT NULL DEFAULT 0,
                trades         INT NOT NULL DEFAULT 0,
                funding_rate   NUMERIC,
                mark_price     NUMERIC,
                open_interest  NUMERIC,
                expire_at      BIGINT NOT NULL,
                PRIMARY KEY (market_key, bucket_ts)
            );
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS stats_daily (
                market_key    TEXT NOT NULL,
                day           TEXT NOT NULL,
                volume        NUMERIC NOT NULL DEFAULT 0,
                fees          NUMERIC NOT NULL DEFAULT 0,
                trades        INT NOT NULL DEFAULT 0,
                rolled_up_at  BIGINT,
                PRIMARY KEY (market_key, day)
            );
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS stats_lifetime (
                market_key  TEXT PRIMARY KEY,
                volume      NUMERIC NOT NULL DEFAULT 0,
                fees        NUMERIC NOT NULL DEFAULT 0,
                trades      BIGINT NOT NULL DEFAULT 0,
                days        INT NOT NULL DEFAULT 0,
                updated_at  BIGINT
            );
        """)

        # ── Push connections, indexed by channel ─────────────────────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS connections (
                connection_id  TEXT PRIMARY KEY,
                trader_id      TEXT,
                channel        TEXT,
                connected_at   BIGINT NOT NULL,
                expires_at     BIGINT NOT NULL
            );
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_connections_channel
                ON connections (channel) WHERE channel IS NOT NULL;
        """)

        # ── Downstream aggregation queue (trade router output) ───────
        cur.execute("""
            CREATE TABLE IF NOT EXISTS aggregation_queue (
                message_id   BIGSERIAL PRIMARY KEY,
                body         JSONB NOT NULL,
                enqueued_at  BIGINT NOT NULL
            );
        """)

        # ── Checkpoints for durable catch-up (feeds, chain listener) ─
        cur.execute("""
            CREATE TABLE IF NOT EXISTS subscription_checkpoints (
                subscriber_id  TEXT PRIMARY KEY,
                last_position  BIGINT NOT NULL,
                updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """)

        # ── NOTIFY trigger: announce every trade INSERT ──────────────
        cur.execute(f"""
            CREATE OR REPLACE FUNCTION notify_trade_insert() RETURNS trigger AS $$
            BEGIN
                PERFORM pg_notify('{TRADE_FEED_CHANNEL}', json_build_object(
                    'op', TG_OP,
                    'table', TG_TABLE_NAME,
                    'seq', NEW.seq
                )::text);
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;
        """)
        cur.execute("DROP TRIGGER IF EXISTS trade_insert_notify ON trades;")
        cur.execute("""
            CREATE TRIGGER trade_insert_notify
                AFTER INSERT ON trades
                FOR EACH ROW EXECUTE FUNCTION notify_trade_insert();
        """)


def truncate_all(conn):
    """Empty every ledger table. Used by tests between cases."""
    conn.autocommit = True
    with conn.cursor() as cur:
        cur.execute("""
            TRUNCATE balances, balance_changes, positions, orders, trades,
                     markets, price_snapshots, stats_intraday, stats_daily,
                     stats_lifetime, connections, aggregation_queue,
                     subscription_checkpoints
        """)
