"""
Event distribution for the ledger.

Tier 1: In-process EventBus: synchronous callbacks keyed by topic.
Tier 2: PostgreSQL LISTEN/NOTIFY: cross-process real-time notifications.
Tier 2.5: Durable catch-up: the trade feed persists the last delivered
          seq so a restarted consumer resumes where it left off.
"""

import json
import logging
import select
import threading
from dataclasses import dataclass, field

import psycopg2

from ledger.schema import TRADE_FEED_CHANNEL, UPDATES_CHANNEL


logger = logging.getLogger(__name__)


@dataclass
class ChangeRecord:
    """One row-level change from the ordered change feed."""
    op: str                  # INSERT / UPDATE / DELETE
    table: str
    seq: int
    row: dict = field(default_factory=dict)


class EventBus:
    """
    In-process pub/sub.

    Subscribe by topic or catch-all. Thread-safe for concurrent
    emit/subscribe. A failing callback is logged and does not stop
    delivery to the others.
    """

    def __init__(self):
        self._topic_listeners = {}      # topic → [callback]
        self._all_listeners = []        # [callback]
        self._lock = threading.Lock()

    def on(self, topic, callback):
        """Subscribe to every event emitted under *topic*."""
        with self._lock:
            self._topic_listeners.setdefault(topic, []).append(callback)

    def on_all(self, callback):
        """Subscribe to all events regardless of topic."""
        with self._lock:
            self._all_listeners.append(callback)

    def off(self, topic, callback):
        with self._lock:
            listeners = self._topic_listeners.get(topic, [])
            if callback in listeners:
                listeners.remove(callback)

    def off_all(self, callback):
        with self._lock:
            if callback in self._all_listeners:
                self._all_listeners.remove(callback)

    def emit(self, topic, event):
        """Dispatch *event* to the catch-all and *topic* listeners."""
        with self._lock:
            listeners = list(self._all_listeners)
            listeners += list(self._topic_listeners.get(topic, []))

        for cb in listeners:
            try:
                cb(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s event", cb, topic)


class _NotifyListener:
    """Daemon thread that LISTENs on one channel and hands payloads to
    _handle_notify(). Subclasses add catch-up and parsing."""

    channel = None

    def __init__(self, event_bus, host, port, dbname, user, password):
        self.event_bus = event_bus
        self._conn_params = dict(host=host, port=port, dbname=dbname,
                                 user=user, password=password)
        self._conn = None
        self._thread = None
        self._stop_event = threading.Event()

    def start(self):
        """Open the LISTEN connection, catch up, start the background thread."""
        self._stop_event.clear()
        self._conn = psycopg2.connect(**self._conn_params)
        self._conn.autocommit = True

        # LISTEN first so nothing committed during catch-up is missed
        with self._conn.cursor() as cur:
            cur.execute(f"LISTEN {self.channel};")
        self._catch_up()

        self._thread = threading.Thread(target=self._listen_loop, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        """Stop the listener and close the connection."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
        if self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    def _listen_loop(self):
        while not self._stop_event.is_set():
            if self._conn is None or self._conn.closed:
                break
            if select.select([self._conn], [], [], 0.5) != ([], [], []):
                self._conn.poll()
                while self._conn.notifies:
                    notify = self._conn.notifies.pop(0)
                    try:
                        self._handle_notify(notify)
                    except Exception:
                        logger.exception("Failed to handle %s notification",
                                         self.channel)

    def _catch_up(self):
        pass

    def _handle_notify(self, notify):
        raise NotImplementedError


class TradeFeedListener(_NotifyListener):
    """
    Ordered change feed of trade inserts.

    The trigger NOTIFY only announces that new rows exist; the listener
    then reads every row with seq above its high-water mark, in order, and
    emits each as a ChangeRecord under topic "trades". With a subscriber_id
    the high-water mark is persisted, so a restart replays what was missed.

    Args:
        event_bus: EventBus to dispatch ChangeRecords to
        client: LedgerClient used to read rows and checkpoints
        subscriber_id: Optional. If set, the checkpoint is persisted.
        from_beginning: With no stored checkpoint, replay the whole table
            instead of starting at the current tail.
    """

    channel = TRADE_FEED_CHANNEL
    topic = "trades"

    def __init__(self, event_bus, client, host, port, dbname, user, password,
                 subscriber_id=None, from_beginning=False, batch_size=500):
        super().__init__(event_bus, host, port, dbname, user, password)
        self.client = client
        self.subscriber_id = subscriber_id
        self.from_beginning = from_beginning
        self.batch_size = batch_size
        self.last_seq = None
        self._drain_lock = threading.Lock()

    @classmethod
    def from_server(cls, event_bus, client, server, **kwargs):
        return cls(event_bus, client, **server.dsn(), **kwargs)

    def _catch_up(self):
        stored = self.client.load_checkpoint(self.subscriber_id) \
            if self.subscriber_id else None
        if stored is not None:
            self.last_seq = stored
        elif self.from_beginning:
            self.last_seq = 0
        else:
            self.last_seq = self.client.max_trade_seq()
        self._drain()

    def _handle_notify(self, notify):
        self._drain()

    def _drain(self):
        with self._drain_lock:
            while True:
                rows = self.client.trade_rows_since(self.last_seq, self.batch_size)
                for row in rows:
                    self.event_bus.emit(
                        self.topic,
                        ChangeRecord(op="INSERT", table="trades",
                                     seq=row["seq"], row=row),
                    )
                    self.last_seq = row["seq"]
                if rows and self.subscriber_id:
                    self.client.save_checkpoint(self.subscriber_id, self.last_seq)
                if len(rows) < self.batch_size:
                    return


class UpdateListener(_NotifyListener):
    """
    Cross-process ledger update events (balance/position/order/funding).

    Payloads are JSON objects published with LedgerClient.publish_update();
    each is emitted on the bus under its "type" field. Update events are
    live-only and are not replayed after a restart.
    """

    channel = UPDATES_CHANNEL

    @classmethod
    def from_server(cls, event_bus, server):
        return cls(event_bus, **server.dsn())

    def _handle_notify(self, notify):
        try:
            payload = json.loads(notify.payload)
        except json.JSONDecodeError:
            logger.warning("Dropping malformed update notification: %r",
                           notify.payload)
            return
        if not isinstance(payload, dict):
            logger.warning("Dropping non-object update notification: %r", payload)
            return
        self.event_bus.emit(payload.get("type"), payload)
