"""
ChainEventListener: reconciles ledger balances with the vault's event log.

Polls eth_getLogs in block ranges from the last checkpointed block, turns
each event into a keyed additive balance delta and records the new
checkpoint only after the whole range has been applied. A crash mid-range
replays the range; the idempotency keys make that a no-op for events that
were already applied.
"""

import logging
import threading

from chain.events import to_delta
from ledger.models import Mode


logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER = "chain:vault"


class ChainEventListener:
    """
    Long-lived vault event consumer.

    Usage:
        listener = ChainEventListener(client, vault, start_block=1_000_000)
        listener.start()      # daemon thread
        ...
        listener.stop()

    Or drive it synchronously with poll_once(), as the tests do.
    """

    def __init__(self, client, vault, subscriber_id=DEFAULT_SUBSCRIBER,
                 start_block=None, batch_blocks=500, poll_interval=5.0,
                 max_backoff=60.0, quote_asset="USDC", cxpt_asset="CXPT",
                 synth_assets=None, decimals=None):
        self.client = client
        self.vault = vault
        self.subscriber_id = subscriber_id
        self.start_block = start_block
        self.batch_blocks = batch_blocks
        self.poll_interval = poll_interval
        self.max_backoff = max_backoff
        self.quote_asset = quote_asset
        self.cxpt_asset = cxpt_asset
        self.synth_assets = {k.lower(): v for k, v in (synth_assets or {}).items()}
        self.decimals = decimals or {}
        self._thread = None
        self._stop_event = threading.Event()
        self.caught_up = False

    @classmethod
    def from_settings(cls, client, vault, chain_cfg):
        return cls(
            client, vault,
            start_block=chain_cfg.get("start_block"),
            batch_blocks=chain_cfg.get("batch_blocks", 500),
            poll_interval=chain_cfg.get("poll_interval_sec", 5.0),
            quote_asset=chain_cfg.get("quote_asset", "USDC"),
            cxpt_asset=chain_cfg.get("cxpt_asset", "CXPT"),
            synth_assets=chain_cfg.get("synths"),
            decimals=chain_cfg.get("decimals"),
        )

    # ── Event application ────────────────────────────────────────────

    def apply(self, event):
        """Apply one vault event. Returns True if the balance changed."""
        delta = to_delta(
            event, quote_asset=self.quote_asset, cxpt_asset=self.cxpt_asset,
            synth_assets=self.synth_assets, decimals=self.decimals,
        )
        applied = self.client.add_balance(
            delta.trader_id, delta.asset, Mode.REAL, delta.amount,
            idempotency_key=delta.idempotency_key, reason=delta.reason,
        )
        if applied:
            logger.info("Applied %s %s %s to %s", delta.reason, delta.amount,
                        delta.asset, delta.trader_id)
            self.client.publish_update({
                "type": "balanceUpdate",
                "traderId": delta.trader_id,
                "mode": Mode.REAL.value,
                "asset": delta.asset,
                "delta": delta.amount,
            })
        return applied

    def poll_once(self):
        """
        Process the next block range. Returns the number of events seen.
        """
        latest = self.vault.block_number()
        last = self.client.load_checkpoint(self.subscriber_id)
        if last is None:
            last = (self.start_block - 1) if self.start_block is not None else latest
            self.client.save_checkpoint(self.subscriber_id, last)
        from_block = last + 1
        if from_block > latest:
            self.caught_up = True
            return 0
        to_block = min(latest, from_block + self.batch_blocks - 1)

        events = self.vault.get_logs(from_block, to_block)
        for event in events:
            self.apply(event)
        self.client.save_checkpoint(self.subscriber_id, to_block)
        self.caught_up = to_block >= latest
        logger.debug("Processed blocks %d-%d (%d events)",
                     from_block, to_block, len(events))
        return len(events)

    # ── Background loop ──────────────────────────────────────────────

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def run_forever(self):
        backoff = self.poll_interval
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Vault poll failed, retrying in %.1fs", backoff)
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue
            backoff = self.poll_interval
            if self.caught_up:
                self._stop_event.wait(self.poll_interval)
