"""
Daily perp settlement: realise each open PERP position's unrealized PnL
into the trader's quote balance, at most once per UTC day (epoch).
"""

import logging

from jobs.base import SKIPPED, Job
from ledger.models import MarketType


logger = logging.getLogger(__name__)

DAY_MS = 86_400_000


def settlement_epoch(now_ms):
    """UTC day number."""
    return now_ms // DAY_MS


class DailySettleJob(Job):
    name = "daily_settle"

    def __init__(self, client, quote_asset="USDC", max_workers=8):
        super().__init__(client, max_workers=max_workers)
        self.quote_asset = quote_asset

    def candidates(self, now):
        perps = {(m.symbol, m.mode)
                 for m in self.client.all_markets(market_type=MarketType.PERP)}
        return [p for p in self.client.open_positions()
                if (p.market, p.mode) in perps]

    def describe(self, pos):
        return f"{pos.trader_id}@{pos.market}#{pos.mode}"

    def process(self, pos, now):
        epoch = settlement_epoch(now)
        if pos.unrealized_pnl == 0 or pos.last_settled_epoch >= epoch:
            return SKIPPED

        settled = self.client.settle_position(pos, epoch, self.quote_asset)
        if settled is None:
            logger.info("%s already settled for epoch %d or changed since read",
                        self.describe(pos), epoch)
            return SKIPPED

        self.client.publish_update({
            "type": "positionUpdate",
            "traderId": pos.trader_id,
            "mode": pos.mode,
            "market": pos.market,
            "realizedPnl": settled.realized_pnl,
            "settledPnl": pos.unrealized_pnl,
            "epoch": epoch,
        })
        return settled
