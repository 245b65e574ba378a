"""
Option/future expiry sweep: cash-settle and expire OPEN OPTION/FUTURE
orders whose expiry has passed. Each order is settled in one conditional
transaction (see LedgerClient.expire_order), so re-running is a no-op.
"""

import logging

from jobs.base import SKIPPED, Job
from jobs.pricing import expiry_payoff


logger = logging.getLogger(__name__)


class ExpiryJob(Job):
    name = "expiry"

    def __init__(self, client, quote_asset="USDC", max_workers=8):
        super().__init__(client, max_workers=max_workers)
        self.quote_asset = quote_asset

    def candidates(self, now):
        return self.client.expiring_orders(now)

    def describe(self, order):
        return f"order {order.order_id}"

    def process(self, order, now):
        market = self.client.get_market(order.market, order.mode)
        underlying = market.underlying if market else order.market.split("-")[0]
        snapshot = self.client.latest_price(underlying)
        if snapshot is None:
            logger.warning("No %s price, leaving %s open", underlying,
                           self.describe(order))
            return SKIPPED

        payoff = expiry_payoff(
            order, snapshot.price,
            strike=market.strike if market else None,
            option_type=market.option_type if market else None,
        )
        if not self.client.expire_order(order, payoff, self.quote_asset, now=now):
            return SKIPPED

        self.client.publish_update({
            "type": "orderUpdate",
            "traderId": order.trader_id,
            "mode": order.mode,
            "market": order.market,
            "orderId": order.order_id,
            "status": order.status,
            "payoff": payoff,
            "settlementPrice": snapshot.price,
        })
        return payoff
