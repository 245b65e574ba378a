"""
Perpetual funding.

Once per funding interval, for every ACTIVE PERP market in both modes:
rate from mark (last execution) vs index (latest oracle snapshot of the
underlying), funding payments to open positions, the rate on the current
intraday stats row, and a zero-quantity funding-<bucket> trade as the
audit marker. An existing marker means the interval is done.
"""

import logging

from jobs.base import SKIPPED, Job
from jobs.pricing import (
    DEFAULT_MAX_HOURLY_RATE, ZERO, funding_bucket, funding_payment, funding_rate,
)
from ledger.models import MarketStatus, MarketType, Trade, stats_key
from ledger.client import MINUTE_MS


logger = logging.getLogger(__name__)


class FundingJob(Job):
    name = "funding"

    def __init__(self, client, quote_asset="USDC",
                 max_hourly_rate=DEFAULT_MAX_HOURLY_RATE, apply_payments=True,
                 max_workers=8):
        super().__init__(client, max_workers=max_workers)
        self.quote_asset = quote_asset
        self.max_hourly_rate = max_hourly_rate
        self.apply_payments = apply_payments

    def candidates(self, now):
        return self.client.all_markets(status=MarketStatus.ACTIVE,
                                       market_type=MarketType.PERP)

    def describe(self, market):
        return f"{market.symbol}#{market.mode}"

    def process(self, market, now):
        bucket = funding_bucket(now, market.funding_interval_sec)
        marker_id = f"funding-{bucket}"
        if self.client.get_trade(market.symbol, market.mode, bucket, marker_id):
            return SKIPPED

        index = self.client.latest_price(market.underlying)
        last = self.client.latest_trade(market.symbol, market.mode)
        if index is None or last is None:
            logger.warning("No %s price for %s, publishing zero funding",
                           "index" if index is None else "mark",
                           self.describe(market))
            self._publish(market, ZERO, None, None, bucket)
            return SKIPPED

        mark = last.price
        rate = funding_rate(mark, index.price, market.funding_interval_sec,
                            self.max_hourly_rate)

        positions = self.client.open_positions(market.symbol, market.mode)
        open_interest = sum((abs(p.size) for p in positions), ZERO)

        if self.apply_payments and rate != 0:
            for pos in positions:
                payment = funding_payment(pos.size, mark, rate)
                if payment == 0:
                    continue
                self.client.add_balance(
                    pos.trader_id, self.quote_asset, market.mode, payment,
                    idempotency_key=(
                        f"funding:{market.symbol}:{market.mode}:{bucket}:"
                        f"{pos.trader_id}"
                    ),
                    reason="funding",
                )

        self.client.upsert_intraday(
            stats_key(market.symbol, market.mode), now // MINUTE_MS * MINUTE_MS,
            funding_rate=rate, mark_price=mark, open_interest=open_interest,
        )
        self.client.record_trade(Trade(
            trade_id=marker_id, market=market.symbol, mode=market.mode,
            price=mark, qty=0, timestamp=bucket,
            meta={"fundingRate": str(rate), "markPrice": str(mark),
                  "indexPrice": str(index.price)},
        ))
        self._publish(market, rate, mark, index.price, bucket)
        logger.info("Funding %s bucket %d rate %s", self.describe(market),
                    bucket, rate)
        return rate

    def _publish(self, market, rate, mark, index, bucket):
        self.client.publish_update({
            "type": "fundingRateUpdate",
            "market": market.symbol,
            "mode": market.mode,
            "fundingRate": rate,
            "markPrice": mark,
            "indexPrice": index,
            "bucket": bucket,
        })
