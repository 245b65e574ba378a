"""
Daily metrics rollup.

Sums the previous UTC day's intraday rows per market key into one daily
row, recomputes each key's lifetime totals from its daily rows, and
archives the day's aggregate as stats/daily/<day>/aggregated.json.
Re-running for the same day overwrites with the same values.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal

from jobs.base import JobReport, run_isolated
from jobs.daily_settle import DAY_MS
from ledger.base import now_ms as current_ms
from ledger.models import DailyStats


logger = logging.getLogger(__name__)


def previous_day(now_ms):
    """(YYYY-MM-DD, start_ms) of the UTC day before the one containing now_ms."""
    start = (now_ms // DAY_MS - 1) * DAY_MS
    day = datetime.fromtimestamp(start / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
    return day, start


def aggregate(rows):
    """Sum volume/fees/trades per market_key."""
    totals = defaultdict(lambda: {"volume": Decimal(0), "fees": Decimal(0), "trades": 0})
    for row in rows:
        t = totals[row["market_key"]]
        t["volume"] += row["volume"]
        t["fees"] += row["fees"]
        t["trades"] += row["trades"]
    return dict(totals)


class MetricsRollupJob:
    name = "metrics_rollup"

    def __init__(self, client, archive=None, archive_prefix="stats/daily",
                 max_workers=8):
        self.client = client
        self.archive = archive
        self.archive_prefix = archive_prefix
        self.max_workers = max_workers

    def archive_key(self, day):
        return f"{self.archive_prefix}/{day}/aggregated.json"

    def run(self, now_ms=None):
        now = now_ms if now_ms is not None else current_ms()
        report = JobReport(job=self.name, started_at=now)
        t0 = time.monotonic()
        day, start = previous_day(now)
        totals = aggregate(self.client.intraday_rows(start, start + DAY_MS - 1))

        def roll(market_key):
            t = totals[market_key]
            self.client.put_daily(DailyStats(
                market_key=market_key, day=day, volume=t["volume"],
                fees=t["fees"], trades=t["trades"], rolled_up_at=now,
            ))
            self.client.refresh_lifetime(market_key, now)

        run_isolated(sorted(totals), roll, report, describe=str,
                     max_workers=self.max_workers)

        if self.archive is not None:
            try:
                self.archive.put_json(self.archive_key(day), {
                    "day": day,
                    "generatedAt": now,
                    "markets": totals,
                })
            except Exception as exc:
                report.failed += 1
                report.errors.append(f"archive: {exc}")
                logger.exception("Failed to archive rollup for %s", day)

        purged = self.client.purge_expired_intraday(now)
        report.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info("%s %s: %d market keys, %d failed, %d intraday rows purged",
                    self.name, day, report.processed, report.failed, purged)
        return report
