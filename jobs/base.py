"""
Common machinery for scheduled jobs.

A job is stateless between runs: it reads its candidate set from the
ledger, applies per-item effects concurrently and reports counts. One
item's exception is logged and counted, never propagated.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List

from ledger.base import now_ms as current_ms


logger = logging.getLogger(__name__)

SKIPPED = "skipped"


@dataclass
class JobReport:
    job: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: int = 0
    duration_ms: int = 0

    def to_dict(self):
        return {
            "job": self.job, "processed": self.processed,
            "skipped": self.skipped, "failed": self.failed,
            "errors": list(self.errors), "startedAt": self.started_at,
            "durationMs": self.duration_ms,
        }


class Job:
    """
    Base class for scheduled jobs.

    Subclasses implement candidates(now) and process(item, now). process()
    returns SKIPPED (or False) for items that need no work; any other
    return counts as processed.
    """

    name = "job"

    def __init__(self, client, max_workers=8):
        self.client = client
        self.max_workers = max_workers

    def candidates(self, now):
        raise NotImplementedError

    def process(self, item, now):
        raise NotImplementedError

    def describe(self, item):
        return repr(item)

    def run(self, now_ms=None):
        now = now_ms if now_ms is not None else current_ms()
        report = JobReport(job=self.name, started_at=now)
        t0 = time.monotonic()
        items = list(self.candidates(now))
        run_isolated(items, lambda item: self.process(item, now), report,
                     describe=self.describe, max_workers=self.max_workers)
        report.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info("%s: processed=%d skipped=%d failed=%d in %dms",
                    self.name, report.processed, report.skipped,
                    report.failed, report.duration_ms)
        return report


def run_isolated(items, fn, report, describe=repr, max_workers=8):
    """Run fn over items on a thread pool, tallying outcomes into report."""
    if not items:
        return report
    with ThreadPoolExecutor(max_workers=max_workers,
                            thread_name_prefix=report.job) as pool:
        futures = [(item, pool.submit(fn, item)) for item in items]
        for item, future in futures:
            try:
                outcome = future.result()
            except Exception as exc:
                report.failed += 1
                report.errors.append(f"{describe(item)}: {exc}")
                logger.exception("%s failed on %s", report.job, describe(item))
                continue
            if outcome is SKIPPED or outcome is False:
                report.skipped += 1
            else:
                report.processed += 1
    return report
