"""
Wires the ledger jobs onto a WorkflowEngine's cron scheduler.

    jobs = build_jobs(client, settings, archive, price_source)
    register_jobs(engine, jobs, settings["jobs"])
    engine.launch()

Each tick runs the job as one checkpointed step with the tick's nominal
time as "now", so a recovered tick recomputes the same funding bucket,
settlement epoch and rollup day.
"""

import logging

from jobs import DailySettleJob, ExpiryJob, FundingJob, MetricsRollupJob, OracleJob


logger = logging.getLogger(__name__)


def build_jobs(client, settings, archive=None, price_source=None):
    """Instantiate every job from the settings sections."""
    chain = settings.get("chain", {})
    quote = chain.get("quote_asset", "USDC")
    funding = settings.get("funding", {})
    oracle = settings.get("oracle", {})
    workers = settings.get("jobs", {}).get("max_workers", 8)

    jobs = {
        "funding": FundingJob(
            client, quote_asset=quote,
            max_hourly_rate=funding.get("max_hourly_rate", "0.000375"),
            apply_payments=funding.get("apply_payments", True),
            max_workers=workers,
        ),
        "expiry": ExpiryJob(client, quote_asset=quote, max_workers=workers),
        "daily_settle": DailySettleJob(client, quote_asset=quote,
                                       max_workers=workers),
        "metrics_rollup": MetricsRollupJob(
            client, archive=archive,
            archive_prefix=settings.get("archive", {}).get("prefix", "stats/daily"),
            max_workers=workers,
        ),
    }
    if price_source is not None:
        jobs["oracle"] = OracleJob(
            client, price_source,
            assets=oracle.get("assets", ()),
            stablecoins=oracle.get("stablecoins", ("USDC", "USDT")),
            internal_token=oracle.get("internal_token", "CXPT"),
            internal_market=oracle.get("internal_market", "CXPT-USDC"),
            twap_minutes=oracle.get("twap_minutes", 60),
            min_twap_trades=oracle.get("min_twap_trades", 5),
            retention_days=oracle.get("retention_days", 7),
            max_workers=workers,
        )
    return jobs


def job_tick(engine, job):
    """The scheduled entry point for one job: run it as a durable step."""
    def run_job(scheduled_ms):
        return job.run(scheduled_ms).to_dict()
    run_job.__name__ = run_job.__qualname__ = f"run_{job.name}"

    def tick(scheduled_ms):
        return engine.step(run_job, scheduled_ms)
    return tick


def register_jobs(engine, jobs, schedules):
    """
    Register each job whose name has a cron expression in *schedules*.
    Returns the names registered.
    """
    registered = []
    for name, job in jobs.items():
        cron = (schedules.get("cron") or {}).get(name)
        if not cron:
            logger.info("No schedule for job %s, not registering", name)
            continue
        engine.schedule(name, cron, job_tick(engine, job))
        registered.append(name)
        logger.info("Scheduled %s at '%s'", name, cron)
    return registered
