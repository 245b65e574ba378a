"""
Ledger service entry point
==========================
Starts the embedded ledger database and one or more of the long-running
components:

    chain    vault event listener (balances ← on-chain events)
    jobs     DBOS cron scheduler for funding/expiry/settlement/rollup/oracle
    push     WebSocket push server + cross-process update fan-out
    router   trade change feed → aggregation queue
    all      everything above in one process

    run-job <name>   run one job once and print its report

Run:  python3 app.py all
      python3 app.py run-job metrics_rollup
"""

import argparse
import json
import logging
import os
import signal
import threading

from chain.listener import ChainEventListener
from chain.vault import JsonRpcVaultClient
from jobs.archive import FilesystemArchive
from jobs.oracle import CoinMarketCapSource
from ledger.client import LedgerClient
from ledger.server import LedgerServer
from ledger.subscriptions import EventBus, TradeFeedListener, UpdateListener
from push.dispatcher import FanOutDispatcher, TradeBroadcastSink
from push.gateway import WebSocketGateway
from push.handlers import PushHandlers
from push.registry import ConnectionRegistry
from push.ws_server import PushServer
from settings import Settings, setup_logging
from streams.trades import QueueTableSink, TradeEventRouter
from workflow.scheduler import build_jobs, register_jobs


logger = logging.getLogger("app")

COMPONENTS = ("chain", "jobs", "push", "router")


def make_vault(chain_cfg):
    if not chain_cfg.get("vault_address"):
        logger.warning("No vault address configured; chain features disabled")
        return None
    return JsonRpcVaultClient.from_settings(chain_cfg)


def make_price_source(oracle_cfg):
    return CoinMarketCapSource(
        api_key=oracle_cfg.get("api_key"),
        base_url=oracle_cfg.get("base_url", "https://pro-api.coinmarketcap.com"),
    )


def make_archive(archive_cfg):
    return FilesystemArchive(archive_cfg.get("root", "archive"))


# ── Components ───────────────────────────────────────────────────────────────

def start_chain(ctx):
    vault = make_vault(ctx["settings"]["chain"])
    if vault is None:
        return []
    listener = ChainEventListener.from_settings(ctx["client"], vault,
                                                ctx["settings"]["chain"])
    return [listener.start()]


def start_jobs(ctx):
    from workflow.dbos_engine import DBOSEngine

    settings = ctx["settings"]
    engine = DBOSEngine(ctx["server"].dbos_url(), name="ledger-jobs")
    jobs = build_jobs(ctx["client"], settings,
                      archive=make_archive(settings["archive"]),
                      price_source=make_price_source(settings["oracle"]))
    register_jobs(engine, jobs, settings["jobs"])
    ctx["engine"] = engine
    engine.launch()
    return []


def start_push(ctx):
    settings = ctx["settings"]["push"]
    client, server = ctx["client"], ctx["server"]
    registry = ConnectionRegistry(
        client, ttl_ms=int(settings.get("connection_ttl_hours", 24)) * 3_600_000,
    )
    gateway = WebSocketGateway()
    dispatcher = FanOutDispatcher(registry, gateway,
                                  max_workers=settings.get("max_workers", 16))
    purged = registry.purge_expired()
    if purged:
        logger.info("Purged %d expired push connections", purged)
    bus = EventBus()
    dispatcher.attach(bus)
    updates = UpdateListener.from_server(bus, server).start()
    trade_bus = EventBus()
    TradeEventRouter(TradeBroadcastSink(dispatcher)).attach(trade_bus)
    trades = TradeFeedListener.from_server(trade_bus, client, server).start()
    handlers = PushHandlers(registry, client, gateway,
                            trade_limit=settings.get("trade_history_limit", 50))
    ws = PushServer(handlers, gateway, host=settings.get("host", "0.0.0.0"),
                    port=int(settings.get("port", 8765))).start()
    return [updates, trades, ws]


def start_router(ctx):
    bus = EventBus()
    TradeEventRouter(QueueTableSink(ctx["client"])).attach(bus)
    feed = TradeFeedListener.from_server(bus, ctx["client"], ctx["server"],
                                         subscriber_id="router:trades")
    return [feed.start()]


STARTERS = {
    "chain": start_chain,
    "jobs": start_jobs,
    "push": start_push,
    "router": start_router,
}


def open_ledger(settings):
    db = settings["database"]
    server = LedgerServer(
        data_dir=db.get("data_dir") and os.path.abspath(db["data_dir"]),
        app_password=db.get("app_password"),
    ).start()
    client = LedgerClient.from_server(server, maxconn=int(db.get("pool_max", 16)))
    return server, client


def run_components(names, settings):
    server, client = open_ledger(settings)
    ctx = {"settings": settings, "server": server, "client": client}
    running = []
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        for name in names:
            running += STARTERS[name](ctx)
            logger.info("Started %s", name)
        stop.wait()
    finally:
        logger.info("Shutting down")
        for component in reversed(running):
            component.stop()
        if "engine" in ctx:
            ctx["engine"].destroy()
        client.close()
        server.stop()


def run_job(name, settings, now_ms=None):
    server, client = open_ledger(settings)
    try:
        jobs = build_jobs(client, settings,
                          archive=make_archive(settings["archive"]),
                          price_source=make_price_source(settings["oracle"]))
        if name not in jobs:
            raise SystemExit(f"Unknown job {name!r}; choose from {sorted(jobs)}")
        report = jobs[name].run(now_ms)
        print(json.dumps(report.to_dict(), indent=2))
    finally:
        client.close()
        server.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Trading ledger service")
    parser.add_argument("--config", help="YAML config file (default: config/default.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)
    for name in COMPONENTS:
        sub.add_parser(name, help=f"run the {name} component")
    sub.add_parser("all", help="run every component")
    job = sub.add_parser("run-job", help="run one job once")
    job.add_argument("name")
    job.add_argument("--now-ms", type=int, default=None)
    args = parser.parse_args(argv)

    settings = Settings.load(args.config)
    setup_logging(settings["logging"])

    if args.command == "run-job":
        run_job(args.name, settings, args.now_ms)
    elif args.command == "all":
        run_components(COMPONENTS, settings)
    else:
        run_components([args.command], settings)


if __name__ == "__main__":
    main()
