"""
Oracle ingestion: reference prices into price_snapshots.

External assets come from a PriceSource (CoinMarketCap by default).
Stablecoins are pegged at 1. The internal token is priced from its own
market: TWAP over the last hour of REAL trades, falling back to PAPER,
and to the last trade when neither mode has enough trades.
"""

import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal

import requests

from jobs.base import JobReport, run_isolated
from jobs.pricing import twap
from ledger.base import now_ms as current_ms, to_decimal
from ledger.errors import PriceSourceError
from ledger.models import Mode, PriceSnapshot


logger = logging.getLogger(__name__)

DAY_MS = 86_400_000


class PriceSource(ABC):
    name = "source"

    @abstractmethod
    def fetch(self, symbols):
        """Return {symbol: Decimal price in USD} for the symbols it knows."""


class CoinMarketCapSource(PriceSource):
    """CoinMarketCap /v1/cryptocurrency/quotes/latest."""

    name = "coinmarketcap"
    QUOTES_ENDPOINT = "/v1/cryptocurrency/quotes/latest"

    def __init__(self, api_key, base_url="https://pro-api.coinmarketcap.com",
                 convert="USD", timeout=10):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.convert = convert
        self.timeout = timeout
        self._session = requests.Session()

    def fetch(self, symbols):
        if not symbols:
            return {}
        if not self.api_key:
            raise PriceSourceError("CoinMarketCap API key is not configured")
        try:
            resp = self._session.get(
                self.base_url + self.QUOTES_ENDPOINT,
                params={"symbol": ",".join(symbols), "convert": self.convert},
                headers={"X-CMC_PRO_API_KEY": self.api_key,
                         "Accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise PriceSourceError(f"CoinMarketCap request failed: {exc}") from exc

        status = payload.get("status") or {}
        if status.get("error_code") not in (0, None):
            raise PriceSourceError(
                f"CoinMarketCap error: {status.get('error_message')}"
            )

        prices = {}
        data = payload.get("data") or {}
        for symbol in symbols:
            entry = data.get(symbol)
            if isinstance(entry, list):
                entry = entry[0] if entry else None
            try:
                price = entry["quote"][self.convert]["price"]
            except (TypeError, KeyError):
                logger.warning("CoinMarketCap returned no %s price", symbol)
                continue
            if price is not None:
                prices[symbol] = to_decimal(price)
        return prices


class OracleJob:
    name = "oracle"

    def __init__(self, client, source, assets=(), stablecoins=("USDC", "USDT"),
                 internal_token="CXPT", internal_market="CXPT-USDC",
                 twap_minutes=60, min_twap_trades=5, retention_days=7,
                 max_workers=8):
        self.client = client
        self.source = source
        self.assets = [a.upper() for a in assets]
        self.stablecoins = [s.upper() for s in stablecoins]
        self.internal_token = internal_token
        self.internal_market = internal_market
        self.twap_minutes = twap_minutes
        self.min_twap_trades = min_twap_trades
        self.retention_ms = retention_days * DAY_MS
        self.max_workers = max_workers

    def internal_price(self, now):
        """TWAP of the internal token's market, or None without trades."""
        start = now - self.twap_minutes * 60_000
        last_price = None
        for mode in (Mode.REAL, Mode.PAPER):
            trades = self.client.trades_in_window(self.internal_market, mode,
                                                  start, now)
            if len(trades) >= self.min_twap_trades:
                return twap(trades, start, now)
            if trades and last_price is None:
                last_price = trades[-1].price
        return last_price

    def run(self, now_ms=None):
        now = now_ms if now_ms is not None else current_ms()
        report = JobReport(job=self.name, started_at=now)
        t0 = time.monotonic()
        quotes = []  # (asset, price, source)

        external = [a for a in self.assets
                    if a not in self.stablecoins and a != self.internal_token]
        try:
            fetched = self.source.fetch(external)
        except PriceSourceError as exc:
            logger.error("Price source %s failed: %s", self.source.name, exc)
            report.failed += len(external)
            report.errors.append(str(exc))
            fetched = {}
        for asset in external:
            if asset in fetched:
                quotes.append((asset, fetched[asset], self.source.name))
            elif not report.errors:
                report.skipped += 1

        for asset in self.stablecoins:
            quotes.append((asset, Decimal(1), "peg"))

        if self.internal_token:
            price = self.internal_price(now)
            if price is None:
                logger.warning("No %s trades to price %s", self.internal_market,
                               self.internal_token)
                report.skipped += 1
            else:
                quotes.append((self.internal_token, price, "twap"))

        def store(quote):
            asset, price, source = quote
            self.client.add_price_snapshot(PriceSnapshot(
                asset=asset, ts=now, price=price, source=source,
                expire_at=now + self.retention_ms,
            ))

        run_isolated(quotes, store, report, describe=lambda q: q[0],
                     max_workers=self.max_workers)
        purged = self.client.purge_expired_prices(now)
        report.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info("%s: stored %d snapshots, purged %d expired",
                    self.name, report.processed, purged)
        return report
