"""
Trading ledger backed by PostgreSQL: balances, positions, orders, trades,
markets, price snapshots and stats, with additive idempotent mutations.
"""

from ledger.base import Record
from ledger.client import LedgerClient
from ledger.server import LedgerServer
