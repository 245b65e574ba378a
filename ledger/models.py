"""
Ledger record types.
Each is a @dataclass subclassing Record; enums are str-valued so they
round-trip through JSON and SQL text columns unchanged.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from ledger.base import Record


class Mode(str, Enum):
    REAL = "REAL"
    PAPER = "PAPER"


class MarketType(str, Enum):
    SPOT = "SPOT"
    PERP = "PERP"
    FUTURE = "FUTURE"
    OPTION = "OPTION"


class MarketStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DELISTED = "DELISTED"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    OPTION = "OPTION"
    FUTURE = "FUTURE"
    PERP = "PERP"


class OrderStatus(str, Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


def parse_mode(value):
    """Normalise a mode string, raising ValueError on anything else."""
    return Mode(str(value).upper())


def market_pk(market, mode):
    """Composite partition key for market-scoped rows: MARKET#<symbol>#<mode>."""
    return f"MARKET#{market.upper()}#{Mode(mode).value}"


def trade_sk(ts, trade_id):
    return f"TS#{ts}#{trade_id}"


def stats_key(market, mode):
    """Stats partition: <symbol>#<mode>, or GLOBAL#<mode> when market is None."""
    return f"{(market or 'GLOBAL').upper()}#{Mode(mode).value}"


@dataclass
class Balance(Record):
    """A trader's holding of one asset in one mode."""
    trader_id: str = ""
    asset: str = ""
    mode: str = Mode.REAL.value
    balance: Decimal = Decimal(0)
    pending: Decimal = Decimal(0)
    updated_at: Optional[int] = None

    _decimal_fields = ("balance", "pending")


@dataclass
class Position(Record):
    """Net exposure of a trader in one market."""
    trader_id: str = ""
    market: str = ""
    mode: str = Mode.REAL.value
    size: Decimal = Decimal(0)
    avg_entry_price: Decimal = Decimal(0)
    unrealized_pnl: Decimal = Decimal(0)
    realized_pnl: Decimal = Decimal(0)
    last_settled_epoch: int = -1
    updated_at: Optional[int] = None

    _decimal_fields = ("size", "avg_entry_price", "unrealized_pnl", "realized_pnl")

    @property
    def is_open(self):
        return self.size != 0


@dataclass
class Order(Record):
    """A resting or historical order. Lifecycle is OrderLifecycle."""
    order_id: str = ""
    market: str = ""
    mode: str = Mode.REAL.value
    trader_id: str = ""
    order_type: str = OrderType.LIMIT.value
    side: str = Side.BUY.value
    price: Decimal = Decimal(0)
    qty: Decimal = Decimal(0)
    status: str = OrderStatus.OPEN.value
    expiry_ts: Optional[int] = None
    settled_at: Optional[int] = None
    created_at: Optional[int] = None

    _decimal_fields = ("price", "qty")

    @property
    def sign(self):
        return 1 if self.side == Side.BUY.value else -1


@dataclass
class Trade(Record):
    """An immutable execution (or a synthetic funding marker)."""
    trade_id: str = ""
    market: Optional[str] = None
    mode: Optional[str] = None
    price: Decimal = Decimal(0)
    qty: Decimal = Decimal(0)
    side: Optional[str] = None
    timestamp: int = 0
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    fee: Decimal = Decimal(0)
    meta: Optional[dict] = None
    pk: Optional[str] = None
    sk: Optional[str] = None
    seq: Optional[int] = None

    _decimal_fields = ("price", "qty", "fee")

    def __post_init__(self):
        super().__post_init__()
        if self.pk is None and self.market and self.mode:
            self.pk = market_pk(self.market, self.mode)
        if self.sk is None and self.trade_id:
            self.sk = trade_sk(self.timestamp, self.trade_id)

    @property
    def is_synthetic(self):
        return bool(self.meta) and "fundingRate" in self.meta


@dataclass
class Market(Record):
    """Instrument metadata. Status is admin-driven; jobs only read it."""
    symbol: str = ""
    mode: str = Mode.REAL.value
    type: str = MarketType.SPOT.value
    status: str = MarketStatus.ACTIVE.value
    tick_size: Decimal = Decimal("0.01")
    lot_size: Decimal = Decimal("0.001")
    funding_interval_sec: int = 3600
    expiry_ts: Optional[int] = None
    underlying: Optional[str] = None
    strike: Optional[Decimal] = None
    option_type: Optional[str] = None  # "CALL" or "PUT"

    _decimal_fields = ("tick_size", "lot_size", "strike")

    def __post_init__(self):
        super().__post_init__()
        if not self.underlying and self.symbol:
            self.underlying = self.symbol.split("-")[0].upper()


@dataclass
class PriceSnapshot(Record):
    """A reference price observation with a retention deadline."""
    asset: str = ""
    ts: int = 0
    price: Decimal = Decimal(0)
    source: str = ""
    expire_at: int = 0

    _decimal_fields = ("price",)


@dataclass
class DailyStats(Record):
    """Per-market rollup of one UTC day of intraday stats."""
    market_key: str = ""
    day: str = ""
    volume: Decimal = Decimal(0)
    fees: Decimal = Decimal(0)
    trades: int = 0
    rolled_up_at: Optional[int] = None

    _decimal_fields = ("volume", "fees")


@dataclass
class Connection(Record):
    """A live push connection and its (single) channel subscription."""
    connection_id: str = ""
    trader_id: Optional[str] = None
    channel: Optional[str] = None
    connected_at: Optional[int] = None
    expires_at: Optional[int] = None
