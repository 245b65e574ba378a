"""
Pricing formulas shared by the jobs: funding rate, funding payments,
expiry payoffs and the time-weighted average price.

All arithmetic is Decimal.
"""

from decimal import ROUND_HALF_EVEN, Decimal

from ledger.models import OrderType

ZERO = Decimal(0)
HOUR_SEC = Decimal(3600)
DEFAULT_MAX_HOURLY_RATE = Decimal("0.000375")
RATE_QUANTUM = Decimal("0.00000001")


def funding_bucket(now_ms, interval_sec):
    """Start (ms) of the funding interval containing now_ms."""
    interval_ms = int(interval_sec) * 1000
    return now_ms // interval_ms * interval_ms


def funding_rate(mark, index, interval_sec=3600,
                 max_hourly_rate=DEFAULT_MAX_HOURLY_RATE):
    """
    Funding rate for one interval.

    premium = (mark - index) / index, taken as an hourly rate, clamped to
    +/- max_hourly_rate and scaled to the interval length. Returns 0 when
    either price is missing or the index is not positive.
    """
    if mark is None or index is None:
        return ZERO
    mark, index = Decimal(mark), Decimal(index)
    if index <= 0:
        return ZERO
    hours = Decimal(interval_sec) / HOUR_SEC
    premium = (mark - index) / index
    hourly = premium / hours
    cap = Decimal(max_hourly_rate)
    hourly = max(-cap, min(cap, hourly))
    return (hourly * hours).quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN)


def funding_payment(size, mark, rate):
    """Balance change for a position: longs pay when the rate is positive."""
    return -(Decimal(size) * Decimal(mark) * Decimal(rate))


def option_intrinsic(option_type, strike, spot):
    """Per-unit intrinsic value of a CALL or PUT at spot."""
    strike, spot = Decimal(strike), Decimal(spot)
    if str(option_type).upper() == "PUT":
        return max(ZERO, strike - spot)
    return max(ZERO, spot - strike)


def expiry_payoff(order, spot, strike=None, option_type=None):
    """
    Cash settlement of an expiring order, signed from the holder's side.

    OPTION: intrinsic(spot, strike) * qty, paid to the buyer (+) and by
            the writer (-). Strike defaults to the order price.
    FUTURE: (spot - price) * qty, + for the long (BUY), - for the short.
    """
    spot = Decimal(spot)
    sign = order.sign
    if order.order_type == OrderType.OPTION.value:
        k = strike if strike is not None else order.price
        return sign * option_intrinsic(option_type or "CALL", k, spot) * order.qty
    if order.order_type == OrderType.FUTURE.value:
        return sign * (spot - order.price) * order.qty
    raise ValueError(f"No expiry payoff for order type {order.order_type}")


def twap(trades, start_ms, end_ms):
    """
    Time-weighted average of trade prices over [start_ms, end_ms].

    Each price holds from its trade until the next one; the first trade's
    price is taken as holding from start_ms. trades must be sorted by
    timestamp. Returns None with no usable trades.
    """
    if not trades:
        return None
    weighted = ZERO
    total = 0
    last_ts = start_ms
    last_price = trades[0].price
    for trade in trades:
        if trade.timestamp < last_ts:
            continue
        span = trade.timestamp - last_ts
        if span > 0 and last_price > 0:
            weighted += last_price * span
            total += span
        last_price = trade.price
        last_ts = trade.timestamp
    span = end_ms - last_ts
    if span > 0 and last_price > 0:
        weighted += last_price * span
        total += span
    if total == 0:
        return trades[-1].price
    return weighted / total
