"""
LedgerAPI: the request-facing surface over the ledger.

Every method returns an ApiResponse with an HTTP-style status and a JSON
body; LedgerError subclasses map to their own status, anything else to 500.
Authentication is upstream: callers pass an already-resolved trader_id.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from chain.events import DEPOSITED, WITHDRAWN, vault_key
from ledger.base import to_decimal
from ledger.errors import InsufficientBalance, LedgerError, ValidationError
from ledger.models import MarketStatus, Mode, parse_mode


logger = logging.getLogger(__name__)

MAX_LIMIT = 500


@dataclass
class ApiResponse:
    status: int
    body: dict

    @property
    def ok(self):
        return 200 <= self.status < 300


def _handles_errors(fn):
    def wrapper(self, *args, **kwargs):
        try:
            body = fn(self, *args, **kwargs)
        except LedgerError as exc:
            if exc.status >= 500:
                logger.error("%s failed: %s", fn.__name__, exc)
            return ApiResponse(exc.status, exc.to_body())
        except Exception:
            logger.exception("%s failed", fn.__name__)
            return ApiResponse(500, {"ok": False, "error": "Internal error"})
        return ApiResponse(200, {"ok": True, **body})
    wrapper.__name__ = fn.__name__
    wrapper.__doc__ = fn.__doc__
    return wrapper


def _mode(value):
    try:
        return parse_mode(value).value
    except ValueError:
        raise ValidationError(f"Invalid mode: {value!r}") from None


def _limit(value, default):
    if value is None:
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid limit: {value!r}") from None
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
    return limit


def _amount(value):
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}") from None
    if amount is None or not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be a positive number")
    return amount


class LedgerAPI:
    """
    Balance/position/trade/market queries plus vault deposit & withdraw.

    Deposits and withdrawals submit the vault transaction, wait for one
    confirmation and then apply an optimistic balance change keyed by the
    transaction hash. The chain listener applies the same key when it sees
    the event, so the change lands exactly once whichever side is first.
    """

    def __init__(self, client, vault=None, quote_asset="USDC", cxpt_asset="CXPT",
                 default_limit=50):
        self.client = client
        self.vault = vault
        self.quote_asset = quote_asset
        self.cxpt_asset = cxpt_asset
        self.default_limit = default_limit

    # ── Queries ──────────────────────────────────────────────────────

    @_handles_errors
    def get_balances(self, trader_id, mode):
        balances = self.client.list_balances(trader_id, _mode(mode))
        return {"balances": [b.to_dict() for b in balances]}

    @_handles_errors
    def get_positions(self, trader_id, mode=None):
        mode = _mode(mode) if mode is not None else None
        positions = self.client.list_positions(trader_id, mode)
        return {"positions": [p.to_dict() for p in positions]}

    @_handles_errors
    def get_trade_history(self, trader_id, mode, market=None, limit=None,
                          cursor=None):
        page = self.client.trader_trades(
            trader_id, _mode(mode), market=market and market.upper(),
            limit=_limit(limit, self.default_limit), cursor=cursor,
        )
        return page.to_body()

    @_handles_errors
    def get_markets(self, mode=None, status=None, limit=None, cursor=None):
        mode = _mode(mode) if mode is not None else None
        if status is not None:
            try:
                status = MarketStatus(str(status).upper()).value
            except ValueError:
                raise ValidationError(f"Invalid status: {status!r}") from None
        page = self.client.list_markets(
            mode=mode, status=status,
            limit=_limit(limit, 100), cursor=cursor,
        )
        return page.to_body()

    # ── Vault ────────────────────────────────────────────────────────

    @_handles_errors
    def initiate_deposit(self, trader_id, amount):
        amount = _amount(amount)
        self._require_vault()
        tx_hash = self.vault.deposit(trader_id, amount)
        self.vault.wait_for_receipt(tx_hash, confirmations=1)
        self._credit(trader_id, self.quote_asset, amount,
                     vault_key(tx_hash, DEPOSITED), "deposit")
        return {"txHash": tx_hash, "asset": self.quote_asset, "amount": str(amount)}

    @_handles_errors
    def initiate_withdraw(self, trader_id, amount, settle_asset=None):
        amount = _amount(amount)
        settle_asset = (settle_asset or self.quote_asset).upper()
        if settle_asset not in (self.quote_asset, self.cxpt_asset):
            raise ValidationError(
                f"settle_asset must be {self.quote_asset} or {self.cxpt_asset}"
            )
        as_cxpt = settle_asset == self.cxpt_asset

        balance = self.client.get_balance(trader_id, settle_asset, Mode.REAL)
        available = balance.balance - balance.pending if balance else Decimal(0)
        if available < amount:
            raise InsufficientBalance(trader_id, settle_asset, available, amount)

        self._require_vault()
        tx_hash = self.vault.withdraw(trader_id, amount, as_cxpt)
        self.vault.wait_for_receipt(tx_hash, confirmations=1)
        self._credit(trader_id, settle_asset, -amount,
                     vault_key(tx_hash, WITHDRAWN), "withdraw")
        return {"txHash": tx_hash, "asset": settle_asset, "amount": str(amount)}

    def _require_vault(self):
        if self.vault is None:
            raise LedgerError("Vault is not configured")

    def _credit(self, trader_id, asset, delta, key, reason):
        applied = self.client.add_balance(
            trader_id, asset, Mode.REAL, delta, idempotency_key=key, reason=reason,
        )
        if applied:
            self.client.publish_update({
                "type": "balanceUpdate",
                "traderId": trader_id,
                "mode": Mode.REAL.value,
                "asset": asset,
                "delta": delta,
            })
