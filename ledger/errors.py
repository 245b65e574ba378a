"""
Ledger error taxonomy.

Every error carries the HTTP-style status the query API reports for it.
"""


class LedgerError(Exception):
    """Base class for errors surfaced to API callers."""

    status = 500

    def to_body(self):
        return {"ok": False, "error": str(self)}


class ValidationError(LedgerError):
    """Raised when an inbound request or message is malformed."""

    status = 400


class NotFound(LedgerError):
    """Raised when a referenced record does not exist."""

    status = 404


class InsufficientBalance(LedgerError):
    """Raised when a withdrawal exceeds the available balance."""

    status = 409

    def __init__(self, trader_id, asset, available, requested):
        self.trader_id = trader_id
        self.asset = asset
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient {asset} balance for {trader_id}: "
            f"available {available}, requested {requested}"
        )


class ChainError(LedgerError):
    """Raised when a vault transaction fails or cannot be confirmed."""

    status = 502


class PriceSourceError(LedgerError):
    """Raised when an external price source fails or returns garbage."""

    status = 502
