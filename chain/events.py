"""
Vault contract events as a tagged union, and the decoding of raw
eth_getLogs entries into them.

    Deposited(address indexed user, uint256 amt)
    Withdrawn(address indexed user, uint256 amt, bool asCxpt)
    SynthMinted(address indexed synth, address indexed to, uint256 amt)
    SynthBurned(address indexed synth, address indexed from, uint256 amt)

Indexed arguments arrive as 32-byte topics, the rest ABI-encoded in
``data``. Amounts stay in raw base units here; scaling to asset units
happens in to_delta().
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from ledger.errors import ValidationError


DEPOSITED = "Deposited"
WITHDRAWN = "Withdrawn"
SYNTH_MINTED = "SynthMinted"
SYNTH_BURNED = "SynthBurned"
EVENT_NAMES = (DEPOSITED, WITHDRAWN, SYNTH_MINTED, SYNTH_BURNED)


@dataclass(frozen=True)
class DepositEvent:
    tx_hash: str
    log_index: int
    block_number: int
    user: str
    amount: int


@dataclass(frozen=True)
class WithdrawEvent:
    tx_hash: str
    log_index: int
    block_number: int
    user: str
    amount: int
    as_cxpt: bool


@dataclass(frozen=True)
class MintEvent:
    tx_hash: str
    log_index: int
    block_number: int
    synth: str
    to: str
    amount: int


@dataclass(frozen=True)
class BurnEvent:
    tx_hash: str
    log_index: int
    block_number: int
    synth: str
    holder: str
    amount: int


VaultEvent = Union[DepositEvent, WithdrawEvent, MintEvent, BurnEvent]


@dataclass(frozen=True)
class BalanceDelta:
    """One additive balance change derived from a vault event."""
    trader_id: str
    asset: str
    amount: Decimal
    idempotency_key: str
    reason: str


# ── Hex helpers ───────────────────────────────────────────────────────

def normalize_address(addr: str) -> str:
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValidationError(f"Invalid address: {addr}")
    return addr


def parse_hex_int(value: Optional[str]) -> int:
    if not value:
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def data_words(data: str):
    """Split ABI-encoded ``data`` into 32-byte hex words."""
    if data.startswith("0x"):
        data = data[2:]
    return [data[i:i + 64] for i in range(0, len(data), 64)]


def scale_amount(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


# ── Decoding ──────────────────────────────────────────────────────────

def decode_log(log: dict, topic_names: dict) -> Optional[VaultEvent]:
    """
    Decode one eth_getLogs entry.

    *topic_names* maps topic0 (lower-case hex) to an event name. Logs with
    an unknown topic0 return None; known topics with a malformed body
    raise ValidationError.
    """
    topics = log.get("topics") or []
    if not topics:
        return None
    name = topic_names.get(topics[0].lower())
    if name is None:
        return None

    tx_hash = log.get("transactionHash", "").lower()
    log_index = parse_hex_int(log.get("logIndex"))
    block_number = parse_hex_int(log.get("blockNumber"))
    words = data_words(log.get("data") or "0x")

    try:
        if name == DEPOSITED:
            return DepositEvent(tx_hash, log_index, block_number,
                                user=decode_topic_address(topics[1]),
                                amount=int(words[0], 16))
        if name == WITHDRAWN:
            return WithdrawEvent(tx_hash, log_index, block_number,
                                 user=decode_topic_address(topics[1]),
                                 amount=int(words[0], 16),
                                 as_cxpt=int(words[1], 16) != 0)
        if name == SYNTH_MINTED:
            return MintEvent(tx_hash, log_index, block_number,
                             synth=decode_topic_address(topics[1]),
                             to=decode_topic_address(topics[2]),
                             amount=int(words[0], 16))
        if name == SYNTH_BURNED:
            return BurnEvent(tx_hash, log_index, block_number,
                             synth=decode_topic_address(topics[1]),
                             holder=decode_topic_address(topics[2]),
                             amount=int(words[0], 16))
    except (IndexError, ValueError) as exc:
        raise ValidationError(
            f"Malformed {name} log in tx {tx_hash} index {log_index}"
        ) from exc
    raise ValidationError(f"Unhandled vault event name {name!r}")


def vault_key(tx_hash: str, event_name: str) -> str:
    """Idempotency key shared by the API's optimistic write and the listener."""
    # the API only knows the tx hash, so no log index; deposit() and
    # withdraw() each emit exactly one event per transaction
    return f"vault:{tx_hash.lower()}:{event_name}"


def to_delta(event: VaultEvent, quote_asset="USDC", cxpt_asset="CXPT",
             synth_assets=None, decimals=None, default_decimals=18) -> BalanceDelta:
    """
    Map a vault event to the balance change it implies.

    Deposit/withdraw keys are per (tx, event) so the API's optimistic write
    and the chain-confirmed event collapse into one change; mint/burn keys
    are per (tx, log index).
    """
    synth_assets = synth_assets or {}
    decimals = decimals or {}

    def scaled(asset, raw):
        return scale_amount(raw, decimals.get(asset, default_decimals))

    if isinstance(event, DepositEvent):
        return BalanceDelta(event.user, quote_asset,
                            scaled(quote_asset, event.amount),
                            vault_key(event.tx_hash, DEPOSITED), "deposit")
    if isinstance(event, WithdrawEvent):
        asset = cxpt_asset if event.as_cxpt else quote_asset
        return BalanceDelta(event.user, asset, -scaled(asset, event.amount),
                            vault_key(event.tx_hash, WITHDRAWN), "withdraw")
    if isinstance(event, MintEvent):
        asset = synth_assets.get(event.synth, "SYNTH")
        return BalanceDelta(event.to, asset, scaled(asset, event.amount),
                            f"vault:{event.tx_hash}:{event.log_index}", "synth_mint")
    if isinstance(event, BurnEvent):
        asset = synth_assets.get(event.synth, "SYNTH")
        return BalanceDelta(event.holder, asset, -scaled(asset, event.amount),
                            f"vault:{event.tx_hash}:{event.log_index}", "synth_burn")
    raise TypeError(f"Not a vault event: {event!r}")
