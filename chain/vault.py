"""
Vault contract access.

VaultClient is the interface the rest of the system depends on; the
JSON-RPC implementation talks to an Ethereum-compatible node over HTTP.
Writes are sent with eth_sendTransaction from a node-managed gateway
account, so no private key handling happens in this process.
"""

import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal

import requests

from chain.events import decode_log, normalize_address, parse_hex_int
from ledger.errors import ChainError, ValidationError


logger = logging.getLogger(__name__)


class VaultClient(ABC):
    """Read and write access to the vault contract."""

    @abstractmethod
    def block_number(self) -> int:
        """Latest block number."""

    @abstractmethod
    def get_logs(self, from_block: int, to_block: int) -> list:
        """Decoded vault events in [from_block, to_block], in log order."""

    @abstractmethod
    def deposit(self, user: str, amount: Decimal) -> str:
        """Pull *amount* quote asset from *user* into the vault. Returns tx hash."""

    @abstractmethod
    def withdraw(self, user: str, amount: Decimal, as_cxpt: bool) -> str:
        """Release *amount* to *user*, in CXPT if *as_cxpt*. Returns tx hash."""

    @abstractmethod
    def register_synth(self, synth: str) -> str:
        """Register a synth token contract with the vault."""

    @abstractmethod
    def withdraw_fees(self, to: str, amount: Decimal) -> str:
        """Sweep accumulated fees to *to*."""

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> dict:
        """Block until *tx_hash* is mined with *confirmations*.

        Raises ChainError if the transaction reverted or never confirmed.
        """


# ── ABI encoding ──────────────────────────────────────────────────────

def encode_address(addr: str) -> str:
    return normalize_address(addr)[2:].rjust(64, "0")


def encode_uint(value: int) -> str:
    if value < 0:
        raise ValidationError(f"uint256 cannot be negative: {value}")
    return format(value, "x").rjust(64, "0")


def encode_bool(value: bool) -> str:
    return encode_uint(1 if value else 0)


def to_base_units(amount, decimals: int) -> int:
    """Convert an asset amount to integer base units, refusing lost precision."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"Amount {amount} has more than {decimals} decimal places"
        )
    return int(scaled)


class JsonRpcVaultClient(VaultClient):
    """
    VaultClient over Ethereum JSON-RPC (HTTP).

    Args:
        rpc_url: node endpoint
        vault_address: vault contract address
        gateway_address: node-managed account that signs writes
        topics: {event name: topic0 hex}
        selectors: {"deposit"|"withdraw"|"registerSynth"|"withdrawFees": 4-byte hex}
        decimals: {asset: decimals} for amount conversion
    """

    def __init__(self, rpc_url, vault_address, gateway_address=None,
                 topics=None, selectors=None, decimals=None,
                 quote_asset="USDC", cxpt_asset="CXPT",
                 timeout=12, poll_interval=2.0, receipt_timeout=180):
        self.rpc_url = rpc_url
        self.vault_address = normalize_address(vault_address)
        self.gateway_address = gateway_address and normalize_address(gateway_address)
        self.topic_names = {v.lower(): k for k, v in (topics or {}).items() if v}
        self.selectors = selectors or {}
        self.decimals = decimals or {}
        self.quote_asset = quote_asset
        self.cxpt_asset = cxpt_asset
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self._session = requests.Session()
        self._id = 1

    @classmethod
    def from_settings(cls, chain_cfg):
        return cls(
            rpc_url=chain_cfg["rpc_url"],
            vault_address=chain_cfg["vault_address"],
            gateway_address=chain_cfg.get("gateway_address"),
            topics=chain_cfg.get("topics"),
            selectors=chain_cfg.get("selectors"),
            decimals=chain_cfg.get("decimals"),
            quote_asset=chain_cfg.get("quote_asset", "USDC"),
            cxpt_asset=chain_cfg.get("cxpt_asset", "CXPT"),
            poll_interval=chain_cfg.get("receipt_poll_sec", 2.0),
            receipt_timeout=chain_cfg.get("receipt_timeout_sec", 180),
        )

    # ── Transport ────────────────────────────────────────────────────

    def call(self, method, params):
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1
        try:
            resp = self._session.post(self.rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise ChainError(f"RPC {method} failed: {exc}") from exc
        if "error" in data:
            raise ChainError(f"RPC {method} error: {data['error']}")
        return data.get("result")

    # ── Reads ────────────────────────────────────────────────────────

    def block_number(self):
        return parse_hex_int(self.call("eth_blockNumber", []))

    def get_logs(self, from_block, to_block):
        flt = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "address": self.vault_address,
        }
        if self.topic_names:
            flt["topics"] = [list(self.topic_names)]
        logs = self.call("eth_getLogs", [flt]) or []
        logs.sort(key=lambda l: (parse_hex_int(l.get("blockNumber")),
                                 parse_hex_int(l.get("logIndex"))))
        events = []
        for log in logs:
            event = decode_log(log, self.topic_names)
            if event is not None:
                events.append(event)
        return events

    # ── Writes ───────────────────────────────────────────────────────

    def deposit(self, user, amount):
        return self._send("deposit", encode_address(user),
                          encode_uint(self._units(self.quote_asset, amount)))

    def withdraw(self, user, amount, as_cxpt):
        asset = self.cxpt_asset if as_cxpt else self.quote_asset
        return self._send("withdraw", encode_address(user),
                          encode_uint(self._units(asset, amount)),
                          encode_bool(as_cxpt))

    def register_synth(self, synth):
        return self._send("registerSynth", encode_address(synth))

    def withdraw_fees(self, to, amount):
        return self._send("withdrawFees", encode_address(to),
                          encode_uint(self._units(self.quote_asset, amount)))

    def wait_for_receipt(self, tx_hash, confirmations=1):
        deadline = time.monotonic() + self.receipt_timeout
        while time.monotonic() < deadline:
            receipt = self.call("eth_getTransactionReceipt", [tx_hash])
            if receipt and receipt.get("blockNumber"):
                if parse_hex_int(receipt.get("status")) != 1:
                    raise ChainError(f"Transaction {tx_hash} reverted")
                mined_at = parse_hex_int(receipt["blockNumber"])
                if self.block_number() - mined_at + 1 >= confirmations:
                    return receipt
            time.sleep(self.poll_interval)
        raise ChainError(
            f"Transaction {tx_hash} not confirmed within {self.receipt_timeout}s"
        )

    def _units(self, asset, amount):
        return to_base_units(amount, self.decimals.get(asset, 18))

    def _send(self, function, *words):
        selector = self.selectors.get(function)
        if not selector:
            raise ChainError(f"No selector configured for vault.{function}")
        if not self.gateway_address:
            raise ChainError("No gateway account configured for vault writes")
        data = selector + "".join(words)
        tx_hash = self.call("eth_sendTransaction", [{
            "from": self.gateway_address,
            "to": self.vault_address,
            "data": data,
        }])
        logger.info("Sent vault.%s tx %s", function, tx_hash)
        return tx_hash
