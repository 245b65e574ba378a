"""
Tests for the vault integration.

Covers:
- Log decoding: topics, data words, unknown and malformed logs
- Event → balance delta mapping, scaling and idempotency keys
- ABI encoding helpers
- JsonRpcVaultClient over a stubbed HTTP session
- ChainEventListener: checkpoints, replay without double credit
"""

from decimal import Decimal

import pytest
import requests

from chain.events import (
    BurnEvent, DepositEvent, MintEvent, WithdrawEvent, decode_log, to_delta,
    vault_key,
)
from chain.listener import ChainEventListener
from chain.vault import (
    JsonRpcVaultClient, encode_address, encode_bool, encode_uint, to_base_units,
)
from ledger.errors import ChainError, ValidationError


USER = "0x" + "ab" * 20
SYNTH = "0x" + "5e" * 20
TX = "0x" + "11" * 32

TOPICS = {
    "Deposited": "0x" + "d0" * 32,
    "Withdrawn": "0x" + "e0" * 32,
    "SynthMinted": "0x" + "f0" * 32,
    "SynthBurned": "0x" + "c0" * 32,
}
TOPIC_NAMES = {v: k for k, v in TOPICS.items()}


def _topic_addr(addr):
    return "0x" + addr[2:].rjust(64, "0")


def _word(n):
    return format(n, "x").rjust(64, "0")


def _log(name, topics, words, log_index=0, block=10, tx=TX):
    return {
        "topics": [TOPICS[name]] + topics,
        "data": "0x" + "".join(words),
        "transactionHash": tx,
        "logIndex": hex(log_index),
        "blockNumber": hex(block),
    }


# ── Decoding ─────────────────────────────────────────────────────────────────

class TestDecodeLog:

    def test_deposited(self):
        ev = decode_log(_log("Deposited", [_topic_addr(USER)], [_word(25_000_000)]),
                        TOPIC_NAMES)
        assert ev == DepositEvent(TX, 0, 10, USER, 25_000_000)

    def test_withdrawn_as_cxpt(self):
        ev = decode_log(_log("Withdrawn", [_topic_addr(USER)], [_word(5), _word(1)]),
                        TOPIC_NAMES)
        assert isinstance(ev, WithdrawEvent)
        assert ev.as_cxpt is True
        assert ev.amount == 5

    def test_mint_and_burn(self):
        mint = decode_log(_log("SynthMinted", [_topic_addr(SYNTH), _topic_addr(USER)],
                               [_word(7)], log_index=3), TOPIC_NAMES)
        burn = decode_log(_log("SynthBurned", [_topic_addr(SYNTH), _topic_addr(USER)],
                               [_word(2)], log_index=4), TOPIC_NAMES)
        assert mint == MintEvent(TX, 3, 10, SYNTH, USER, 7)
        assert burn == BurnEvent(TX, 4, 10, SYNTH, USER, 2)

    def test_unknown_topic_is_ignored(self):
        log = {"topics": ["0x" + "99" * 32], "data": "0x", "transactionHash": TX}
        assert decode_log(log, TOPIC_NAMES) is None
        assert decode_log({"topics": []}, TOPIC_NAMES) is None

    def test_malformed_body_raises(self):
        with pytest.raises(ValidationError):
            decode_log(_log("Withdrawn", [_topic_addr(USER)], [_word(5)]), TOPIC_NAMES)


class TestToDelta:

    def test_deposit_scaled_and_keyed(self):
        delta = to_delta(DepositEvent(TX, 0, 10, USER, 25_500_000),
                         decimals={"USDC": 6})
        assert delta.asset == "USDC"
        assert delta.amount == Decimal("25.5")
        assert delta.idempotency_key == vault_key(TX, "Deposited")

    def test_withdraw_is_negative_in_settle_asset(self):
        quote = to_delta(WithdrawEvent(TX, 0, 10, USER, 10 ** 6, False),
                         decimals={"USDC": 6})
        cxpt = to_delta(WithdrawEvent(TX, 0, 10, USER, 10 ** 18, True))
        assert (quote.asset, quote.amount) == ("USDC", Decimal(-1))
        assert (cxpt.asset, cxpt.amount) == ("CXPT", Decimal(-1))

    def test_synth_keys_are_per_log(self):
        synths = {SYNTH: "sBTC"}
        mint = to_delta(MintEvent(TX, 3, 10, SYNTH, USER, 10 ** 18), synth_assets=synths)
        burn = to_delta(BurnEvent(TX, 4, 10, SYNTH, USER, 10 ** 18), synth_assets=synths)
        assert mint.asset == "sBTC" and mint.amount == 1
        assert burn.amount == -1
        assert mint.idempotency_key == f"vault:{TX}:3"
        assert burn.idempotency_key == f"vault:{TX}:4"

    def test_deposit_key_ignores_log_index(self):
        # matches the optimistic API write, which only has the tx hash
        first = to_delta(DepositEvent(TX, 0, 10, USER, 1))
        later = to_delta(DepositEvent(TX, 7, 10, USER, 1))
        assert first.idempotency_key == later.idempotency_key == f"vault:{TX}:Deposited"

    def test_vault_key_is_case_insensitive(self):
        assert vault_key(TX.upper().replace("0X", "0x"), "Deposited") == \
            vault_key(TX, "Deposited")


class TestEncoding:

    def test_words(self):
        assert encode_uint(255) == "0" * 62 + "ff"
        assert encode_bool(True)[-1] == "1"
        assert encode_address(USER.upper().replace("0X", "0x")) == "0" * 24 + "ab" * 20

    def test_negative_uint_rejected(self):
        with pytest.raises(ValidationError):
            encode_uint(-1)

    def test_base_units(self):
        assert to_base_units(Decimal("25.5"), 6) == 25_500_000
        with pytest.raises(ValidationError):
            to_base_units(Decimal("0.0000001"), 6)


# ── JSON-RPC client ──────────────────────────────────────────────────────────

class _Response:

    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self.payload


class _Session:
    """Answers JSON-RPC calls from a {method: result} table."""

    def __init__(self, results):
        self.results = results
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append(json)
        result = self.results[json["method"]]
        if isinstance(result, Exception):
            raise result
        if isinstance(result, dict) and "error" in result:
            return _Response({"jsonrpc": "2.0", "id": json["id"], **result})
        return _Response({"jsonrpc": "2.0", "id": json["id"], "result": result})


def _rpc_client(results, **kwargs):
    vault = JsonRpcVaultClient(
        "http://node", "0x" + "01" * 20, gateway_address="0x" + "02" * 20,
        topics=TOPICS, selectors={"deposit": "0x11111111", "withdraw": "0x22222222"},
        decimals={"USDC": 6}, poll_interval=0, **kwargs,
    )
    vault._session = _Session(results)
    return vault


class TestJsonRpcVaultClient:

    def test_get_logs_sorted_and_decoded(self):
        logs = [
            _log("Deposited", [_topic_addr(USER)], [_word(2)], log_index=1, block=11),
            _log("Deposited", [_topic_addr(USER)], [_word(1)], log_index=0, block=11),
            {"topics": ["0x" + "99" * 32], "data": "0x", "transactionHash": TX,
             "logIndex": "0x0", "blockNumber": "0xa"},
        ]
        vault = _rpc_client({"eth_getLogs": logs})
        events = vault.get_logs(10, 11)
        assert [e.amount for e in events] == [1, 2]
        flt = vault._session.calls[0]["params"][0]
        assert flt["fromBlock"] == "0xa"
        assert set(flt["topics"][0]) == set(TOPIC_NAMES)

    def test_deposit_sends_encoded_call(self):
        vault = _rpc_client({"eth_sendTransaction": TX})
        assert vault.deposit(USER, Decimal("1.5")) == TX
        tx = vault._session.calls[0]["params"][0]
        assert tx["data"] == "0x11111111" + encode_address(USER) + encode_uint(1_500_000)
        assert tx["from"] == "0x" + "02" * 20

    def test_missing_selector(self):
        vault = _rpc_client({})
        with pytest.raises(ChainError):
            vault.register_synth(SYNTH)

    def test_rpc_error_and_transport_error(self):
        vault = _rpc_client({"eth_blockNumber": {"error": {"code": -32000}}})
        with pytest.raises(ChainError):
            vault.block_number()
        vault = _rpc_client({"eth_blockNumber": requests.ConnectionError("down")})
        with pytest.raises(ChainError):
            vault.block_number()

    def test_wait_for_receipt(self):
        vault = _rpc_client({
            "eth_getTransactionReceipt": {"blockNumber": "0x10", "status": "0x1"},
            "eth_blockNumber": "0x10",
        })
        assert vault.wait_for_receipt(TX)["status"] == "0x1"

    def test_reverted_receipt(self):
        vault = _rpc_client({
            "eth_getTransactionReceipt": {"blockNumber": "0x10", "status": "0x0"},
            "eth_blockNumber": "0x10",
        })
        with pytest.raises(ChainError):
            vault.wait_for_receipt(TX)


# ── Listener ─────────────────────────────────────────────────────────────────

class TestChainEventListener:

    def _listener(self, client, vault, **kwargs):
        return ChainEventListener(client, vault, start_block=101,
                                  decimals={"USDC": 6}, **kwargs)

    def test_applies_and_checkpoints(self, client, vault):
        vault.emit(DepositEvent(TX, 0, 101, USER, 5_000_000))
        vault.emit(DepositEvent("0x" + "22" * 32, 0, 103, USER, 1_000_000))
        listener = self._listener(client, vault)
        assert listener.poll_once() == 2
        assert client.load_checkpoint(listener.subscriber_id) == 103
        assert listener.caught_up
        assert client.get_balance(USER, "USDC", "REAL").balance == 6

    def test_replay_does_not_double_credit(self, client, vault):
        vault.emit(DepositEvent(TX, 0, 101, USER, 5_000_000))
        listener = self._listener(client, vault)
        listener.poll_once()
        # crash before the checkpoint landed: rewind and replay the range
        client.save_checkpoint(listener.subscriber_id, 100)
        listener.poll_once()
        assert client.get_balance(USER, "USDC", "REAL").balance == 5

    def test_batches_block_ranges(self, client, vault):
        for block in range(101, 111):
            vault.emit(DepositEvent("0x" + f"{block:064x}", 0, block, USER, 1_000_000))
        listener = self._listener(client, vault, batch_blocks=4)
        assert listener.poll_once() == 4
        assert not listener.caught_up
        listener.poll_once()
        listener.poll_once()
        assert listener.caught_up
        assert client.get_balance(USER, "USDC", "REAL").balance == 10

    def test_no_start_block_begins_at_head(self, client, vault):
        vault.emit(DepositEvent(TX, 0, 101, USER, 5_000_000))
        listener = ChainEventListener(client, vault)
        assert listener.poll_once() == 0
        assert client.load_checkpoint(listener.subscriber_id) == 101
        assert client.get_balance(USER, "USDC", "REAL") is None

    def test_withdraw_and_mint(self, client, vault):
        client.add_balance(USER, "USDC", "REAL", 10)
        vault.emit(WithdrawEvent(TX, 0, 101, USER, 4_000_000, False))
        vault.emit(MintEvent(TX, 1, 101, SYNTH, USER, 3 * 10 ** 18))
        listener = self._listener(client, vault, synth_assets={SYNTH.upper().replace("0X", "0x"): "sBTC"})
        listener.poll_once()
        assert client.get_balance(USER, "USDC", "REAL").balance == 6
        assert client.get_balance(USER, "sBTC", "REAL").balance == 3
