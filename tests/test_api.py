"""
Tests for the query API and vault deposit/withdraw flows.

Covers:
- Status codes: 200 bodies, 400 validation, 409 insufficient balance
- Continuation tokens surfaced as nextCursor
- Deposit/withdraw: optimistic write + listener event apply exactly once,
  in either order
"""

from decimal import Decimal

import pytest

from chain.listener import ChainEventListener
from ledger.api import LedgerAPI
from ledger.models import Market, Position, Trade


T0 = 1_700_000_040_000


@pytest.fixture
def api(client, vault):
    return LedgerAPI(client, vault=vault)


@pytest.fixture
def listener(client, vault):
    return ChainEventListener(client, vault, start_block=vault.block + 1,
                              decimals={"USDC": 6, "CXPT": 6})


# ── Queries ──────────────────────────────────────────────────────────────────

class TestQueries:

    def test_balances(self, api, client):
        client.add_balance("0xabc", "USDC", "REAL", "12.5")
        resp = api.get_balances("0xabc", "real")
        assert resp.status == 200
        assert resp.body["ok"] is True
        assert resp.body["balances"][0]["asset"] == "USDC"
        assert resp.body["balances"][0]["balance"] == Decimal("12.5")

    def test_invalid_mode_is_400(self, api):
        resp = api.get_balances("0xabc", "LIVE")
        assert resp.status == 400
        assert resp.body["ok"] is False
        assert "mode" in resp.body["error"]

    def test_positions_all_modes(self, api, client):
        client.put_position(Position(trader_id="0xabc", market="BTC-PERP", mode="REAL", size=1))
        client.put_position(Position(trader_id="0xabc", market="BTC-PERP", mode="PAPER", size=2))
        assert len(api.get_positions("0xabc").body["positions"]) == 2
        assert len(api.get_positions("0xabc", "PAPER").body["positions"]) == 1

    def test_trade_history_paginates(self, api, client):
        for i in range(3):
            client.record_trade(Trade(trade_id=f"t{i}", market="BTC-PERP", mode="REAL",
                                      price="100", qty="1", timestamp=T0 + i,
                                      buyer_id="0xabc", seller_id="0xdef"))
        first = api.get_trade_history("0xabc", "REAL", limit=2)
        assert [t["trade_id"] for t in first.body["items"]] == ["t2", "t1"]
        second = api.get_trade_history("0xabc", "REAL", limit=2,
                                       cursor=first.body["nextCursor"])
        assert [t["trade_id"] for t in second.body["items"]] == ["t0"]
        assert second.body["nextCursor"] is None

    def test_bad_cursor_is_400(self, api):
        resp = api.get_trade_history("0xabc", "REAL", cursor="%%%")
        assert resp.status == 400

    @pytest.mark.parametrize("limit", [0, 501, "many"])
    def test_bad_limit_is_400(self, api, limit):
        assert api.get_trade_history("0xabc", "REAL", limit=limit).status == 400

    def test_markets_filter(self, api, client):
        client.put_market(Market(symbol="BTC-PERP", mode="REAL", type="PERP"))
        client.put_market(Market(symbol="OLD-PERP", mode="REAL", type="PERP",
                                 status="DELISTED"))
        resp = api.get_markets(mode="REAL", status="active")
        assert [m["symbol"] for m in resp.body["items"]] == ["BTC-PERP"]
        assert api.get_markets(status="GONE").status == 400


# ── Deposits & withdrawals ───────────────────────────────────────────────────

class TestVaultFlows:

    def test_deposit_then_event_credits_once(self, api, client, listener, vault):
        resp = api.initiate_deposit("0xabc", "25")
        assert resp.status == 200
        assert resp.body["txHash"].startswith("0x")
        assert client.get_balance("0xabc", "USDC", "REAL").balance == 25

        listener.poll_once()
        assert client.get_balance("0xabc", "USDC", "REAL").balance == 25

    def test_event_then_api_credits_once(self, client, listener, vault):
        # listener observes the event before the API call returns
        api = LedgerAPI(client, vault=vault)
        tx = vault.deposit("0xabc", Decimal("25"))
        listener.poll_once()
        api._credit("0xabc", "USDC", Decimal("25"),
                    f"vault:{tx}:Deposited", "deposit")
        assert client.get_balance("0xabc", "USDC", "REAL").balance == 25

    def test_withdraw_debits_once(self, api, client, listener):
        client.add_balance("0xabc", "USDC", "REAL", 100)
        resp = api.initiate_withdraw("0xabc", "40")
        assert resp.status == 200
        listener.poll_once()
        assert client.get_balance("0xabc", "USDC", "REAL").balance == 60

    def test_withdraw_as_cxpt(self, api, client, vault):
        client.add_balance("0xabc", "CXPT", "REAL", 10)
        resp = api.initiate_withdraw("0xabc", "4", settle_asset="cxpt")
        assert resp.body["asset"] == "CXPT"
        assert vault.sent[-1] == ("Withdrawn", ("0xabc", Decimal("4"), True))
        assert client.get_balance("0xabc", "CXPT", "REAL").balance == 6

    def test_withdraw_insufficient_is_409(self, api, client, vault):
        client.add_balance("0xabc", "USDC", "REAL", 100)
        client.add_pending("0xabc", "USDC", "REAL", 70)
        resp = api.initiate_withdraw("0xabc", "40")
        assert resp.status == 409
        assert vault.sent == []
        assert client.get_balance("0xabc", "USDC", "REAL").balance == 100

    def test_withdraw_unknown_trader_is_409(self, api):
        assert api.initiate_withdraw("0xnobody", "1").status == 409

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", None, "NaN"])
    def test_invalid_amount_is_400(self, api, amount):
        assert api.initiate_deposit("0xabc", amount).status == 400

    def test_invalid_settle_asset_is_400(self, api):
        assert api.initiate_withdraw("0xabc", "1", settle_asset="BTC").status == 400

    def test_no_vault_is_500(self, client):
        resp = LedgerAPI(client).initiate_deposit("0xabc", "1")
        assert resp.status == 500
        assert resp.body["ok"] is False
