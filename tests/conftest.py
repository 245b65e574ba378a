"""
Shared fixtures: one embedded ledger database per test module, emptied
before every test, plus in-memory stand-ins for the vault, the price
source and the push transport.
"""

import tempfile
from decimal import Decimal

import pytest

from chain.events import DEPOSITED, WITHDRAWN, DepositEvent, WithdrawEvent
from chain.vault import VaultClient
from jobs.oracle import PriceSource
from ledger.client import LedgerClient
from ledger.schema import truncate_all
from ledger.server import LedgerServer
from push.gateway import GoneError, PushGateway


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def server():
    tmp_dir = tempfile.mkdtemp(prefix="test_ledger_")
    srv = LedgerServer(data_dir=tmp_dir, app_password="test_app_pw")
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture(scope="module")
def client(server):
    c = LedgerClient.from_server(server, maxconn=8)
    yield c
    c.close()


@pytest.fixture(autouse=True)
def _clean_tables(request):
    if "client" not in request.fixturenames:
        yield
        return
    srv = request.getfixturevalue("server")
    conn = srv.app_conn()
    truncate_all(conn)
    conn.close()
    yield


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeVault(VaultClient):
    """
    In-memory vault. Writes mint a fake tx hash and queue the matching
    event one block later; get_logs() returns queued events by block.
    """

    def __init__(self, decimals=6):
        self.block = 100
        self.events = []            # [(block, event)]
        self.sent = []              # [(function, args)]
        self.scale = 10 ** decimals
        self._n = 0

    def _tx(self):
        self._n += 1
        return "0x" + f"{self._n:064x}"

    def block_number(self):
        return self.block

    def get_logs(self, from_block, to_block):
        return [e for b, e in self.events if from_block <= b <= to_block]

    def emit(self, event):
        """Queue *event* at its block and advance the chain head to it."""
        self.block = max(self.block, event.block_number)
        self.events.append((event.block_number, event))
        return event

    def deposit(self, user, amount):
        tx = self._tx()
        self.sent.append((DEPOSITED, (user, amount)))
        self.emit(DepositEvent(tx, 0, self.block + 1, user,
                               int(Decimal(amount) * self.scale)))
        return tx

    def withdraw(self, user, amount, as_cxpt):
        tx = self._tx()
        self.sent.append((WITHDRAWN, (user, amount, as_cxpt)))
        self.emit(WithdrawEvent(tx, 0, self.block + 1, user,
                                int(Decimal(amount) * self.scale), as_cxpt))
        return tx

    def register_synth(self, synth):
        self.sent.append(("registerSynth", (synth,)))
        return self._tx()

    def withdraw_fees(self, to, amount):
        self.sent.append(("withdrawFees", (to, amount)))
        return self._tx()

    def wait_for_receipt(self, tx_hash, confirmations=1):
        return {"transactionHash": tx_hash, "status": "0x1"}


class FakePriceSource(PriceSource):
    name = "fake"

    def __init__(self, prices=None, error=None):
        self.prices = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.error = error
        self.requested = []

    def fetch(self, symbols):
        self.requested.append(list(symbols))
        if self.error is not None:
            raise self.error
        return {s: self.prices[s] for s in symbols if s in self.prices}


class RecordingGateway(PushGateway):
    """Records every post; ids in *gone* raise GoneError."""

    def __init__(self, gone=()):
        self.gone = set(gone)
        self.posts = []             # [(connection_id, payload)]

    def post(self, connection_id, payload):
        if connection_id in self.gone:
            raise GoneError(connection_id)
        self.posts.append((connection_id, payload))

    def to(self, connection_id):
        return [p for c, p in self.posts if c == connection_id]


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def price_source():
    return FakePriceSource({"BTC": "60000", "ETH": "3000"})


@pytest.fixture
def gateway():
    return RecordingGateway()
