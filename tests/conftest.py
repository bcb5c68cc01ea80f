import hashlib
import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RECONCILER_ENABLED"] = "0"
os.environ.pop("CONTRACT_ADDRESS", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from web3 import Web3
from web3.providers.base import BaseProvider

import app as app_module
from database import Base
from decoder import ReceiptDecoder
from errors import ChainUnavailable, ContentStoreUnavailable, WriteTimeout
from identifier import encode_batch_id
from ledger import LedgerEvent, LedgerWriter, Receipt, Web3Ledger
from mirror import BatchIndex
from models import User
from services import make_actor_resolver

FARMER_ADDR = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
ADMIN_ADDR = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OPERATOR_ADDR = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
BASE_TS = 1_700_000_000
# hardhat dev account #0 and its first contract deployment
SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
CONTRACT_ADDR = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class FakeLedger:
    """In-process stand-in for Web3Ledger. Every transaction is mined in its own block."""

    def __init__(self, signer_address=FARMER_ADDR, block=9):
        self.signer_address = signer_address
        self.block = block
        self.receipts = {}
        self.sent = []
        self.next_hashes = []
        self.revert_next = False
        self.timeout_next = False
        self.block_timestamp_fails = False
        self.streams = []

    def send_record_event(self, batch_id_raw, actor, event_type, content_address):
        self.block += 1
        tx_hash = self.next_hashes.pop(0) if self.next_hashes else "0x%064x" % (len(self.sent) + 1)
        ev = LedgerEvent(batch_id_raw, actor, int(event_type), content_address,
                         BASE_TS + self.block, tx_hash, self.block, 0)
        status = 0 if self.revert_next else 1
        self.revert_next = False
        self.receipts[tx_hash] = Receipt(tx_hash, self.block, status, 48_213,
                                         1 if status else 0, [ev] if status else [])
        self.sent.append(ev)
        return tx_hash

    def wait_for_receipt(self, tx_hash, timeout):
        if self.timeout_next:
            raise WriteTimeout(tx_hash, timeout)
        return self.receipts[tx_hash]

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def get_block_timestamp(self, block_number):
        if self.block_timestamp_fails:
            raise ChainUnavailable("node went away")
        return BASE_TS + block_number

    def latest_block(self):
        return self.block

    def open_event_stream(self, from_block):
        if not self.streams:
            raise ChainUnavailable("no stream available")
        stream = self.streams.pop(0)
        stream.opened_from = from_block
        return stream


class ScriptedStream:
    """Event stream replaying a script: each item is a list of events or an exception to raise."""

    def __init__(self, script):
        self.script = list(script)
        self.closed = False
        self.opened_from = None

    def poll(self):
        if not self.script:
            return []
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    def close(self):
        self.closed = True


class FakeContentStore:
    def __init__(self):
        self.blobs = {}
        self.fail_put = False

    def put(self, payload, content_type="application/octet-stream", filename=None):
        if self.fail_put:
            raise ContentStoreUnavailable("store is down")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        address = "Qm" + hashlib.sha256(payload).hexdigest()[:44]
        self.blobs[address] = payload
        return address

    def put_json(self, obj):
        return self.put(json.dumps(obj), "application/json")

    def get(self, address):
        return self.blobs.get(address, b"")

    def get_json(self, address):
        raw = self.get(address)
        return json.loads(raw) if raw else {}


class FailingNode(BaseProvider):
    """JSON-RPC provider answering every call with a node-side error."""

    def __init__(self, message="header not found"):
        super().__init__()
        self.message = message
        self.methods = []

    def make_request(self, method, params):
        self.methods.append(method)
        return {"jsonrpc": "2.0", "id": len(self.methods), "error": {"code": -32000, "message": self.message}}

    def is_connected(self, show_traceback=False):
        return True


def make_event(batch_id, tx_hash, block_number, event_type=1, actor=FARMER_ADDR,
               content_address="QmContent", log_index=0):
    return LedgerEvent(encode_batch_id(batch_id), actor, event_type, content_address,
                       BASE_TS + block_number, tx_hash, block_number, log_index)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path}/trace.db", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def users(db):
    farmer = User(name="Pak Budi", email="budi@example.com", role="FARMER", actor_address=FARMER_ADDR)
    admin = User(name="Ibu Sari", email="sari@example.com", role="ADMIN", actor_address=ADMIN_ADDR)
    operator = User(name="Central Hub", email="hub@example.com", role="CENTRAL_OPERATOR",
                    actor_address=OPERATOR_ADDR)
    db.add_all([farmer, admin, operator])
    db.commit()
    return {"farmer": farmer.id, "admin": admin.id, "operator": operator.id}


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def failing_ledger():
    return Web3Ledger("http://127.0.0.1:8545", CONTRACT_ADDR, SIGNER_KEY, w3=Web3(FailingNode()))


@pytest.fixture
def store():
    return FakeContentStore()


@pytest.fixture
def index():
    return BatchIndex()


@pytest.fixture
def client(session_factory, ledger, store, index):
    def get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app = app_module.app
    app.dependency_overrides[app_module.get_db] = get_db
    app.dependency_overrides[app_module.get_writer] = lambda: LedgerWriter(ledger, timeout=5)
    app.dependency_overrides[app_module.get_content_store] = lambda: store
    app.dependency_overrides[app_module.get_index] = lambda: index
    app.dependency_overrides[app_module.get_decoder] = lambda: ReceiptDecoder(
        ledger, store, make_actor_resolver(session_factory)
    )
    yield TestClient(app)
    app.dependency_overrides.clear()
