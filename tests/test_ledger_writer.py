import logging
from datetime import datetime, timezone

import pytest

import app as app_module
from conftest import ADMIN_ADDR, BASE_TS, FARMER_ADDR
from errors import ChainRejected, ChainUnavailable, IdentifierTooLong, WriteTimeout
from identifier import decode_batch_id
from ledger import LedgerWriter


def test_write_returns_receipt_facts(ledger):
    ledger.next_hashes = ["0xabc"]
    result = LedgerWriter(ledger).write(FARMER_ADDR, "HRV-001", "QmHarvest", 1)

    assert result.tx_hash == "0xabc"
    assert result.block_number == 10
    assert result.log_index == 0
    assert result.block_timestamp == datetime.fromtimestamp(BASE_TS + 10, tz=timezone.utc)

    sent = ledger.sent[0]
    assert decode_batch_id(sent.batch_id_raw) == "HRV-001"
    assert (sent.actor, sent.event_type, sent.content_address) == (FARMER_ADDR, 1, "QmHarvest")


def test_reverted_transaction_is_rejected(ledger):
    ledger.revert_next = True
    with pytest.raises(ChainRejected) as exc_info:
        LedgerWriter(ledger).write(FARMER_ADDR, "HRV-001", "QmHarvest", 1)
    assert exc_info.value.tx_hash == ledger.sent[0].tx_hash


def test_timeout_is_surfaced(ledger):
    ledger.timeout_next = True
    with pytest.raises(WriteTimeout):
        LedgerWriter(ledger, timeout=0.1).write(FARMER_ADDR, "HRV-001", "QmHarvest", 1)


def test_overlong_identifier_never_reaches_the_ledger(ledger):
    with pytest.raises(IdentifierTooLong):
        LedgerWriter(ledger).write(FARMER_ADDR, "HRV-" + "9" * 40, "QmHarvest", 1)
    assert ledger.sent == []


def test_signer_mismatch_warns_and_proceeds(ledger, caplog):
    with caplog.at_level(logging.WARNING, logger="ledger"):
        result = LedgerWriter(ledger).write(ADMIN_ADDR, "HRV-001", "QmVerify", 99)
    assert result.tx_hash
    assert any("does not match actor" in r.message for r in caplog.records)


def test_matching_signer_is_quiet(ledger, caplog):
    with caplog.at_level(logging.WARNING, logger="ledger"):
        LedgerWriter(ledger).write(FARMER_ADDR.lower(), "HRV-001", "QmHarvest", 1)
    assert not caplog.records


def test_block_timestamp_falls_back_to_wall_clock(ledger):
    ledger.block_timestamp_fails = True
    before = datetime.now(timezone.utc)
    result = LedgerWriter(ledger).write(FARMER_ADDR, "HRV-001", "QmHarvest", 1)
    assert result.block_timestamp >= before


def test_node_errors_surface_as_chain_unavailable(failing_ledger):
    with pytest.raises(ChainUnavailable):
        failing_ledger.latest_block()
    with pytest.raises(ChainUnavailable):
        failing_ledger.open_event_stream(10)
    with pytest.raises(ChainUnavailable):
        failing_ledger.get_receipt("0x" + "ab" * 32)
    with pytest.raises(ChainUnavailable):
        LedgerWriter(failing_ledger).write(FARMER_ADDR, "HRV-001", "QmHarvest", 1)


def test_node_error_on_write_is_a_503_envelope(client, users, failing_ledger):
    app_module.app.dependency_overrides[app_module.get_writer] = lambda: LedgerWriter(failing_ledger)
    resp = client.post("/api/v1/harvests", json={
        "actor_user_id": users["farmer"], "product_name": "Cabai Merah", "location": "Garut",
        "harvest_date": "2025-11-05", "quantity": 3, "unit": "kg",
    })
    assert resp.status_code == 503
    assert resp.json()["success"] is False
    assert "header not found" in resp.json()["message"]
