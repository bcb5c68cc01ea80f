"""Ledger access: the web3 adapter for the ProductTraceability contract and the writer on top of it.

The writer only talks to the adapter through a small surface
(``signer_address``, ``send_record_event``, ``wait_for_receipt``,
``get_receipt``, ``get_block_timestamp``, ``open_event_stream``) so any object
providing those methods can stand in for a node.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import requests
from web3 import Web3
from web3.exceptions import BlockNotFound, ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from errors import ChainRejected, ChainUnavailable, WriteTimeout
from identifier import decode_batch_id, encode_batch_id

logger = logging.getLogger(__name__)

EVENT_NAME = "ProductEvent"

CONTRACT_ABI = [
    {
        "type": "function",
        "name": "recordEvent",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_batchId", "type": "bytes32"},
            {"name": "_actorAddress", "type": "address"},
            {"name": "_eventType", "type": "uint8"},
            {"name": "_ipfsHash", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": EVENT_NAME,
        "anonymous": False,
        "inputs": [
            {"name": "batchId", "type": "bytes32", "indexed": False},
            {"name": "actor", "type": "address", "indexed": False},
            {"name": "eventType", "type": "uint8", "indexed": False},
            {"name": "ipfsHash", "type": "string", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]


@dataclass
class LedgerEvent:
    batch_id_raw: bytes
    actor: str
    event_type: int
    content_address: str
    timestamp: int
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def batch_id(self) -> str:
        return decode_batch_id(self.batch_id_raw)


@dataclass
class Receipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    logs_count: int
    events: List[LedgerEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class TxResult:
    tx_hash: str
    block_number: int
    log_index: int
    block_timestamp: datetime


@contextmanager
def _rpc(what: str):
    try:
        yield
    except ContractLogicError as exc:
        raise ChainRejected(f"{what} rejected by contract: {exc}") from exc
    except (TimeExhausted, TransactionNotFound, BlockNotFound):
        raise
    except Web3Exception as exc:
        # node-side JSON-RPC errors, e.g. "header not found" while the node restarts
        raise ChainUnavailable(f"{what} failed, ledger returned an error: {exc}") from exc
    except (requests.RequestException, OSError) as exc:
        raise ChainUnavailable(f"{what} failed, ledger unreachable: {exc}") from exc


def _to_event(entry) -> LedgerEvent:
    args = entry["args"]
    return LedgerEvent(
        batch_id_raw=bytes(args["batchId"]),
        actor=args["actor"],
        event_type=int(args["eventType"]),
        content_address=args["ipfsHash"],
        timestamp=int(args["timestamp"]),
        tx_hash=Web3.to_hex(entry["transactionHash"]),
        block_number=int(entry["blockNumber"]),
        log_index=int(entry["logIndex"]),
    )


class EventStream:
    """Live ProductEvent feed backed by a node-side log filter.

    The first ``poll`` returns everything from ``from_block`` onwards so a
    reopened stream catches up on what it missed while disconnected.
    """

    def __init__(self, ledger: "Web3Ledger", from_block):
        self.ledger = ledger
        with _rpc("event filter install"):
            self._filter = ledger.event.create_filter(from_block=from_block)
        self._primed = False

    def poll(self) -> List[LedgerEvent]:
        try:
            with _rpc("event filter poll"):
                if not self._primed:
                    entries = self._filter.get_all_entries()
                    self._primed = True
                else:
                    entries = self._filter.get_new_entries()
        except ValueError as exc:
            # nodes drop idle filters; the caller reopens the stream
            raise ChainUnavailable(f"event filter lost: {exc}") from exc
        return [_to_event(e) for e in entries]

    def close(self) -> None:
        try:
            self.ledger.w3.eth.uninstall_filter(self._filter.filter_id)
        except (requests.RequestException, OSError, Web3Exception) as exc:
            logger.debug("filter uninstall failed: %s", exc)


class Web3Ledger:
    def __init__(self, rpc_url: str, contract_address: str, private_key: str,
                 poll_latency: float = 0.5, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=CONTRACT_ABI)
        self.account = self.w3.eth.account.from_key(private_key)
        self.poll_latency = poll_latency

    @property
    def signer_address(self) -> str:
        return self.account.address

    @property
    def event(self):
        return getattr(self.contract.events, EVENT_NAME)

    def send_record_event(self, batch_id_raw: bytes, actor: str, event_type: int, content_address: str) -> str:
        fn = self.contract.functions.recordEvent(
            batch_id_raw, Web3.to_checksum_address(actor), event_type, content_address
        )
        with _rpc("recordEvent submission"):
            tx = fn.build_transaction({
                "from": self.signer_address,
                "nonce": self.w3.eth.get_transaction_count(self.signer_address, "pending"),
                "chainId": self.w3.eth.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        try:
            with _rpc("receipt wait"):
                raw = self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=timeout, poll_latency=self.poll_latency
                )
        except TimeExhausted as exc:
            raise WriteTimeout(tx_hash, timeout) from exc
        return self._receipt(raw)

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            with _rpc("receipt lookup"):
                raw = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return self._receipt(raw)

    def get_block_timestamp(self, block_number: int) -> int:
        try:
            with _rpc("block lookup"):
                return int(self.w3.eth.get_block(block_number)["timestamp"])
        except BlockNotFound as exc:
            raise ChainUnavailable(f"block {block_number} not found") from exc

    def latest_block(self) -> int:
        with _rpc("block number"):
            return int(self.w3.eth.block_number)

    def open_event_stream(self, from_block="latest") -> EventStream:
        return EventStream(self, from_block)

    def _receipt(self, raw) -> Receipt:
        entries = self.event().process_receipt(raw, errors=DISCARD)
        return Receipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=int(raw["gasUsed"]),
            logs_count=len(raw["logs"]),
            events=[_to_event(e) for e in entries],
        )


class LedgerWriter:
    """Records one provenance event on the ledger and blocks until it is final."""

    def __init__(self, ledger, timeout: float = 120.0):
        self.ledger = ledger
        self.timeout = timeout

    def write(self, actor_address: str, batch_id: str, content_address: str, event_type: int) -> TxResult:
        batch_id_raw = encode_batch_id(batch_id)

        signer = self.ledger.signer_address
        if signer.lower() != actor_address.lower():
            logger.warning(
                "signer %s does not match actor %s for batch %s; sending as signer",
                signer, actor_address, batch_id,
            )

        logger.info("recording event type=%s batch=%s content=%s", event_type, batch_id, content_address)
        tx_hash = self.ledger.send_record_event(batch_id_raw, actor_address, event_type, content_address)
        receipt = self.ledger.wait_for_receipt(tx_hash, self.timeout)
        if not receipt.succeeded:
            raise ChainRejected(f"transaction reverted on ledger: {tx_hash}", tx_hash=tx_hash)

        try:
            ts = self.ledger.get_block_timestamp(receipt.block_number)
            block_timestamp = datetime.fromtimestamp(ts, tz=timezone.utc)
        except ChainUnavailable as exc:
            logger.warning("block %s timestamp unavailable, using wall clock: %s", receipt.block_number, exc)
            block_timestamp = datetime.now(timezone.utc)

        log_index = receipt.events[0].log_index if receipt.events else 0
        logger.info("transaction %s final in block %s", receipt.tx_hash, receipt.block_number)
        return TxResult(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            log_index=log_index,
            block_timestamp=block_timestamp,
        )
