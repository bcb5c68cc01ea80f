import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from errors import ActorResolutionFailure
from ledger import EVENT_NAME
from utils import event_name, placeholder_actor

logger = logging.getLogger(__name__)

PENDING = "PENDING"
VERIFIED = "VERIFIED"
FAILURE = "FAILURE"


@dataclass
class DecodedEvent:
    event_name: str
    batch_id: str
    actor_address: str
    actor_name: str
    event_type: int
    content_address: str
    timestamp: str
    content: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DecodedTransaction:
    status: str
    tx_hash: str
    block_number: int = 0
    gas_used: str = "0"
    events_emitted: int = 0
    decoded_event: Optional[DecodedEvent] = None

    @property
    def final(self) -> bool:
        return self.status != PENDING


class ReceiptDecoder:
    """Turns a transaction hash back into a typed provenance event.

    ``resolve_actor`` maps a ledger address to a display name and may raise
    ``ActorResolutionFailure``; the content store is only read through
    ``get_json``. Neither failure aborts the decode.
    """

    def __init__(self, ledger, content_store, resolve_actor: Callable[[str], str]):
        self.ledger = ledger
        self.content_store = content_store
        self.resolve_actor = resolve_actor

    def decode(self, tx_hash: str) -> DecodedTransaction:
        receipt = self.ledger.get_receipt(tx_hash)
        if receipt is None:
            return DecodedTransaction(status=PENDING, tx_hash=tx_hash)

        result = DecodedTransaction(
            status=VERIFIED if receipt.succeeded else FAILURE,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=str(receipt.gas_used),
            events_emitted=receipt.logs_count,
        )
        if not receipt.events:
            return result

        ev = receipt.events[0]
        with ThreadPoolExecutor(max_workers=2) as pool:
            name_f = pool.submit(self._actor_name, ev.actor)
            content_f = pool.submit(self.content_store.get_json, ev.content_address)
            actor_name = name_f.result()
            content = content_f.result()

        result.decoded_event = DecodedEvent(
            event_name=f"{EVENT_NAME} ({event_name(ev.event_type)})",
            batch_id=ev.batch_id,
            actor_address=ev.actor,
            actor_name=actor_name,
            event_type=ev.event_type,
            content_address=ev.content_address,
            timestamp=datetime.fromtimestamp(ev.timestamp, tz=timezone.utc).isoformat(),
            content=content,
        )
        return result

    def _actor_name(self, address: str) -> str:
        try:
            return self.resolve_actor(address)
        except ActorResolutionFailure as exc:
            logger.warning("actor %s unresolved: %s", address, exc)
            return placeholder_actor(address)
