"""Relational mirror of ledger events.

Both the request path and the reconciler write ProductEvent rows through
``upsert_product_event``; the unique ``tx_hash`` column is the only thing
keeping them from duplicating each other.
"""
import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Batch, ProductEvent

logger = logging.getLogger(__name__)


class BatchIndex:
    """Natural batch id -> internal id, loaded once and kept current on batch creation."""

    def __init__(self):
        self._ids: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def load(self, db: Session) -> None:
        self._ids = {batch_id: ref for batch_id, ref in db.execute(select(Batch.batch_id, Batch.id))}
        logger.info("batch index loaded with %d entries", len(self._ids))

    def add(self, batch_id: str, ref_id: str) -> None:
        self._ids[batch_id] = ref_id

    def lookup(self, db: Session, batch_id: str) -> Optional[str]:
        ref = self._ids.get(batch_id)
        if ref is None:
            # created by another process since load()
            ref = db.scalar(select(Batch.id).where(Batch.batch_id == batch_id))
            if ref is not None:
                self._ids[batch_id] = ref
        return ref


def _apply_update(ev: ProductEvent, content_address: str, block_number: int, log_index: int,
                  actor_user_id: Optional[str]) -> None:
    ev.content_address = content_address
    ev.block_number = block_number
    ev.log_index = log_index
    if ev.actor_user_id is None and actor_user_id is not None:
        ev.actor_user_id = actor_user_id


def upsert_product_event(
    db: Session,
    *,
    tx_hash: str,
    batch_ref_id: str,
    batch_id: str,
    event_type: int,
    content_address: str,
    actor_address: str,
    block_number: int,
    log_index: int,
    block_timestamp: datetime,
    actor_user_id: Optional[str] = None,
) -> Tuple[ProductEvent, bool]:
    """Insert or update the row for ``tx_hash``. Returns ``(row, created)``."""
    existing = db.scalar(select(ProductEvent).where(ProductEvent.tx_hash == tx_hash))
    if existing is not None:
        _apply_update(existing, content_address, block_number, log_index, actor_user_id)
        db.commit()
        logger.debug("tx %s already mirrored; updated", tx_hash)
        return existing, False

    ev = ProductEvent(
        tx_hash=tx_hash,
        batch_ref_id=batch_ref_id,
        batch_id=batch_id,
        event_type=event_type,
        content_address=content_address,
        actor_address=actor_address,
        actor_user_id=actor_user_id,
        block_number=block_number,
        log_index=log_index,
        block_timestamp=block_timestamp,
    )
    db.add(ev)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.scalar(select(ProductEvent).where(ProductEvent.tx_hash == tx_hash))
        if existing is None:
            raise
        logger.info("tx %s mirrored concurrently; applying as update", tx_hash)
        _apply_update(existing, content_address, block_number, log_index, actor_user_id)
        db.commit()
        return existing, False
    db.refresh(ev)
    return ev, True
